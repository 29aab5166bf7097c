"""Builders and senders for chem light, spot report, and removal records.

Chem light colors travel as palette tokens::

    red    0xFFFF0000 → "1"
    green  0xFF00FF00 → "2"
    blue   0xFF0000FF → "3"
    yellow 0xFFFFFF00 → "4"
    other             → "#RRGGBB"  (alpha dropped)
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from geomessage_net.collaborators import MapCollaborator
from geomessage_net.models import (
    ACTION_FIELD_NAME,
    ACTION_REMOVE,
    ACTION_UPDATE,
    CONTROL_POINTS_FIELD_NAME,
    TYPE_FIELD_NAME,
    WKID_FIELD_NAME,
    Geomessage,
    SpotReport,
)
from geomessage_net.transport import BroadcastTransport
from geomessage_net.util import format_geomessage_date

logger = logging.getLogger(__name__)

CHEM_LIGHT_TYPE = "chemlight"
SPOT_REPORT_TYPE = "spot_report"

RED = 0xFFFF0000
GREEN = 0xFF00FF00
BLUE = 0xFF0000FF
YELLOW = 0xFFFFFF00

_PALETTE = {RED: "1", GREEN: "2", BLUE: "3", YELLOW: "4"}
_COLOR_NAMES = {"red": RED, "green": GREEN, "blue": BLUE, "yellow": YELLOW}


def encode_color(argb: int) -> str:
    """Map a 32-bit ARGB color (signed or unsigned) to its palette token."""
    argb &= 0xFFFFFFFF
    token = _PALETTE.get(argb)
    if token is not None:
        return token
    return f"#{argb & 0xFFFFFF:06x}"


def parse_color(text: str) -> int:
    """Parse ``red``/``green``/``blue``/``yellow`` or ``#RRGGBB`` into opaque ARGB.

    Raises
    ------
    ValueError
        If *text* is neither a palette name nor a hex color.
    """
    name = text.strip().lower()
    if name in _COLOR_NAMES:
        return _COLOR_NAMES[name]
    if name.startswith("#") and len(name) == 7:
        return 0xFF000000 | int(name[1:], 16)
    raise ValueError(f"Unknown color: {text!r}")


def normalize_color_token(value: str) -> str:
    """Rewrite an inbound color value as a palette token when possible.

    Tokens and hex literals pass through; ARGB integers and palette names
    are mapped; anything else is returned unchanged.
    """
    text = value.strip()
    if text in _PALETTE.values() or text.startswith("#"):
        return text
    if text.lower() in _COLOR_NAMES:
        return _PALETTE[_COLOR_NAMES[text.lower()]]
    try:
        return encode_color(int(text))
    except ValueError:
        return value


# ── builders ────────────────────────────────────────────────────────


def build_chem_light(
    x: float, y: float, wkid: int, argb: int, now: Optional[datetime] = None
) -> Geomessage:
    """Build a new chem light record with a fresh id."""
    message_id = str(uuid.uuid4())
    date_string = format_geomessage_date(now)
    return Geomessage(
        id=message_id,
        fields={
            TYPE_FIELD_NAME: CHEM_LIGHT_TYPE,
            WKID_FIELD_NAME: str(wkid),
            CONTROL_POINTS_FIELD_NAME: f"{float(x)},{float(y)}",
            ACTION_FIELD_NAME: ACTION_UPDATE,
            "uniquedesignation": message_id,
            "color": encode_color(argb),
            "datetimesubmitted": date_string,
            "datetimemodified": date_string,
        },
    )


def build_spot_report(
    spot: SpotReport,
    map_collaborator: MapCollaborator,
    sender_designation: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Geomessage:
    """Build the SALUTE record for *spot*.

    ``location`` carries the MGRS string from *map_collaborator*;
    ``uniquedesignation`` is omitted when *sender_designation* is None.
    """
    fields = {
        TYPE_FIELD_NAME: SPOT_REPORT_TYPE,
        WKID_FIELD_NAME: str(spot.location_wkid),
        CONTROL_POINTS_FIELD_NAME: f"{float(spot.location_x)},{float(spot.location_y)}",
        ACTION_FIELD_NAME: ACTION_UPDATE.lower(),
    }
    if sender_designation is not None:
        fields["uniquedesignation"] = sender_designation
    fields.update({
        "size": spot.size.label,
        "activity": spot.activity.label,
        "location": map_collaborator.point_to_mgrs(
            spot.location_x, spot.location_y, spot.location_wkid
        ),
        "unit": spot.unit.label,
        "equipment": spot.equipment.label,
        "size_cat": str(spot.size.code),
        "activity_cat": spot.activity.code,
        "unit_cat": spot.unit.code,
        "equip_cat": spot.equipment.code,
        "timeobserved": format_geomessage_date(spot.time or now),
        "datetimesubmitted": format_geomessage_date(now),
    })
    return Geomessage(id=spot.message_id, fields=fields)


def build_removal(message_id: str, message_type: str) -> Geomessage:
    """Build a record telling peers to remove *message_id*."""
    return Geomessage(
        id=message_id,
        fields={TYPE_FIELD_NAME: message_type, ACTION_FIELD_NAME: ACTION_REMOVE},
    )


# ── senders ─────────────────────────────────────────────────────────


class ChemLightReporter:
    """Sends chem lights over a transport."""

    def __init__(self, transport: BroadcastTransport) -> None:
        self._transport = transport

    def send_chem_light(self, x: float, y: float, wkid: int, argb: int) -> Geomessage:
        """Broadcast a new chem light and return the record sent.

        Raises
        ------
        TransportError
            If the datagram could not be sent.
        """
        message = build_chem_light(x, y, wkid, argb)
        self._transport.send_geomessages([message])
        logger.info("Sent chem light %s at %s,%s", message.id, x, y)
        return message


class SpotReporter:
    """Sends SALUTE spot reports over a transport.

    Parameters
    ----------
    transport:
        Transport used to send.
    map_collaborator:
        Supplies the MGRS string for the report location.
    sender_designation:
        This client's callsign, carried as ``uniquedesignation``.
    """

    def __init__(
        self,
        transport: BroadcastTransport,
        map_collaborator: MapCollaborator,
        sender_designation: Optional[str] = None,
    ) -> None:
        self._transport = transport
        self._map = map_collaborator
        self.sender_designation = sender_designation

    def send_spot_report(self, spot: SpotReport, is_update: bool = False) -> Geomessage:
        """Broadcast *spot* and return the record sent.

        Unless *is_update* is true the report gets a fresh id first, so it
        appears to peers as a new report.
        """
        if not is_update:
            spot.regenerate_message_id()
        message = build_spot_report(spot, self._map, self.sender_designation)
        self._transport.send_geomessages([message], external=True)
        return message
