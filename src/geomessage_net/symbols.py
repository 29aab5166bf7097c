"""Route inbound Geomessages to the map renderer.

Routing (per record)::

    _type alias-normalized (trackrep → position_report, spotrep → spot_report)
      │
      ├─ _action removeall → clear tracked state (whole type, or everything)
      ├─ spot_report       → one spot graphic per _id (display / move / remove)
      └─ anything else     → chem light color remap, label coordinates,
                             renderer.process_message, then highlight tracking

Highlight tracking per ``_id``: a record with ``status911 == "1"`` turns the
highlight on, the first later record without it turns it off.  Repeats make
no renderer call.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Any, Optional

from geomessage_net.codec import inbound_type_name
from geomessage_net.collaborators import MapCollaborator, Renderer
from geomessage_net.errors import ConfigError, FieldParseError
from geomessage_net.models import (
    ACTION_REMOVE,
    ACTION_REMOVE_ALL,
    CONTROL_POINTS_FIELD_NAME,
    TYPE_FIELD_NAME,
    WKID_FIELD_NAME,
    Geomessage,
    without_labels,
)
from geomessage_net.reports import (
    CHEM_LIGHT_TYPE,
    SPOT_REPORT_TYPE,
    build_removal,
    normalize_color_token,
)
from geomessage_net.transport import BroadcastTransport

logger = logging.getLogger(__name__)

WGS84_WKID = 4326
MAX_CONTROL_POINT_PAIRS = 1000
REMOVEALL_SCOPES = ("type", "all")

_SEPARATORS_RE = re.compile(r"[,;\s]+")


def parse_control_points(
    text: str, limit: int = MAX_CONTROL_POINT_PAIRS
) -> list[tuple[float, float]]:
    """Parse ``x,y[;x,y]*`` (separators ``,`` ``;`` or whitespace) into pairs.

    At most *limit* pairs are returned; a trailing unpaired number is ignored.

    Raises
    ------
    FieldParseError
        If a token is not a number.
    """
    tokens = [t for t in _SEPARATORS_RE.split(text.strip()) if t]
    if len(tokens) > 2 * limit:
        logger.warning("Truncated %d control point values to %d pairs", len(tokens), limit)
        tokens = tokens[: 2 * limit]
    try:
        numbers = [float(t) for t in tokens]
    except ValueError:
        raise FieldParseError(CONTROL_POINTS_FIELD_NAME, text) from None
    return list(zip(numbers[0::2], numbers[1::2]))


def parse_point(text: Optional[str]) -> tuple[float, float]:
    """Parse exactly two comma-separated numbers."""
    parts = (text or "").split(",")
    if len(parts) != 2:
        raise FieldParseError(CONTROL_POINTS_FIELD_NAME, text)
    try:
        return float(parts[0]), float(parts[1])
    except ValueError:
        raise FieldParseError(CONTROL_POINTS_FIELD_NAME, text) from None


def parse_wkid(text: Optional[str]) -> int:
    try:
        return int(str(text).strip())
    except ValueError:
        raise FieldParseError(WKID_FIELD_NAME, text) from None


class SymbolRouter:
    """Dispatcher listener that keeps the map in step with inbound records.

    Parameters
    ----------
    renderer:
        Draws records, spot graphics and highlights.
    map_collaborator:
        Reprojects label coordinates to WGS84; optional.
    transport:
        Used by :meth:`send_remove_message`; optional.
    show_labels:
        Whether records keep their label fields.
    removeall_scope:
        ``type`` clears only state of the record's ``_type`` on
        ``removeall``; ``all`` clears everything.
    """

    def __init__(
        self,
        renderer: Renderer,
        map_collaborator: Optional[MapCollaborator] = None,
        transport: Optional[BroadcastTransport] = None,
        show_labels: bool = True,
        removeall_scope: str = "type",
    ) -> None:
        if removeall_scope not in REMOVEALL_SCOPES:
            raise ConfigError(f"Unknown removeall scope: {removeall_scope!r}")
        self._renderer = renderer
        self._map = map_collaborator
        self._transport = transport
        self._show_labels = show_labels
        self.removeall_scope = removeall_scope

        self._lock = threading.Lock()
        self._highlighted: dict[str, Optional[str]] = {}  # _id → _type
        self._spot_graphics: dict[str, Any] = {}  # spot _id → graphic id

    # ── listener contract ───────────────────────────────────────────

    def on_raw(self, text: str) -> None:
        pass

    def on_geomessage(self, message: Geomessage) -> None:
        try:
            self.process_geomessage(message)
        except FieldParseError as exc:
            logger.warning("Dropped %s %s: %s", message.type, message.id, exc)

    # ── routing ─────────────────────────────────────────────────────

    def process_geomessage(self, message: Geomessage) -> None:
        """Route one record.  The record itself is not modified.

        Raises
        ------
        FieldParseError
            If a spot report has unusable coordinates or WKID.
        """
        message = message.clone()
        type_name = inbound_type_name(message.type)
        if type_name is not None:
            message.set(TYPE_FIELD_NAME, type_name)
        action = (message.action or "").upper()

        if action == ACTION_REMOVE_ALL:
            self._remove_all(type_name)

        if type_name == SPOT_REPORT_TYPE:
            self._route_spot_report(message, action)
            return

        if type_name == CHEM_LIGHT_TYPE:
            color = message.get("color")
            if color is None:
                color = message.get("chemlight")
            if color is not None:
                token = normalize_color_token(str(color))
                message.set("color", token)
                message.set("chemlight", token)

        if self._show_labels:
            if "datetimevalid" in message:
                self._add_label_coordinates(message)
            self._renderer.process_message(message)
        else:
            self._renderer.process_message(without_labels(message))

        self._update_highlight(message, type_name)

    def _route_spot_report(self, message: Geomessage, action: str) -> None:
        if action == ACTION_REMOVE:
            self._remove_spot_graphic(message.id)
            return
        if action == ACTION_REMOVE_ALL:
            return

        x, y = parse_point(message.get(CONTROL_POINTS_FIELD_NAME))
        wkid = parse_wkid(message.get(WKID_FIELD_NAME))
        with self._lock:
            graphic_id = self._spot_graphics.get(message.id)
        new_graphic_id = self._renderer.display_spot_report(x, y, wkid, graphic_id, message)
        with self._lock:
            self._spot_graphics[message.id] = new_graphic_id

    def _remove_spot_graphic(self, message_id: Optional[str]) -> None:
        with self._lock:
            graphic_id = self._spot_graphics.pop(message_id, None)
        if graphic_id is not None:
            self._renderer.remove_spot_report_graphic(graphic_id)

    def _add_label_coordinates(self, message: Geomessage) -> None:
        if "z" not in message:
            message.set("z", "0")
        control_points = message.get(CONTROL_POINTS_FIELD_NAME)
        if not control_points:
            return
        try:
            points = parse_control_points(str(control_points), limit=1)
            if not points:
                return
            x, y = points[0]
            wkid = message.get(WKID_FIELD_NAME)
            if wkid is not None and self._map is not None:
                from_wkid = parse_wkid(wkid)
                if from_wkid != WGS84_WKID:
                    x, y = self._map.project_point(x, y, from_wkid, WGS84_WKID)
        except FieldParseError as exc:
            logger.warning("Skipped label coordinates for %s: %s", message.id, exc)
            return
        message.set("x", x)
        message.set("y", y)

    def _update_highlight(self, message: Geomessage, type_name: Optional[str]) -> None:
        now_highlighted = message.get("status911") == "1"
        with self._lock:
            was_highlighted = message.id in self._highlighted
            if now_highlighted and not was_highlighted:
                self._highlighted[message.id] = type_name
            elif was_highlighted and not now_highlighted:
                del self._highlighted[message.id]
            else:
                return
        self._renderer.process_highlight(message.id, type_name, now_highlighted)

    def _remove_all(self, type_name: Optional[str]) -> None:
        clear_everything = self.removeall_scope == "all"
        with self._lock:
            if clear_everything or type_name == SPOT_REPORT_TYPE:
                graphics = list(self._spot_graphics.values())
                self._spot_graphics.clear()
            else:
                graphics = []
            unhighlight = [
                (message_id, t) for message_id, t in self._highlighted.items()
                if clear_everything or t == type_name
            ]
            for message_id, _ in unhighlight:
                del self._highlighted[message_id]
        for graphic_id in graphics:
            self._renderer.remove_spot_report_graphic(graphic_id)
        for message_id, t in unhighlight:
            self._renderer.process_highlight(message_id, t, False)
        logger.info(
            "Cleared %d spot graphics and %d highlights (removeall %s)",
            len(graphics),
            len(unhighlight),
            type_name if not clear_everything else "all",
        )

    # ── application operations ──────────────────────────────────────

    @property
    def show_labels(self) -> bool:
        return self._show_labels

    @show_labels.setter
    def show_labels(self, show: bool) -> None:
        if show == self._show_labels:
            return
        self._show_labels = show
        toggle = getattr(self._renderer, "toggle_labels", None)
        if toggle is not None:
            toggle(show)

    def is_highlighted(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._highlighted

    def spot_graphic_id(self, message_id: str) -> Any:
        with self._lock:
            return self._spot_graphics.get(message_id)

    def remove(self, message_id: str, message_type: str) -> None:
        """Remove a record from the map and forget its tracked state."""
        with self._lock:
            self._highlighted.pop(message_id, None)
        if inbound_type_name(message_type) == SPOT_REPORT_TYPE:
            self._remove_spot_graphic(message_id)
        self._renderer.process_remove(message_id, message_type)

    def send_remove_message(self, message_id: str, message_type: str) -> None:
        """Tell peers (and local listeners) to remove a record.

        Raises
        ------
        ConfigError
            If the router has no transport.
        TransportError
            If the datagram could not be sent.
        """
        if self._transport is None:
            raise ConfigError("No transport to send the remove message")
        self._transport.send_geomessages([build_removal(message_id, message_type)])
