"""Dataclass models for Geomessages, location fixes, and spot reports.

A :class:`Geomessage` is a bag of named fields plus an identifier.  The
reserved field names below carry protocol meaning; every other field is
free-form and passed through to renderers untouched.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

ID_FIELD_NAME = "_id"
TYPE_FIELD_NAME = "_type"
WKID_FIELD_NAME = "_wkid"
CONTROL_POINTS_FIELD_NAME = "_control_points"
ACTION_FIELD_NAME = "_action"
SIC_FIELD_NAME = "sic"

ACTION_UPDATE = "UPDATE"
ACTION_REMOVE = "REMOVE"
ACTION_REMOVE_ALL = "REMOVEALL"

# Fields blanked by :func:`without_labels`.
LABEL_FIELD_NAMES = (
    "additionalinformation",
    "uniquedesignation",
    "speed",
    "type",
    "x",
    "y",
    "z",
    "datetimevalid",
)


@dataclass
class Geomessage:
    """A single structured record carried in an envelope.

    The identifier lives on the record and is mirrored in the ``_id`` field;
    :meth:`set` keeps the two in step.
    """

    id: Optional[str] = None
    fields: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.id is None and ID_FIELD_NAME in self.fields:
            self.id = self.fields[ID_FIELD_NAME]
        elif self.id is not None:
            self.fields[ID_FIELD_NAME] = self.id

    def get(self, name: str, default: Any = None) -> Any:
        """Return the value of field *name*, or *default*."""
        return self.fields.get(name, default)

    def set(self, name: str, value: Any) -> None:
        """Set field *name*; setting ``_id`` also sets the identifier."""
        self.fields[name] = value
        if name == ID_FIELD_NAME:
            self.id = value

    def __contains__(self, name: object) -> bool:
        return name in self.fields

    @property
    def type(self) -> Optional[str]:
        return self.fields.get(TYPE_FIELD_NAME)

    @property
    def action(self) -> Optional[str]:
        return self.fields.get(ACTION_FIELD_NAME)

    def clone(self) -> Geomessage:
        """Return a shallow copy with its own field dict."""
        return Geomessage(id=self.id, fields=dict(self.fields))


def without_labels(message: Geomessage) -> Geomessage:
    """Return a clone of *message* with its label fields blanked."""
    clone = message.clone()
    for name in LABEL_FIELD_NAMES:
        clone.set(name, "")
    return clone


@dataclass(frozen=True)
class LocationFix:
    """A position fix: coordinates in WGS84 degrees, speed, and compass heading.

    ``timestamp`` is timezone-aware UTC, or ``None`` when the source did not
    provide one.
    """

    longitude: float
    latitude: float
    timestamp: Optional[datetime] = None
    speed: float = 0.0
    heading: float = 0.0


# ── spot report (SALUTE) ───────────────────────────────────────────


class _CodedEnum(enum.Enum):
    """Enum whose members carry a wire code and a display label."""

    def __init__(self, code: Any, label: str) -> None:
        self.code = code
        self.label = label

    def __str__(self) -> str:
        return self.label


class Size(_CodedEnum):
    TEAM = (0, "Team")
    SQUAD = (1, "Squad")
    SECTION = (11, "Section")
    PLATOON = (111, "Platoon/Detachment")
    COMPANY = (2, "Company/Battery/Troop")
    BATTALION = (22, "Battalion/Squadron")
    REGIMENT = (222, "Regiment/Group")
    BRIGADE = (3, "Brigade")
    DIVISION = (33, "Division")
    CORPS = (333, "Corps")
    ARMY = (3333, "Army")
    ARMY_GROUP = (33333, "Army Group/Front")
    REGION = (333333, "Region")
    COMMAND = (44, "Command")


class Activity(_CodedEnum):
    ATTACKING = ("Attacking", "Attacking")
    DEFENDING = ("Defending", "Defending")
    MOVING = ("Moving", "Moving")
    STATIONARY = ("Stationary", "Stationary")
    CACHE = ("Cache", "Cache")
    CIVILIAN = ("Civilian", "Civilian")
    PERSONNEL_RECOVERY = ("Personnel Recovery", "Personnel Recovery")


class Unit(_CodedEnum):
    CONVENTIONAL = ("Conventional", "Conventional")
    IRREGULAR = ("Irregular", "Irregular")
    COALITION = ("Coalition", "Coalition")
    HOST_NATION = ("Host Nation", "Host Nation")
    NGO = ("NGO", "NGO")
    CIVILIAN = ("Civilian", "Civilian")
    FACILITY = ("Facility", "Facility")


class Equipment(_CodedEnum):
    MISSILE_LAUNCHER = ("Missile Launcher H", "Hostile Missile Launcher")
    GRENADE_LAUNCHER = ("Grenade Launcher H", "Hostile Grenade Launcher")
    HOWITZER = ("Howitzer H", "Hostile Howitzer")
    ARMORED_PERSONNEL_CARRIER = (
        "Armored Personnel Carrier H",
        "Hostile Armored Personnel Carrier",
    )
    GROUND_VEHICLE = ("Ground Vehicle H", "Hostile Ground Vehicle")
    ARMORED_TANK = ("Armored Tank H", "Hostile Armored Tank")
    RIFLE = ("Rifle H", "Hostile Rifle")
    IED = ("IED H", "Hostile IED")


@dataclass
class SpotReport:
    """A SALUTE spot report: size, activity, location, unit, time, equipment.

    ``message_id`` is regenerated for every new report; keep it only when
    re-sending an update of an earlier report.
    """

    size: Size
    activity: Activity
    location_x: float
    location_y: float
    location_wkid: int
    unit: Unit
    equipment: Equipment
    time: Optional[datetime] = None
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def regenerate_message_id(self) -> None:
        self.message_id = str(uuid.uuid4())
