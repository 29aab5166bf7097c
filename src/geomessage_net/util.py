"""Date formatting and angle helpers shared by the report builders."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional

# Day before month; deployed peers parse exactly this layout.
GEOMESSAGE_DATE_FORMAT = "%Y-%d-%m %H:%M:%S"

TWO_PI = 2 * math.pi
FIVE_PI_OVER_TWO = 5 * math.pi / 2


def format_geomessage_date(when: Optional[datetime] = None) -> str:
    """Format *when* (default: now) as a UTC Geomessage timestamp.

    Naive datetimes are taken to be UTC already.
    """
    if when is None:
        when = datetime.now(timezone.utc)
    elif when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc).strftime(GEOMESSAGE_DATE_FORMAT)


def parse_geomessage_date(text: str) -> datetime:
    """Parse a Geomessage timestamp into an aware UTC datetime."""
    return datetime.strptime(text.strip(), GEOMESSAGE_DATE_FORMAT).replace(
        tzinfo=timezone.utc
    )


def to_compass_heading_radians(trig_heading_radians: float) -> float:
    """Convert a trigonometric angle (0 = east, counter-clockwise) to a
    compass heading (0 = north, clockwise), both in radians, in ``[0, 2π)``.
    """
    return (FIVE_PI_OVER_TWO - trig_heading_radians) % TWO_PI


def planar_heading_degrees(
    from_lon: float, from_lat: float, to_lon: float, to_lat: float
) -> float:
    """Compass heading in degrees of the straight line between two points,
    treating lon/lat as planar coordinates.
    """
    trig_degrees = math.degrees(math.atan2(to_lat - from_lat, to_lon - from_lon))
    return (90.0 - trig_degrees) % 360.0


def calculate_bearing_degrees(
    from_lon: float, from_lat: float, to_lon: float, to_lat: float
) -> float:
    """Great-circle initial bearing from one point to another, in degrees."""
    from_lat_rad = math.radians(from_lat)
    to_lat_rad = math.radians(to_lat)
    delta_lon_rad = math.radians(to_lon - from_lon)

    y = math.sin(delta_lon_rad) * math.cos(to_lat_rad)
    x = (
        math.cos(from_lat_rad) * math.sin(to_lat_rad)
        - math.sin(from_lat_rad) * math.cos(to_lat_rad) * math.cos(delta_lon_rad)
    )
    return (math.degrees(math.atan2(y, x)) + 360) % 360


def fix_angle_degrees(angle: float, minimum: float, maximum: float) -> float:
    """Shift *angle* by whole turns until it falls in ``[minimum, maximum]``."""
    while angle < minimum:
        angle += 360
    while angle > maximum:
        angle -= 360
    return angle
