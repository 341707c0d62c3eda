"""
Coordinates and coordinate handlers.

A `SphereCoord` is a latitude/longitude pair. Latitude ranges from -90
(south) to +90 (north); longitude from -180 (west) up to but not including
+180 (east), -180 and +180 naming the same meridian. Latitude is cropped at
the poles while longitude wraps around.

The ranking core never hardcodes spherical-earth math: distances and
formatting go through a coordinate handler, so the same grid and evaluation
code also works for e.g. 1-D time coordinates.
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, TypeVar

from gridlocate.errors import CoordinateError

logger = logging.getLogger(__name__)

MINIMUM_LATITUDE = -90.0
MAXIMUM_LATITUDE = 90.0
MINIMUM_LONGITUDE = -180.0
MAXIMUM_LONGITUDE = 180.0 - 1e-10

EARTH_RADIUS_IN_MILES = 3963.191
KM_PER_MILE = 1.609
MILES_PER_DEGREE = math.pi * 2 * EARTH_RADIUS_IN_MILES / 360.0
KM_PER_DEGREE = MILES_PER_DEGREE * KM_PER_MILE

# Returned by spherical distance when the computation goes badly wrong.
BAD_DISTANCE = 1000000.0


class CoordHandling(str, Enum):
    ACCEPT = "accept"
    VALIDATE = "validate"
    COERCE = "coerce"
    COERCE_WARN = "coerce-warn"


@dataclass(frozen=True)
class SphereCoord:
    lat: float
    long: float

    def __str__(self) -> str:
        return f"({self.lat:.2f},{self.long:.2f})"

    def as_array(self) -> tuple[float, float]:
        return (self.lat, self.long)


@dataclass(frozen=True)
class TimeCoord:
    value: float

    def __str__(self) -> str:
        return f"{self.value:g}"


def valid_sphere_coord(lat: float, long: float) -> bool:
    return (
        MINIMUM_LATITUDE <= lat <= MAXIMUM_LATITUDE
        and MINIMUM_LONGITUDE <= long <= MAXIMUM_LONGITUDE
    )


def coerce_sphere_coord(lat: float, long: float) -> tuple[float, float]:
    """Crop latitude to the poles and wrap longitude into [-180, 180)."""
    lat = min(max(lat, MINIMUM_LATITUDE), MAXIMUM_LATITUDE)
    while long > MAXIMUM_LONGITUDE:
        long -= 360.0
    while long < MINIMUM_LONGITUDE:
        long += 360.0
    return lat, long


def make_sphere_coord(
    lat: float, long: float, method: CoordHandling | str = CoordHandling.VALIDATE
) -> SphereCoord:
    """
    Create a coordinate, handling out-of-bounds values according to `method`.

    Args:
        lat: Latitude in degrees.
        long: Longitude in degrees.
        method: "accept" takes the values as-is, "validate" raises
            `CoordinateError` when out of bounds, "coerce" crops/wraps and
            "coerce-warn" does the same after warning.

    Returns:
        The (possibly adjusted) coordinate.
    """
    method = CoordHandling(method)
    if method is CoordHandling.ACCEPT:
        return SphereCoord(lat, long)
    if method is CoordHandling.VALIDATE:
        if not valid_sphere_coord(lat, long):
            raise CoordinateError(f"Coordinates out of bounds: ({lat:.2f},{long:.2f})")
        return SphereCoord(lat, long)
    if method is CoordHandling.COERCE_WARN and not valid_sphere_coord(lat, long):
        message = f"Coordinates out of bounds: ({lat:.2f},{long:.2f})"
        logger.warning(message)
        warnings.warn(message)
    return SphereCoord(*coerce_sphere_coord(lat, long))


def parse_sphere_coord(
    text: str, method: CoordHandling | str = CoordHandling.VALIDATE
) -> SphereCoord:
    """Parse a "lat,long" string."""
    parts = text.split(",")
    if len(parts) != 2:
        raise CoordinateError(f"Expected 'lat,long', got {text!r}")
    try:
        lat, long = float(parts[0]), float(parts[1])
    except ValueError as e:
        raise CoordinateError(f"Bad coordinate {text!r}: {e}", e) from e
    if math.isnan(lat) or math.isnan(long):
        raise CoordinateError(f"Bad coordinate {text!r}: NaN component")
    return make_sphere_coord(lat, long, method)


def spheredist_miles(p1: SphereCoord | None, p2: SphereCoord | None) -> float:
    """Great-circle distance in miles."""
    if p1 is None or p2 is None:
        return BAD_DISTANCE
    lat1, long1 = math.radians(p1.lat), math.radians(p1.long)
    lat2, long2 = math.radians(p2.lat), math.radians(p2.long)
    anglecos = math.sin(lat1) * math.sin(lat2) + math.cos(lat1) * math.cos(
        lat2
    ) * math.cos(long2 - long1)
    # Identical points can produce a cosine slightly above 1.
    if abs(anglecos) > 1.0:
        if abs(anglecos) > 1.000001:
            logger.warning(
                "Out-of-range cosine value %f in spherical distance between %s and %s",
                anglecos,
                p1,
                p2,
            )
            return BAD_DISTANCE
        return 0.0
    return EARTH_RADIUS_IN_MILES * math.acos(anglecos)


def spheredist(p1: SphereCoord | None, p2: SphereCoord | None) -> float:
    """Great-circle distance in kilometers."""
    miles = spheredist_miles(p1, p2)
    if miles == BAD_DISTANCE:
        return miles
    return miles * KM_PER_MILE


def degree_dist(c1: SphereCoord, c2: SphereCoord) -> float:
    """Distance treating degrees as a constant length in both directions."""
    return math.sqrt((c1.lat - c2.lat) ** 2 + (c1.long - c2.long) ** 2)


def coord_to_point(coord: SphereCoord | TimeCoord) -> tuple[float, ...]:
    """Coordinate as a point for spatial indexing."""
    if isinstance(coord, TimeCoord):
        return (coord.value,)
    return (coord.lat, coord.long)


def point_to_coord(point) -> SphereCoord | TimeCoord:
    if len(point) == 1:
        return TimeCoord(float(point[0]))
    return SphereCoord(float(point[0]), float(point[1]))


# -----------------------------------------------------------------------------
# Coordinate handlers
# -----------------------------------------------------------------------------

Co = TypeVar("Co")


class CoordHandler(Protocol[Co]):
    def distance(self, c1: Co, c2: Co) -> float: ...

    def format_coord(self, coord: Co) -> str: ...

    def format_distance(self, dist: float) -> str: ...


class SphereCoordHandler:
    """Distances in kilometers along a great circle."""

    units = "km"

    def distance(self, c1: SphereCoord, c2: SphereCoord) -> float:
        return spheredist(c1, c2)

    def format_coord(self, coord: SphereCoord) -> str:
        return str(coord)

    def format_distance(self, dist: float) -> str:
        return f"{dist:.2f} km"


class TimeCoordHandler:
    """Distances as absolute differences along a time axis."""

    def __init__(self, units: str = "years"):
        self.units = units

    def distance(self, c1: TimeCoord, c2: TimeCoord) -> float:
        return abs(c1.value - c2.value)

    def format_coord(self, coord: TimeCoord) -> str:
        return str(coord)

    def format_distance(self, dist: float) -> str:
        return f"{dist:.2f} {self.units}"


__all__ = [
    "CoordHandling",
    "SphereCoord",
    "TimeCoord",
    "make_sphere_coord",
    "parse_sphere_coord",
    "valid_sphere_coord",
    "coerce_sphere_coord",
    "spheredist",
    "spheredist_miles",
    "degree_dist",
    "coord_to_point",
    "point_to_coord",
    "CoordHandler",
    "SphereCoordHandler",
    "TimeCoordHandler",
    "KM_PER_DEGREE",
    "MILES_PER_DEGREE",
    "BAD_DISTANCE",
]
