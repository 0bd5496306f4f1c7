"""
radius_utils.py — Location-based radius filtering for case alerts.

Provides:
    - Haversine distance calculation between two (lat, lon) points
    - Per-user radius checks (is a case inside the user's alert radius?)
    - Batch filtering of candidate user locations
    - Bounding-box pre-filter for performance at scale

All distances are in **kilometers**. Coordinates are in **decimal degrees**.

Mathematical Foundation — Haversine Formula
============================================
The Haversine formula computes the great-circle distance between two points
on a sphere given their latitudes and longitudes.

Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂):

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

Where:
    φ  = latitude in radians
    λ  = longitude in radians
    R  = Earth's mean radius ≈ 6,371 km
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Tuple

from backend.app.core.config import KM_PER_MILE


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_KM: float = 6_371.0088  # IAU mean radius


def miles_to_km(miles: float) -> float:
    return miles * KM_PER_MILE


# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    """A geographic point in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not (-90.0 <= self.latitude <= 90.0):
            raise ValueError(
                f"Latitude must be in [-90, 90], got {self.latitude}"
            )
        if not (-180.0 <= self.longitude <= 180.0):
            raise ValueError(
                f"Longitude must be in [-180, 180], got {self.longitude}"
            )

    @property
    def lat_rad(self) -> float:
        return math.radians(self.latitude)

    @property
    def lon_rad(self) -> float:
        return math.radians(self.longitude)


@dataclass
class UserLocation:
    """A candidate recipient's last known position."""
    user_id: int
    location: Coordinate

    # Populated by filtering functions, not by the caller
    distance_km: Optional[float] = field(default=None, repr=False)


# ---------------------------------------------------------------------------
# Haversine implementation
# ---------------------------------------------------------------------------

def haversine(point1: Coordinate, point2: Coordinate) -> float:
    """
    Great-circle distance between two points.

    Returns
    -------
    float
        Distance in kilometers, rounded to 4 decimal places.

    Examples
    --------
    >>> haversine(Coordinate(0, 0), Coordinate(0, 0))
    0.0
    """
    d_lat = point2.lat_rad - point1.lat_rad
    d_lon = point2.lon_rad - point1.lon_rad

    a = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(point1.lat_rad)
        * math.cos(point2.lat_rad)
        * math.sin(d_lon / 2.0) ** 2
    )

    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))

    return round(EARTH_RADIUS_KM * c, 4)


# ---------------------------------------------------------------------------
# Bounding-box pre-filter (fast rejection before Haversine)
# ---------------------------------------------------------------------------

def bounding_box(center: Coordinate, radius_km: float) -> Tuple[float, float, float, float]:
    """
    Lat/lon box that fully contains the circle (center, radius_km).

    Returns (min_lat, max_lat, min_lon, max_lon) in degrees. When the box
    crosses the antimeridian, min_lon > max_lon and the longitude range
    wraps through ±180.
    """
    angular = radius_km / EARTH_RADIUS_KM

    min_lat = center.latitude - math.degrees(angular)
    max_lat = center.latitude + math.degrees(angular)

    # A pole inside the circle: every longitude is in range
    if min_lat <= -90.0 or max_lat >= 90.0:
        return (max(min_lat, -90.0), min(max_lat, 90.0), -180.0, 180.0)

    # Widest longitude offset of the circle (tangent meridian)
    ratio = math.sin(angular) / math.cos(math.radians(center.latitude))
    if ratio >= 1.0:
        return (min_lat, max_lat, -180.0, 180.0)
    delta_lon = math.degrees(math.asin(ratio))

    min_lon = center.longitude - delta_lon
    max_lon = center.longitude + delta_lon
    if min_lon < -180.0:
        min_lon += 360.0
    if max_lon > 180.0:
        max_lon -= 360.0
    return (min_lat, max_lat, min_lon, max_lon)


def _inside_bbox(
    lat: float, lon: float,
    min_lat: float, max_lat: float,
    min_lon: float, max_lon: float,
) -> bool:
    if not min_lat <= lat <= max_lat:
        return False
    if min_lon <= max_lon:
        return min_lon <= lon <= max_lon
    return lon >= min_lon or lon <= max_lon


# ---------------------------------------------------------------------------
# Radius filtering
# ---------------------------------------------------------------------------

def is_inside_radius(
    user_location: Coordinate,
    event_location: Coordinate,
    radius_km: float,
) -> Tuple[bool, float]:
    """
    Check whether an event falls within a user's alert radius.

    Returns
    -------
    (inside, distance_km)
    """
    if radius_km <= 0:
        raise ValueError(f"Radius must be positive, got {radius_km}")

    dist = haversine(user_location, event_location)
    return (dist <= radius_km, dist)


def users_within_radius(
    center: Coordinate,
    candidates: Iterable[UserLocation],
    radius_for: Callable[[UserLocation], float],
    *,
    max_radius_km: Optional[float] = None,
) -> List[UserLocation]:
    """
    Filter candidates to those whose own radius contains ``center``.

    Parameters
    ----------
    center : Coordinate
        Event location.
    candidates : iterable of UserLocation
        Users with a known position.
    radius_for : callable
        Returns the radius (km) to test a given candidate against.
    max_radius_km : float | None
        Upper bound on any candidate's radius; enables the bounding-box
        pre-filter.

    Returns
    -------
    list of UserLocation
        Matches sorted nearest-first, with ``distance_km`` populated.
    """
    bbox = bounding_box(center, max_radius_km) if max_radius_km else None
    matched: List[UserLocation] = []

    for candidate in candidates:
        loc = candidate.location
        if bbox is not None and not _inside_bbox(loc.latitude, loc.longitude, *bbox):
            continue

        radius = radius_for(candidate)
        if radius <= 0:
            continue

        dist = haversine(center, loc)
        if dist <= radius:
            candidate.distance_km = dist
            matched.append(candidate)

    matched.sort(key=lambda c: c.distance_km or 0.0)
    return matched
