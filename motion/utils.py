"""Utility helpers for Motion."""

from __future__ import annotations

import math
from datetime import UTC, datetime

EARTH_RADIUS_MILES = 3958.8
MILES_TO_METERS = 1609.34
# One degree of latitude is a near-constant distance on the sphere.
MILES_PER_DEGREE_LATITUDE = EARTH_RADIUS_MILES * math.pi / 180


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalize aware datetimes to naive UTC; naive values are assumed UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def is_valid_coordinate(longitude: float, latitude: float) -> bool:
    if longitude is None or latitude is None:
        return False
    if math.isnan(longitude) or math.isnan(latitude):
        return False
    return -180.0 <= longitude <= 180.0 and -90.0 <= latitude <= 90.0


def haversine_miles(
    longitude_a: float, latitude_a: float, longitude_b: float, latitude_b: float
) -> float:
    """Great-circle distance in miles between two [lon, lat] points."""
    lat1 = math.radians(latitude_a)
    lat2 = math.radians(latitude_b)
    d_lat = lat2 - lat1
    d_lon = math.radians(longitude_b - longitude_a)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_MILES * math.asin(min(1.0, math.sqrt(h)))


def bounding_box(
    longitude: float, latitude: float, radius_miles: float
) -> tuple[float | None, float | None, float, float]:
    """Return ``(min_lon, max_lon, min_lat, max_lat)`` enclosing the radius.

    The longitude bounds are ``None`` when the box would touch a pole or wrap
    across the antimeridian; callers then filter on latitude only.
    """
    lat_delta = radius_miles / MILES_PER_DEGREE_LATITUDE
    min_lat = latitude - lat_delta
    max_lat = latitude + lat_delta
    if min_lat <= -90.0 or max_lat >= 90.0:
        return None, None, max(min_lat, -90.0), min(max_lat, 90.0)

    widest = max(abs(min_lat), abs(max_lat))
    lon_delta = lat_delta / math.cos(math.radians(widest))
    min_lon = longitude - lon_delta
    max_lon = longitude + lon_delta
    if min_lon < -180.0 or max_lon > 180.0:
        return None, None, min_lat, max_lat
    return min_lon, max_lon, min_lat, max_lat
