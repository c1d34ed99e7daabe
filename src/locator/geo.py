"""Great-circle helpers."""

import math
from typing import Tuple

EARTH_RADIUS_METERS = 6_371_000


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two coordinates."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def offset_coordinates(lat: float, lon: float, distance: float, bearing: float) -> Tuple[float, float]:
    """
    Move a coordinate by `distance` meters along `bearing` radians.

    Uses the small-offset approximation, then clamps latitude and wraps
    longitude so the result always stays a valid coordinate.
    """
    delta_lat = (distance * math.cos(bearing)) / EARTH_RADIUS_METERS * (180 / math.pi)
    denom = EARTH_RADIUS_METERS * math.cos(math.radians(lat))
    if abs(denom) < 1e-6:
        denom = EARTH_RADIUS_METERS
    delta_lon = (distance * math.sin(bearing)) / denom * (180 / math.pi)

    new_lat = max(-90.0, min(90.0, lat + delta_lat))
    new_lon = lon + delta_lon
    if new_lon > 180 or new_lon < -180:
        new_lon = ((new_lon + 180) % 360) - 180
    return new_lat, new_lon
