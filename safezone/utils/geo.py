"""
Great-circle geometry for geofence containment and proximity search.
"""

import math
from typing import Any, Tuple

EARTH_RADIUS_METERS = 6371000


def _lat_lng(point: Any) -> Tuple[float, float]:
    """Accept models/objects with lat/lng attributes or plain dicts."""
    if isinstance(point, dict):
        return float(point["lat"]), float(point["lng"])
    return float(point.lat), float(point.lng)


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance in meters between two points using the Haversine formula."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)
    a = math.sin(delta_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def distance_meters(a: Any, b: Any) -> float:
    """
    Distance in meters between two coordinates.

    Args:
        a: Object or dict with lat/lng
        b: Object or dict with lat/lng

    Returns:
        Great-circle distance in meters

    Raises:
        ValueError: Either point is outside the WGS84 range
    """
    lat1, lng1 = _lat_lng(a)
    lat2, lng2 = _lat_lng(b)
    if not (is_valid_coordinate(lat1, lng1) and is_valid_coordinate(lat2, lng2)):
        raise ValueError(f"Coordinates out of range: ({lat1}, {lng1}), ({lat2}, {lng2})")
    return haversine_distance(lat1, lng1, lat2, lng2)


def is_valid_coordinate(lat: float, lng: float) -> bool:
    try:
        return -90 <= float(lat) <= 90 and -180 <= float(lng) <= 180
    except (TypeError, ValueError):
        return False
