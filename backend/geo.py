from math import atan2, cos, radians, sin, sqrt

from backend.schemas import Location

EARTH_RADIUS_METERS = 6371000


def distance_meters(a: Location, b: Location) -> float:
    """Great-circle distance between two points using the Haversine formula."""
    lat1, lon1, lat2, lon2 = map(radians, [a.lat, a.lon, b.lat, b.lon])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = min(1.0, sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2)
    return EARTH_RADIUS_METERS * 2 * atan2(sqrt(h), sqrt(1 - h))


def within(a: Location, b: Location, limit_meters: float) -> tuple[bool, float]:
    # exactly at the limit counts as inside
    distance = distance_meters(a, b)
    return distance <= limit_meters, distance
