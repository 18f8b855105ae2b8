import math

from bloodmatch.models import GeoPoint

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance in kilometers, unrounded."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)

    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    )
    # rounding can push h past 1 for near-antipodal points
    return EARTH_RADIUS_KM * 2 * math.asin(math.sqrt(min(1.0, h)))


def display_km(distance: float) -> float:
    return round(distance, 1)
