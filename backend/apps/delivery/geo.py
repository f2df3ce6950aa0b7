import math
from decimal import Decimal, ROUND_HALF_UP

EARTH_RADIUS_KM = 6371.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two points in kilometers.
    """
    lon1, lat1, lon2, lat2 = map(math.radians, [float(lon1), float(lat1), float(lon2), float(lat2)])

    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(math.sqrt(a))

    return c * EARTH_RADIUS_KM


def distance_km(lat1, lon1, lat2, lon2):
    """
    Straight-line distance as a 2dp Decimal, or None when any coordinate is missing.
    """
    if None in (lat1, lon1, lat2, lon2):
        return None
    km = haversine_distance(lat1, lon1, lat2, lon2)
    return Decimal(str(km)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
