from math import asin, cos, radians, sin, sqrt

from .config import settings


EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = 111.32


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometers."""
    lat1_rad = radians(lat1)
    lat2_rad = radians(lat2)
    delta_lat = radians(lat2 - lat1)
    delta_lon = radians(lon2 - lon1)
    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * asin(sqrt(a))


def bounding_box(lat: float, lon: float, radius_km: float) -> tuple[float, float, float, float]:
    """(min_lat, max_lat, min_lon, max_lon) enclosing a circle of radius_km."""
    dlat = radius_km / KM_PER_DEGREE_LAT
    cos_lat = max(cos(radians(lat)), 0.01)
    dlon = radius_km / (KM_PER_DEGREE_LAT * cos_lat)
    return lat - dlat, lat + dlat, lon - dlon, lon + dlon


def eta_range_minutes(distance_km: float) -> tuple[float, float]:
    # faster speed gives the lower bound
    fastest = distance_km / settings.ETA_MAX_SPEED_KMPH * 60
    slowest = distance_km / settings.ETA_MIN_SPEED_KMPH * 60
    return round(fastest, 2), round(slowest, 2)
