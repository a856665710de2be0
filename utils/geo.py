"""Great-circle helpers shared by routing and settlement"""

import math
from typing import Optional, Tuple

from config import Config

Coordinate = Tuple[float, float]


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres between two lat/lng points"""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return Config.EARTH_RADIUS_KM * c


def travel_minutes(distance_km: float, speed_kmh: Optional[float] = None) -> float:
    """Duration at the assumed average speed; non-positive speeds use the configured one"""
    speed = speed_kmh if speed_kmh is not None and speed_kmh > 0 else Config.AVERAGE_SPEED_KMH
    return distance_km / speed * 60


def is_valid_coordinate(lat, lng) -> bool:
    if lat is None or lng is None:
        return False
    try:
        lat_f, lng_f = float(lat), float(lng)
    except (TypeError, ValueError):
        return False
    if math.isnan(lat_f) or math.isnan(lng_f):
        return False
    return -90.0 <= lat_f <= 90.0 and -180.0 <= lng_f <= 180.0
