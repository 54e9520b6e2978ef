# techdispatch/core/dispatch/geo.py
"""
Distance and ETA helpers for the dispatch engine.

Deterministic, offline, no external routing APIs: great-circle distance
plus a constant average city speed.
"""
from __future__ import annotations

import math
from typing import Optional

from techdispatch.core.domain import EtaEstimate, GeoPoint

__all__ = [
    "EARTH_RADIUS_KM", "AVERAGE_CITY_SPEED_KMH",
    "haversine_km", "distance_between", "estimate_eta", "format_eta",
]


EARTH_RADIUS_KM = 6371.0
AVERAGE_CITY_SPEED_KMH = 30.0


# ---------------------------------------------------------------------------
# Haversine distance
# ---------------------------------------------------------------------------

def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    R = EARTH_RADIUS_KM
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    return R * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_between(a: Optional[GeoPoint], b: Optional[GeoPoint]) -> Optional[float]:
    """Distance in km, or None when either point is unknown."""
    if a is None or b is None:
        return None
    return haversine_km(a.latitude, a.longitude, b.latitude, b.longitude)


# ---------------------------------------------------------------------------
# ETA
# ---------------------------------------------------------------------------

def format_eta(minutes: int) -> str:
    """``"25 mins"`` below an hour, ``"1h 5m"`` from an hour up."""
    if minutes < 60:
        return f"{minutes} mins"
    return f"{minutes // 60}h {minutes % 60}m"


def estimate_eta(distance_km: float, *, speed_kmh: float = AVERAGE_CITY_SPEED_KMH) -> EtaEstimate:
    """Travel time at a constant speed, rounded up to whole minutes."""
    minutes = math.ceil(distance_km / speed_kmh * 60)
    return EtaEstimate(minutes=minutes, text=format_eta(minutes))
