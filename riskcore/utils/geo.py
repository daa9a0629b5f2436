"""Geodesic helpers used by the location factors."""

from __future__ import annotations

from math import asin, cos, radians, sin, sqrt
from typing import Iterable, Optional, Sequence, Tuple

EARTH_RADIUS_KM = 6371.0

# (upper bound in km, exclusive; risk score). Anything farther scores 1.0.
DISTANCE_BANDS: Sequence[Tuple[float, float]] = (
    (1.0, 0.1),
    (10.0, 0.3),
    (100.0, 0.6),
    (1000.0, 0.8),
)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1, lon1, lat2, lon2 = map(radians, (lat1, lon1, lat2, lon2))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    return 2 * asin(min(1.0, sqrt(a))) * EARTH_RADIUS_KM


def nearest_distance_km(lat: float, lng: float, known: Iterable[Tuple[float, float]]) -> Optional[float]:
    """Return the distance to the closest known point, ``None`` when there are none."""

    distances = [haversine_km(lat, lng, k_lat, k_lng) for k_lat, k_lng in known]
    if not distances:
        return None
    return min(distances)


def distance_band_score(distance_km: float) -> float:
    """Map a distance onto the risk ladder; a band's lower bound is inclusive."""

    for upper, score in DISTANCE_BANDS:
        if distance_km < upper:
            return score
    return 1.0
