"""Utility helpers for the risk engine."""

from .geo import DISTANCE_BANDS, distance_band_score, haversine_km, nearest_distance_km

__all__ = ["DISTANCE_BANDS", "distance_band_score", "haversine_km", "nearest_distance_km"]
