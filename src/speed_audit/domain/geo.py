"""Spherical geometry helpers (haversine, bearings, offsets).

Distances are meters, bearings are degrees clockwise from north in [0, 360).
Good enough for the short hops between sample points; not a geodesic library.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two lat/lon points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_M * c


def segment_lengths_m(lats: Sequence[float], lons: Sequence[float]) -> np.ndarray:
    """Haversine length of each consecutive pair, shape (n - 1,)."""
    lat = np.radians(np.asarray(lats, dtype=float))
    lon = np.radians(np.asarray(lons, dtype=float))
    if lat.size < 2:
        return np.zeros(0)
    d_phi = np.diff(lat)
    d_lambda = np.diff(lon)
    a = np.sin(d_phi / 2.0) ** 2 + np.cos(lat[:-1]) * np.cos(lat[1:]) * np.sin(d_lambda / 2.0) ** 2
    a = np.clip(a, 0.0, 1.0)
    return 2.0 * EARTH_RADIUS_M * np.arctan2(np.sqrt(a), np.sqrt(1.0 - a))


def cumulative_lengths_m(lats: Sequence[float], lons: Sequence[float]) -> np.ndarray:
    """Arc length at each vertex, starting at 0.0; monotone non-decreasing."""
    seg = segment_lengths_m(lats, lons)
    return np.concatenate(([0.0], np.cumsum(seg)))


def bearing_deg(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial bearing from point 1 towards point 2."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_lambda = math.radians(lon2 - lon1)

    y = math.sin(d_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(d_lambda)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def destination(lat: float, lon: float, bearing: float, distance_m: float) -> tuple[float, float]:
    """Point reached after travelling distance_m along bearing from (lat, lon)."""
    phi = math.radians(lat)
    lam = math.radians(lon)
    theta = math.radians(bearing)
    delta = distance_m / EARTH_RADIUS_M

    phi2 = math.asin(
        math.sin(phi) * math.cos(delta) + math.cos(phi) * math.sin(delta) * math.cos(theta)
    )
    lam2 = lam + math.atan2(
        math.sin(theta) * math.sin(delta) * math.cos(phi),
        math.cos(delta) - math.sin(phi) * math.sin(phi2),
    )
    return math.degrees(phi2), math.degrees(lam2)


def lateral_offset(
    lat: float, lon: float, heading: float, distance_m: float
) -> tuple[float, float]:
    """Shift a point sideways (to the right of heading) by distance_m."""
    return destination(lat, lon, (heading + 90.0) % 360.0, distance_m)
