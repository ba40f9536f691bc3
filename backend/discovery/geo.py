"""
Geo helpers — haversine distance, GPS quality filtering, outlier rejection.

All distances are great-circle meters on a sphere of radius 6,371 km.
Check-in frames use the column names produced by
``discovery.checkins.load_checkins`` (``app_lat``, ``app_lon``,
``app_accuracy``).
"""

from __future__ import annotations

import math

import numpy as np
import pandas as pd

EARTH_RADIUS_METERS = 6_371_000.0

MAX_GPS_ACCURACY_METERS = 100.0
NULL_ISLAND_EPSILON = 0.0001


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points, in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(a)))


def haversine_matrix(
    lats: np.ndarray,
    lons: np.ndarray,
    ref_lats: np.ndarray,
    ref_lons: np.ndarray,
) -> np.ndarray:
    """Pairwise distances (meters): rows are points, columns are references."""
    phi1 = np.radians(np.asarray(lats, dtype=float))[:, None]
    phi2 = np.radians(np.asarray(ref_lats, dtype=float))[None, :]
    d_phi = phi2 - phi1
    d_lambda = np.radians(np.asarray(ref_lons, dtype=float))[None, :] - np.radians(
        np.asarray(lons, dtype=float)
    )[:, None]
    a = np.sin(d_phi / 2) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * np.arcsin(np.minimum(1.0, np.sqrt(a)))


def _is_number(value) -> bool:
    if value is None:
        return False
    try:
        return not math.isnan(float(value))
    except (TypeError, ValueError):
        return False


def has_usable_coordinates(lat, lon) -> bool:
    """Coordinates in range and away from null island (accuracy not considered)."""
    if not (_is_number(lat) and _is_number(lon)):
        return False
    lat, lon = float(lat), float(lon)
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        return False
    return not (abs(lat) < NULL_ISLAND_EPSILON and abs(lon) < NULL_ISLAND_EPSILON)


def is_valid_gps(lat, lon, accuracy) -> bool:
    """True when a fix is good enough to cluster on."""
    if not has_usable_coordinates(lat, lon):
        return False
    if not _is_number(accuracy):
        return False
    return 0 < float(accuracy) <= MAX_GPS_ACCURACY_METERS


def valid_gps_mask(frame: pd.DataFrame) -> pd.Series:
    """Vectorized ``is_valid_gps`` over a check-in frame."""
    if frame.empty:
        return pd.Series([], dtype=bool, index=frame.index)
    lat = pd.to_numeric(frame["app_lat"], errors="coerce")
    lon = pd.to_numeric(frame["app_lon"], errors="coerce")
    acc = pd.to_numeric(frame["app_accuracy"], errors="coerce")
    in_range = lat.between(-90, 90) & lon.between(-180, 180)
    null_island = (lat.abs() < NULL_ISLAND_EPSILON) & (lon.abs() < NULL_ISLAND_EPSILON)
    accurate = (acc > 0) & (acc <= MAX_GPS_ACCURACY_METERS)
    return (in_range & ~null_island & accurate).fillna(False).astype(bool)


def reject_outliers(frame: pd.DataFrame, sigma: float = 3.0) -> pd.DataFrame:
    """Drop points farther than ``sigma`` standard deviations from the mean.

    Fewer than two points, or an axis with zero spread, leaves that axis
    untested.
    """
    if len(frame) < 2:
        return frame

    keep = pd.Series(True, index=frame.index)
    for column in ("app_lat", "app_lon"):
        values = frame[column].astype(float)
        std = values.std()
        if pd.isna(std) or std == 0:
            continue
        keep &= (values - values.mean()).abs() <= sigma * std
    return frame[keep]


def round_half_away(values: np.ndarray, decimals: int) -> np.ndarray:
    """Round like SQL ROUND(numeric): halves go away from zero."""
    scale = 10.0**decimals
    values = np.asarray(values, dtype=float)
    return np.sign(values) * np.floor(np.abs(values) * scale + 0.5) / scale


def location_spread(frame: pd.DataFrame) -> tuple[float, float]:
    """Sample standard deviation of latitude and longitude (0.0 when undefined)."""
    if len(frame) < 2:
        return 0.0, 0.0
    lat_std = frame["app_lat"].astype(float).std()
    lon_std = frame["app_lon"].astype(float).std()
    return (
        0.0 if pd.isna(lat_std) else float(lat_std),
        0.0 if pd.isna(lon_std) else float(lon_std),
    )
