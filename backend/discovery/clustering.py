"""
Spatial Clustering — physical gate discovery from GPS check-ins.

Grid-seeded nearest-centroid clustering with an accuracy-adaptive grid:

  1. Pick a grid precision from the mean GPS accuracy of the input
       ≤ 15 m → 5 decimals (~1.1 m)
       ≤ 30 m → 4 decimals (~11 m)
       else   → 3 decimals (~111 m)
  2. Round every fix to the grid; each distinct cell is a seed.
  3. Move every fix to its nearest seed within min(50 m, 2 × seed accuracy).
  4. Drop small clusters, then require temporal AND spatial consistency.

The input must already be GPS-filtered and outlier-free
(``discovery.geo.valid_gps_mask`` / ``reject_outliers``). Output is
deterministic for a given input frame.

Usage:
    from discovery.clustering import discover_physical_clusters

    clusters = discover_physical_clusters(clean_df, thresholds)
    # → [SpatialCluster(latitude=40.7128, longitude=-74.006, sample_count=60, ...)]
"""

from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd
import structlog

from discovery.geo import haversine_matrix, round_half_away
from discovery.types import SpatialCluster

logger = structlog.get_logger()

# (max mean accuracy in meters, decimals, approximate cell size in meters)
PRECISION_TIERS = (
    (15.0, 5, 1.1),
    (30.0, 4, 11.0),
)
COARSE_PRECISION = (3, 111.0)

MAX_ASSIGNMENT_RADIUS_METERS = 50.0

# Cluster validation
MIN_SPAN_HOURS = 0.5
TEMPORAL_SAMPLE_OVERRIDE = 10
MAX_CLUSTER_STD_DEGREES = 0.001
SPATIAL_SAMPLE_OVERRIDE = 20


def precision_tier(mean_accuracy: float) -> tuple[int, float]:
    """Grid decimals and approximate cell size for a mean accuracy."""
    for max_accuracy, decimals, meters in PRECISION_TIERS:
        if mean_accuracy <= max_accuracy:
            return decimals, meters
    return COARSE_PRECISION


def build_seeds(lats: np.ndarray, lons: np.ndarray, accuracies: np.ndarray, decimals: int) -> dict[str, np.ndarray]:
    """Grid cells in first-appearance order with their mean accuracy."""
    cell_lats = round_half_away(lats, decimals)
    cell_lons = round_half_away(lons, decimals)

    order: dict[tuple[float, float], int] = {}
    cell_ids = np.empty(len(cell_lats), dtype=int)
    for i, key in enumerate(zip(cell_lats.tolist(), cell_lons.tolist())):
        cell_ids[i] = order.setdefault(key, len(order))

    counts = np.bincount(cell_ids, minlength=len(order))
    acc_sums = np.bincount(cell_ids, weights=accuracies, minlength=len(order))
    return {
        "lat": np.array([key[0] for key in order], dtype=float),
        "lon": np.array([key[1] for key in order], dtype=float),
        "count": counts,
        "avg_accuracy": acc_sums / np.maximum(counts, 1),
    }


def assign_to_seeds(lats: np.ndarray, lons: np.ndarray, seeds: dict[str, np.ndarray]) -> np.ndarray:
    """Index of the nearest seed within its radius for each point, or -1."""
    if len(lats) == 0 or len(seeds["lat"]) == 0:
        return np.full(len(lats), -1, dtype=int)

    radius = np.minimum(MAX_ASSIGNMENT_RADIUS_METERS, 2.0 * seeds["avg_accuracy"])
    distances = haversine_matrix(lats, lons, seeds["lat"], seeds["lon"])
    distances = np.where(distances <= radius[None, :], distances, np.inf)

    # argmin returns the first minimum, so ties go to the earlier seed
    nearest = np.argmin(distances, axis=1)
    reachable = np.isfinite(distances[np.arange(len(lats)), nearest])
    return np.where(reachable, nearest, -1)


def _category_counts(categories: pd.Series) -> dict[str, int]:
    counts: dict[str, int] = {}
    for category in categories:
        counts[category] = counts.get(category, 0) + 1
    return counts


def _std(values: pd.Series) -> float:
    std = values.astype(float).std()
    return 0.0 if pd.isna(std) else float(std)


def _mean_or_none(values: pd.Series) -> float | None:
    mean = pd.to_numeric(values, errors="coerce").mean()
    return None if pd.isna(mean) else float(mean)


def summarize_cluster(seed_index: int, members: pd.DataFrame, precision_meters: float) -> SpatialCluster:
    counts = _category_counts(members["category"])
    timestamps = pd.to_datetime(members["timestamp"])
    return SpatialCluster(
        seed_index=seed_index,
        latitude=float(members["app_lat"].mean()),
        longitude=float(members["app_lon"].mean()),
        sample_count=int(len(members)),
        category_counts=counts,
        dominant_category=max(counts, key=counts.get),
        first_seen=timestamps.min().to_pydatetime(),
        last_seen=timestamps.max().to_pydatetime(),
        avg_accuracy=float(members["app_accuracy"].mean()),
        lat_std=_std(members["app_lat"]),
        lon_std=_std(members["app_lon"]),
        unique_wristbands=int(members["wristband_id"].dropna().nunique()),
        unique_staff=int(members["staff_id"].dropna().nunique()),
        active_hours=int(timestamps.dt.floor("h").nunique()),
        avg_processing_time_ms=_mean_or_none(members["processing_time_ms"]),
        precision_meters=precision_meters,
        checkin_ids=[str(checkin_id) for checkin_id in members["checkin_id"]],
    )


def is_consistent_cluster(cluster: SpatialCluster) -> bool:
    temporal_ok = cluster.temporal_span_hours >= MIN_SPAN_HOURS or cluster.sample_count >= TEMPORAL_SAMPLE_OVERRIDE
    spatial_ok = (
        cluster.lat_std < MAX_CLUSTER_STD_DEGREES
        or cluster.lon_std < MAX_CLUSTER_STD_DEGREES
        or cluster.sample_count >= SPATIAL_SAMPLE_OVERRIDE
    )
    return temporal_ok and spatial_ok


def discover_physical_clusters(frame: pd.DataFrame, thresholds: Any) -> list[SpatialCluster]:
    """
    Cluster clean GPS check-ins into physical locations.

    Args:
        frame: Valid, outlier-free check-ins (see ``discovery.checkins``)
        thresholds: DiscoveryThresholds (uses ``min_checkins_for_gate``)

    Returns:
        Surviving clusters in seed order.
    """
    if frame.empty:
        return []

    lats = frame["app_lat"].to_numpy(dtype=float)
    lons = frame["app_lon"].to_numpy(dtype=float)
    accuracies = frame["app_accuracy"].to_numpy(dtype=float)

    decimals, precision_meters = precision_tier(float(np.mean(accuracies)))
    seeds = build_seeds(lats, lons, accuracies, decimals)
    assignment = assign_to_seeds(lats, lons, seeds)

    clusters: list[SpatialCluster] = []
    dropped_small = 0
    dropped_inconsistent = 0
    for seed_index in range(len(seeds["lat"])):
        positions = np.flatnonzero(assignment == seed_index)
        if len(positions) == 0:
            continue
        if len(positions) < thresholds.min_checkins_for_gate:
            dropped_small += 1
            continue
        cluster = summarize_cluster(seed_index, frame.iloc[positions], precision_meters)
        if not is_consistent_cluster(cluster):
            dropped_inconsistent += 1
            continue
        clusters.append(cluster)

    logger.info(
        "clustering.completed",
        points=len(frame),
        unclustered=int((assignment < 0).sum()),
        seeds=len(seeds["lat"]),
        clusters=len(clusters),
        dropped_small=dropped_small,
        dropped_inconsistent=dropped_inconsistent,
        precision_meters=precision_meters,
    )
    return clusters
