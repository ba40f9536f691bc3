"""
Category Segmentation — virtual gates when location cannot separate gates.

Virtual mode is chosen when any of:
  - no check-in carries a usable GPS fix
  - latitude AND longitude spread are below ``max_location_variance``
  - fewer than ``min_total_checkins`` check-ins spread over ≥ 2 categories

Within virtual mode every category with at least
``min_checkins_per_category`` check-ins becomes a candidate, scored by
``discovery.scoring.score_virtual_segment``.
"""

from __future__ import annotations

from typing import Any

import pandas as pd
import structlog

from discovery.geo import location_spread, valid_gps_mask
from discovery.scoring import score_virtual_segment
from discovery.types import CandidateGate, CategorySegment

logger = structlog.get_logger()


def use_virtual_gates(frame: pd.DataFrame, valid: pd.DataFrame, thresholds: Any) -> tuple[bool, str]:
    """Whether the event's data profile calls for virtual gates, and why."""
    if valid.empty:
        return True, "no_usable_gps"

    lat_std, lon_std = location_spread(valid)
    if lat_std < thresholds.max_location_variance and lon_std < thresholds.max_location_variance:
        return True, "low_location_variance"

    if len(frame) < thresholds.min_total_checkins and frame["category"].nunique() >= 2:
        return True, "few_checkins_multiple_categories"

    return False, "location_signal_sufficient"


def build_category_segments(frame: pd.DataFrame, min_per_category: int) -> list[CategorySegment]:
    """Per-category aggregates in first-appearance order."""
    if frame.empty:
        return []

    gps_ok = valid_gps_mask(frame)
    event_lat_std, event_lon_std = location_spread(frame[gps_ok])
    total = len(frame)
    segments: list[CategorySegment] = []
    for category in pd.unique(frame["category"]):
        rows = frame[frame["category"] == category]
        if len(rows) < min_per_category:
            continue
        lat_std, lon_std = location_spread(rows[gps_ok.loc[rows.index]])
        timestamps = pd.to_datetime(rows["timestamp"])
        accuracy = pd.to_numeric(rows["app_accuracy"], errors="coerce").mean()
        processing = pd.to_numeric(rows["processing_time_ms"], errors="coerce").mean()
        segments.append(
            CategorySegment(
                category=str(category),
                sample_count=int(len(rows)),
                event_total=int(total),
                unique_wristbands=int(rows["wristband_id"].dropna().nunique()),
                unique_staff=int(rows["staff_id"].dropna().nunique()),
                active_hours=int(timestamps.dt.floor("h").nunique()),
                first_seen=timestamps.min().to_pydatetime(),
                last_seen=timestamps.max().to_pydatetime(),
                lat_std=lat_std,
                lon_std=lon_std,
                avg_accuracy=None if pd.isna(accuracy) else float(accuracy),
                avg_processing_time_ms=None if pd.isna(processing) else float(processing),
                event_lat_std=event_lat_std,
                event_lon_std=event_lon_std,
            )
        )
    return segments


def discover_virtual_gates(frame: pd.DataFrame, event_id: str, thresholds: Any) -> list[CandidateGate]:
    """Score category segments, ordered by confidence then volume."""
    segments = build_category_segments(frame, thresholds.min_checkins_per_category)
    candidates = []
    for segment in segments:
        candidate = score_virtual_segment(segment, event_id, thresholds)
        if candidate is None:
            logger.debug(
                "segmentation.category_below_confidence",
                category=segment.category,
                sample_count=segment.sample_count,
            )
            continue
        candidates.append(candidate)
    return sorted(candidates, key=lambda c: (-c.confidence, -c.sample_count, c.category))
