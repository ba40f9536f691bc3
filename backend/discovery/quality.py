"""
Data quality report for gate discovery.

Summarizes GPS coverage and accuracy for an event, the candidates the
current data would produce, and whether there is enough data to run.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import pandas as pd
from sqlalchemy.ext.asyncio import AsyncSession

from discovery.checkins import load_checkins
from discovery.geo import valid_gps_mask
from discovery.selector import DerivationResult, derive_gate_candidates

# (max average accuracy in meters, label)
GPS_QUALITY_LABELS = ((15.0, "excellent"), (30.0, "good"), (50.0, "fair"))

ACCURACY_BUCKETS = ((10.0, "le_10"), (20.0, "le_20"), (30.0, "le_30"), (50.0, "le_50"))

SAME_LOCATION_VARIANCE = 0.00001
MIN_GOOD_GPS_CHECKINS = 10


def gps_quality_label(avg_accuracy: float | None) -> str:
    if avg_accuracy is None:
        return "no_gps_data"
    for maximum, label in GPS_QUALITY_LABELS:
        if avg_accuracy <= maximum:
            return label
    return "poor"


def accuracy_distribution(accuracies: pd.Series) -> dict[str, int]:
    buckets = {label: 0 for _, label in ACCURACY_BUCKETS}
    buckets["gt_50"] = 0
    for value in accuracies.dropna():
        for maximum, label in ACCURACY_BUCKETS:
            if value <= maximum:
                buckets[label] += 1
                break
        else:
            buckets["gt_50"] += 1
    return buckets


def _pct(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0.0


@dataclass
class DataQualityReport:
    event_id: str
    total_checkins: int
    checkins_with_gps: int
    checkins_with_gps_pct: float
    checkins_with_good_gps: int
    checkins_with_good_gps_pct: float
    avg_gps_accuracy_meters: float | None
    location_variance: float
    gps_quality_score: str
    accuracy_distribution: dict[str, int]
    physical_gates_found: int
    virtual_gates_found: int
    recommended_strategy: str
    selection_reason: str
    can_enforce_gates: bool
    sufficient_data: bool
    recommendations: list[str] = field(default_factory=list)
    generated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "total_checkins": self.total_checkins,
            "data_quality": {
                "checkins_with_gps": self.checkins_with_gps,
                "checkins_with_gps_pct": self.checkins_with_gps_pct,
                "checkins_with_good_gps": self.checkins_with_good_gps,
                "checkins_with_good_gps_pct": self.checkins_with_good_gps_pct,
                "avg_gps_accuracy_meters": self.avg_gps_accuracy_meters,
                "location_variance": round(self.location_variance, 6),
                "gps_quality_score": self.gps_quality_score,
                "accuracy_distribution": dict(self.accuracy_distribution),
            },
            "gate_discovery": {
                "physical_gates_found": self.physical_gates_found,
                "virtual_gates_found": self.virtual_gates_found,
                "recommended_strategy": self.recommended_strategy,
                "selection_reason": self.selection_reason,
                "can_enforce_gates": self.can_enforce_gates,
            },
            "sufficient_data": self.sufficient_data,
            "recommendations": list(self.recommendations),
            "generated_at": self.generated_at.isoformat(),
        }


def _recommendations(
    *,
    total: int,
    good: int,
    physical: int,
    virtual: int,
    location_variance: float,
    thresholds: Any,
) -> list[str]:
    recs = []
    if total < thresholds.min_total_checkins:
        recs.append(f"Need at least {thresholds.min_total_checkins} check-ins for reliable gate discovery")
    if good < MIN_GOOD_GPS_CHECKINS:
        recs.append("GPS data quality too low - consider virtual gates")
    if physical == 0 and virtual == 0:
        recs.append("Unable to discover any gates - check data quality")
    if physical == 1:
        recs.append("Only one physical gate found - may need more data")
    if good > 0 and location_variance < SAME_LOCATION_VARIANCE:
        recs.append("All check-ins at same location - virtual gates recommended")
    if not recs:
        if physical >= 2:
            recs.append(f"Gate discovery ready - {physical} physical gates available")
        else:
            recs.append(f"Gate discovery ready - {virtual} virtual gates available")
    return recs


def summarize_quality(
    event_id: uuid.UUID | str,
    frame: pd.DataFrame,
    derivation: DerivationResult,
    thresholds: Any,
) -> DataQualityReport:
    total = len(frame)
    if total:
        with_gps = int((frame["app_lat"].notna() & frame["app_lon"].notna()).sum())
        good = int(valid_gps_mask(frame).sum())
        accuracies = pd.to_numeric(frame["app_accuracy"], errors="coerce")
    else:
        with_gps = good = 0
        accuracies = pd.Series([], dtype=float)

    avg_accuracy = accuracies.mean()
    avg_accuracy = None if pd.isna(avg_accuracy) else round(float(avg_accuracy), 2)
    good_pct = _pct(good, total)

    physical = len(derivation.physical)
    virtual = len(derivation.virtual)
    selection = derivation.selection
    strategy = selection.gate_type if selection.candidates else "insufficient_data"

    return DataQualityReport(
        event_id=str(event_id),
        total_checkins=total,
        checkins_with_gps=with_gps,
        checkins_with_gps_pct=_pct(with_gps, total),
        checkins_with_good_gps=good,
        checkins_with_good_gps_pct=good_pct,
        avg_gps_accuracy_meters=avg_accuracy,
        location_variance=derivation.location_variance,
        gps_quality_score=gps_quality_label(avg_accuracy),
        accuracy_distribution=accuracy_distribution(accuracies),
        physical_gates_found=physical,
        virtual_gates_found=virtual,
        recommended_strategy=strategy,
        selection_reason=selection.reason,
        can_enforce_gates=physical >= 2 or virtual >= 1,
        sufficient_data=not (total < thresholds.min_total_checkins and good_pct < thresholds.min_good_gps_pct),
        recommendations=_recommendations(
            total=total,
            good=good,
            physical=physical,
            virtual=virtual,
            location_variance=derivation.location_variance,
            thresholds=thresholds,
        ),
    )


async def build_quality_report(
    db: AsyncSession,
    event_id: uuid.UUID,
    thresholds: Any,
) -> tuple[DataQualityReport, pd.DataFrame, DerivationResult]:
    """Load check-ins, derive candidates, and summarize. Read-only."""
    frame = await load_checkins(db, event_id)
    derivation = derive_gate_candidates(frame, str(event_id), thresholds)
    return summarize_quality(event_id, frame, derivation, thresholds), frame, derivation
