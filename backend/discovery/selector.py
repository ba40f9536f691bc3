"""
Gate-Type Selection — physical or virtual, once per run.

Physical gates win only when the event has at least two confident,
well-separated clusters:

    count ≥ 2
    AND location variance > max_location_variance
    AND mean physical confidence ≥ confidence_threshold
    AND (mean physical > mean virtual OR count ≥ 3)

Anything else falls back to virtual gates. The choice is exclusive: one
run never materializes both kinds.

``derive_gate_candidates`` runs the in-memory half of the pipeline
(filter → outliers → cluster/segment → score → select) on a check-in frame.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

import pandas as pd
import structlog

from discovery.clustering import discover_physical_clusters
from discovery.geo import location_spread, reject_outliers, valid_gps_mask
from discovery.scoring import score_physical_clusters
from discovery.segmentation import discover_virtual_gates, use_virtual_gates
from discovery.types import CandidateGate, GateType

logger = structlog.get_logger()


@dataclass
class GateSelection:
    gate_type: GateType
    reason: str
    candidates: list[CandidateGate]
    physical_count: int
    virtual_count: int
    physical_avg_confidence: float
    virtual_avg_confidence: float


@dataclass
class DerivationResult:
    selection: GateSelection
    physical: list[CandidateGate] = field(default_factory=list)
    virtual: list[CandidateGate] = field(default_factory=list)
    total_checkins: int = 0
    valid_gps_checkins: int = 0
    outliers_removed: int = 0
    location_variance: float = 0.0
    virtual_mode_reason: str = ""

    def summary(self) -> dict[str, Any]:
        return {
            "gate_type": self.selection.gate_type,
            "selection_reason": self.selection.reason,
            "physical_candidates": len(self.physical),
            "virtual_candidates": len(self.virtual),
            "physical_avg_confidence": round(self.selection.physical_avg_confidence, 4),
            "virtual_avg_confidence": round(self.selection.virtual_avg_confidence, 4),
            "valid_gps_checkins": self.valid_gps_checkins,
            "outliers_removed": self.outliers_removed,
            "location_variance": self.location_variance,
        }


def _mean_confidence(candidates: list[CandidateGate]) -> float:
    if not candidates:
        return 0.0
    return sum(c.confidence for c in candidates) / len(candidates)


def select_gate_type(
    physical: list[CandidateGate],
    virtual: list[CandidateGate],
    *,
    location_variance: float,
    thresholds: Any,
) -> GateSelection:
    physical_avg = _mean_confidence(physical)
    virtual_avg = _mean_confidence(virtual)

    if len(physical) < 2:
        reason = "insufficient_physical_gates"
    elif location_variance <= thresholds.max_location_variance:
        reason = "low_location_variance"
    elif physical_avg < thresholds.confidence_threshold:
        reason = "insufficient_physical_gate_quality"
    elif not (physical_avg > virtual_avg or len(physical) >= 3):
        reason = "virtual_gates_more_confident"
    else:
        reason = "physical_gates_high_confidence"

    gate_type: GateType = "physical" if reason == "physical_gates_high_confidence" else "virtual"
    return GateSelection(
        gate_type=gate_type,
        reason=reason,
        candidates=[
            replace(c, derivation=replace(c.derivation, selection_reason=reason))
            for c in (physical if gate_type == "physical" else virtual)
        ],
        physical_count=len(physical),
        virtual_count=len(virtual),
        physical_avg_confidence=physical_avg,
        virtual_avg_confidence=virtual_avg,
    )


def derive_gate_candidates(frame: pd.DataFrame, event_id: str, thresholds: Any) -> DerivationResult:
    """Run filtering, clustering, scoring, and selection on a check-in frame."""
    valid = frame[valid_gps_mask(frame)] if not frame.empty else frame
    clean = reject_outliers(valid, sigma=thresholds.outlier_sigma)

    lat_std, lon_std = location_spread(valid)
    location_variance = (lat_std + lon_std) / 2

    physical = score_physical_clusters(discover_physical_clusters(clean, thresholds), thresholds)

    virtual_mode, virtual_reason = use_virtual_gates(frame, valid, thresholds) if not frame.empty else (True, "no_checkins")
    virtual = discover_virtual_gates(frame, event_id, thresholds) if virtual_mode else []

    selection = select_gate_type(physical, virtual, location_variance=location_variance, thresholds=thresholds)

    logger.info(
        "gate_selection.completed",
        event_id=str(event_id),
        gate_type=selection.gate_type,
        reason=selection.reason,
        physical_candidates=len(physical),
        virtual_candidates=len(virtual),
        virtual_mode_reason=virtual_reason,
    )
    return DerivationResult(
        selection=selection,
        physical=physical,
        virtual=virtual,
        total_checkins=len(frame),
        valid_gps_checkins=len(valid),
        outliers_removed=len(valid) - len(clean),
        location_variance=location_variance,
        virtual_mode_reason=virtual_reason,
    )
