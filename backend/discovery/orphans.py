"""
Orphan Assignment — attach gate-less check-ins to existing gates.

Three candidate strategies per orphan, best one wins if ≥ ``orphan_min_confidence``:

  gps_proximity     physical gates within max(100 m, 5 × accuracy)
                    confidence = 1 − d / (3 × accuracy), ×1.2 when the gate
                    has an enforced/probation binding for the category
  category_match    virtual gates bound (enforced/probation) to the category
                    confidence = binding confidence
  temporal_pattern  gate of the nearest already-assigned check-in of the same
                    category, same clock hour, within 5 minutes, other wristband
                    confidence = 0.70

Fixes with usable coordinates but missing or poor accuracy still get GPS
candidates, with an assumed accuracy and a confidence penalty.

Ranking is deterministic: confidence desc, then strategy priority, then
distance, time delta, and gate id.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import pandas as pd
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Gate, GateBinding
from discovery.checkins import assign_checkin, count_orphans, load_checkins
from discovery.geo import MAX_GPS_ACCURACY_METERS, haversine_meters, has_usable_coordinates
from discovery.scoring import clamp_confidence

logger = structlog.get_logger()

METHOD_PRIORITY = {"gps_proximity": 0, "category_match": 1, "temporal_pattern": 2}
ACTIVE_BINDING_STATUSES = ("enforced", "probation")
INELIGIBLE_GATE_STATUSES = ("rejected", "inactive")
BINDING_BOOST = 1.2
TEMPORAL_PATTERN_CONFIDENCE = 0.70
MAX_PREVIEW_ASSIGNMENTS = 200


@dataclass(frozen=True)
class GateSnapshot:
    gate_id: str
    name: str
    latitude: float | None
    longitude: float | None
    status: str

    @property
    def is_virtual(self) -> bool:
        return self.latitude is None or self.longitude is None


@dataclass
class AssignmentCandidate:
    checkin_id: str
    gate_id: str
    method: str
    confidence: float
    distance_meters: float | None = None
    time_delta_seconds: float | None = None

    def rank_key(self) -> tuple:
        return (
            -self.confidence,
            METHOD_PRIORITY[self.method],
            self.distance_meters if self.distance_meters is not None else math.inf,
            self.time_delta_seconds if self.time_delta_seconds is not None else math.inf,
            self.gate_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkin_id": self.checkin_id,
            "gate_id": self.gate_id,
            "method": self.method,
            "confidence": round(self.confidence, 4),
            "distance_meters": round(self.distance_meters, 2) if self.distance_meters is not None else None,
            "time_delta_seconds": self.time_delta_seconds,
        }


@dataclass
class AssignmentReport:
    event_id: str
    dry_run: bool = False
    success: bool = True
    error: str | None = None
    message: str | None = None
    orphans_considered: int = 0
    checkins_assigned: int = 0
    gates_affected: int = 0
    avg_confidence: float = 0.0
    by_method: dict[str, int] = field(default_factory=dict)
    remaining_orphans: int = 0
    assignments: list[AssignmentCandidate] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = {
            "success": self.success,
            "event_id": self.event_id,
            "dry_run": self.dry_run,
            "orphans_considered": self.orphans_considered,
            "checkins_assigned": self.checkins_assigned,
            "gates_affected": self.gates_affected,
            "avg_confidence": round(self.avg_confidence, 3),
            "by_method": dict(self.by_method),
            "remaining_orphans": self.remaining_orphans,
            "assignments": [a.to_dict() for a in self.assignments[:MAX_PREVIEW_ASSIGNMENTS]],
        }
        if not self.success:
            data["error"] = self.error
            data["message"] = self.message
        return data


# ── Candidate strategies ───────────────────────────────────────────────────


def _effective_accuracy(accuracy: Any, thresholds: Any) -> tuple[float, bool]:
    """Accuracy to score with, and whether the fix is degraded."""
    if accuracy is None or pd.isna(accuracy) or float(accuracy) <= 0:
        return thresholds.degraded_gps_accuracy_meters, True
    accuracy = float(accuracy)
    if accuracy > MAX_GPS_ACCURACY_METERS:
        return MAX_GPS_ACCURACY_METERS, True
    return accuracy, False


def gps_candidates(
    orphan: Any,
    gates: list[GateSnapshot],
    bindings: dict[tuple[str, str], tuple[str, float]],
    thresholds: Any,
) -> list[AssignmentCandidate]:
    if not has_usable_coordinates(orphan.app_lat, orphan.app_lon):
        return []

    accuracy, degraded = _effective_accuracy(orphan.app_accuracy, thresholds)
    radius = max(thresholds.orphan_min_radius_meters, 5 * accuracy)
    candidates = []
    for gate in gates:
        if gate.is_virtual:
            continue
        distance = haversine_meters(orphan.app_lat, orphan.app_lon, gate.latitude, gate.longitude)
        if distance > radius:
            continue
        confidence = max(0.0, 1.0 - distance / (3 * accuracy))
        binding = bindings.get((gate.gate_id, orphan.category))
        if binding and binding[0] in ACTIVE_BINDING_STATUSES:
            confidence *= BINDING_BOOST
        confidence = clamp_confidence(confidence)
        if degraded:
            confidence *= thresholds.degraded_gps_penalty
        candidates.append(
            AssignmentCandidate(
                checkin_id=orphan.checkin_id,
                gate_id=gate.gate_id,
                method="gps_proximity",
                confidence=confidence,
                distance_meters=distance,
            )
        )
    return candidates


def category_candidates(
    orphan: Any,
    gates: list[GateSnapshot],
    bindings: dict[tuple[str, str], tuple[str, float]],
) -> list[AssignmentCandidate]:
    candidates = []
    for gate in gates:
        if not gate.is_virtual:
            continue
        binding = bindings.get((gate.gate_id, orphan.category))
        if not binding or binding[0] not in ACTIVE_BINDING_STATUSES:
            continue
        candidates.append(
            AssignmentCandidate(
                checkin_id=orphan.checkin_id,
                gate_id=gate.gate_id,
                method="category_match",
                confidence=clamp_confidence(binding[1]),
            )
        )
    return candidates


def temporal_candidate(
    orphan: Any,
    assigned: pd.DataFrame,
    eligible_gate_ids: set[str],
    thresholds: Any,
) -> AssignmentCandidate | None:
    if assigned.empty:
        return None

    orphan_ts = pd.Timestamp(orphan.timestamp)
    deltas = (assigned["timestamp"] - orphan_ts).abs().dt.total_seconds()
    mask = (
        (assigned["category"] == orphan.category)
        & (assigned["hour"] == orphan_ts.floor("h"))
        & (deltas <= thresholds.temporal_window_seconds)
        & (assigned["wristband_id"] != orphan.wristband_id)
        & assigned["gate_id"].isin(eligible_gate_ids)
    )
    if not mask.any():
        return None

    # Stable sort keeps (timestamp, checkin_id) order among equal deltas
    nearest = deltas[mask].sort_values(kind="mergesort").index[0]
    return AssignmentCandidate(
        checkin_id=orphan.checkin_id,
        gate_id=str(assigned.at[nearest, "gate_id"]),
        method="temporal_pattern",
        confidence=TEMPORAL_PATTERN_CONFIDENCE,
        time_delta_seconds=float(deltas[nearest]),
    )


def best_assignments(
    orphans: pd.DataFrame,
    assigned: pd.DataFrame,
    gates: list[GateSnapshot],
    bindings: dict[tuple[str, str], tuple[str, float]],
    thresholds: Any,
) -> list[AssignmentCandidate]:
    """Pick at most one candidate per orphan, in orphan order."""
    eligible = [gate for gate in gates if gate.status not in INELIGIBLE_GATE_STATUSES]
    if orphans.empty or not eligible:
        return []

    eligible_ids = {gate.gate_id for gate in eligible}
    if not assigned.empty:
        assigned = assigned.assign(hour=assigned["timestamp"].dt.floor("h"))

    chosen = []
    for orphan in orphans.itertuples(index=False):
        candidates = gps_candidates(orphan, eligible, bindings, thresholds)
        candidates.extend(category_candidates(orphan, eligible, bindings))
        temporal = temporal_candidate(orphan, assigned, eligible_ids, thresholds)
        if temporal is not None:
            candidates.append(temporal)

        candidates = [c for c in candidates if c.confidence >= thresholds.orphan_min_confidence]
        if candidates:
            chosen.append(min(candidates, key=AssignmentCandidate.rank_key))
    return chosen


# ── Catalog access ─────────────────────────────────────────────────────────


async def load_gate_snapshots(db: AsyncSession, event_id: uuid.UUID) -> list[GateSnapshot]:
    result = await db.execute(
        select(Gate.gate_id, Gate.name, Gate.latitude, Gate.longitude, Gate.status)
        .where(Gate.event_id == event_id)
        .order_by(Gate.created_at, Gate.gate_id)
    )
    return [
        GateSnapshot(
            gate_id=str(row.gate_id),
            name=row.name,
            latitude=row.latitude,
            longitude=row.longitude,
            status=row.status,
        )
        for row in result.all()
    ]


async def load_bindings(db: AsyncSession, event_id: uuid.UUID) -> dict[tuple[str, str], tuple[str, float]]:
    result = await db.execute(
        select(GateBinding.gate_id, GateBinding.category, GateBinding.status, GateBinding.confidence).where(
            GateBinding.event_id == event_id
        )
    )
    return {(str(row.gate_id), row.category): (row.status, float(row.confidence or 0.0)) for row in result.all()}


async def propose_assignments(
    db: AsyncSession,
    event_id: uuid.UUID,
    thresholds: Any,
) -> tuple[list[AssignmentCandidate], pd.DataFrame]:
    """Read-only: the assignment each orphan would receive, plus the orphan frame."""
    orphans = await load_checkins(db, event_id, unassigned_only=True)
    assigned = await load_checkins(db, event_id, assigned_only=True)
    gates = await load_gate_snapshots(db, event_id)
    bindings = await load_bindings(db, event_id)
    return best_assignments(orphans, assigned, gates, bindings, thresholds), orphans


async def assign_orphan_checkins(
    db: AsyncSession,
    event_id: uuid.UUID,
    thresholds: Any,
    *,
    dry_run: bool = False,
) -> AssignmentReport:
    """
    Assign every orphan that has a good enough candidate.

    Flushes but does not commit; the caller owns the transaction.
    """
    proposals, orphans = await propose_assignments(db, event_id, thresholds)
    report = AssignmentReport(event_id=str(event_id), dry_run=dry_run, orphans_considered=len(orphans))

    if dry_run:
        applied = proposals
    else:
        metadata_by_id = dict(zip(orphans["checkin_id"], orphans["metadata"])) if not orphans.empty else {}
        assigned_at = datetime.utcnow().isoformat()
        applied = []
        for proposal in proposals:
            ok = await assign_checkin(
                db,
                checkin_id=proposal.checkin_id,
                gate_id=uuid.UUID(proposal.gate_id),
                metadata=metadata_by_id.get(proposal.checkin_id, {}),
                annotation={
                    "auto_assigned": True,
                    "assignment_method": proposal.method,
                    "assignment_confidence": round(proposal.confidence, 4),
                    "assignment_distance_meters": (
                        round(proposal.distance_meters, 2) if proposal.distance_meters is not None else None
                    ),
                    "assigned_at": assigned_at,
                },
            )
            if ok:
                applied.append(proposal)
        await db.flush()

    report.assignments = applied
    report.checkins_assigned = len(applied)
    report.gates_affected = len({a.gate_id for a in applied})
    report.avg_confidence = sum(a.confidence for a in applied) / len(applied) if applied else 0.0
    for assignment in applied:
        report.by_method[assignment.method] = report.by_method.get(assignment.method, 0) + 1
    if dry_run:
        report.remaining_orphans = len(orphans) - len(applied)
    else:
        report.remaining_orphans = await count_orphans(db, event_id)

    logger.info(
        "orphan_assignment.completed",
        event_id=str(event_id),
        dry_run=dry_run,
        orphans=report.orphans_considered,
        assigned=report.checkins_assigned,
        gates_affected=report.gates_affected,
        avg_confidence=round(report.avg_confidence, 3),
    )
    return report
