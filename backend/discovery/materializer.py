"""
Gate Materialization — reconcile candidates with the persistent catalog.

For each candidate (highest confidence first):
  1. Match an existing gate
       physical → nearest physical gate within ``match_distance_meters``
       virtual  → exact name, else a virtual gate whose name contains the category
                  (exact names are claimed for every candidate before any fallback)
  2. Update the match, or insert a new ``auto_created`` gate
  3. Upsert the (gate, category) binding on the confidence ladder
       unbound → probation (≥ 0.75) → enforced (≥ 0.90)
     Status and confidence never move down; ``rejected`` is sticky.
  4. Attach unassigned check-ins near the centroid (physical) or of the
     same category (virtual)

Each gate is matched by at most one candidate per run, and a gate created
in this run is never a match target for a later candidate. Reviewer-set
gate statuses (approved/rejected/inactive) are never overwritten.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

import pandas as pd
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Gate, GateBinding
from discovery.checkins import assign_checkin, load_checkins
from discovery.geo import haversine_meters, has_usable_coordinates
from discovery.types import CandidateGate

logger = structlog.get_logger()

BINDING_STATUS_RANK = {"unbound": 0, "probation": 1, "enforced": 2}
BOUND_STATUSES = ("probation", "enforced")
REVIEWED_GATE_STATUSES = ("approved", "rejected", "inactive")


@dataclass
class MaterializationPlan:
    candidate: CandidateGate
    action: Literal["create", "update"]
    gate_id: uuid.UUID | None = None
    match_distance_meters: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "gate_id": str(self.gate_id) if self.gate_id else None,
            "match_distance_meters": (
                round(self.match_distance_meters, 2) if self.match_distance_meters is not None else None
            ),
            "candidate": self.candidate.to_dict(),
        }


@dataclass
class MaterializationResult:
    gates_created: int = 0
    gates_updated: int = 0
    bindings_upserted: int = 0
    checkins_reassigned: int = 0
    gate_ids: list[str] = field(default_factory=list)
    plans: list[MaterializationPlan] = field(default_factory=list)


def gate_status_for(confidence: float, thresholds: Any) -> str:
    return "active" if confidence >= thresholds.active_confidence else "probation"


def binding_status_for(confidence: float, thresholds: Any) -> str:
    if confidence >= thresholds.binding_enforce_confidence:
        return "enforced"
    if confidence >= thresholds.binding_probation_confidence:
        return "probation"
    return "unbound"


def merge_binding_status(current: str | None, computed: str) -> str:
    """Ladder merge: never downgrade, and never undo an explicit rejection."""
    if current is None:
        return computed
    if current == "rejected":
        return current
    if BINDING_STATUS_RANK.get(computed, 0) > BINDING_STATUS_RANK.get(current, 0):
        return computed
    return current


def _nearest_physical_gate(candidate: CandidateGate, gates: list[Any], thresholds: Any) -> tuple[Any | None, float | None]:
    best_gate, best_distance = None, None
    for gate in gates:
        if gate.is_virtual:
            continue
        distance = haversine_meters(candidate.latitude, candidate.longitude, gate.latitude, gate.longitude)
        if distance > thresholds.match_distance_meters:
            continue
        if best_distance is None or distance < best_distance:
            best_gate, best_distance = gate, distance
    return best_gate, best_distance


def match_candidates(
    candidates: list[CandidateGate],
    gates: list[Any],
    thresholds: Any,
) -> list[tuple[Any | None, float | None]]:
    """
    Pair each candidate with the existing gate it should update, or None.

    A gate is claimed by at most one candidate per run. Virtual candidates
    take exact-name matches first; only then does an unmatched virtual
    candidate fall back to an unclaimed virtual gate whose name contains its
    category. ``gates`` must be in a stable order.
    """
    matches: list[tuple[Any | None, float | None]] = [(None, None)] * len(candidates)
    claimed: set[int] = set()

    for index, candidate in enumerate(candidates):
        if candidate.gate_type != "virtual":
            continue
        for gate in gates:
            if gate.is_virtual and id(gate) not in claimed and gate.name == candidate.name:
                matches[index] = (gate, None)
                claimed.add(id(gate))
                break

    for index, candidate in enumerate(candidates):
        if matches[index][0] is not None:
            continue
        unclaimed = [gate for gate in gates if id(gate) not in claimed]
        if candidate.gate_type == "virtual":
            gate = next(
                (g for g in unclaimed if g.is_virtual and candidate.category in g.name),
                None,
            )
            distance = None
        else:
            gate, distance = _nearest_physical_gate(candidate, unclaimed, thresholds)
        if gate is not None:
            matches[index] = (gate, distance)
            claimed.add(id(gate))
    return matches


async def load_event_gates(db: AsyncSession, event_id: uuid.UUID) -> list[Gate]:
    result = await db.execute(
        select(Gate).where(Gate.event_id == event_id).order_by(Gate.created_at, Gate.gate_id)
    )
    return list(result.scalars().all())


async def plan_materialization(
    db: AsyncSession,
    event_id: uuid.UUID,
    candidates: list[CandidateGate],
    thresholds: Any,
) -> list[MaterializationPlan]:
    """Read-only preview of what ``materialize_candidates`` would do."""
    gates = await load_event_gates(db, event_id)
    plans = []
    for candidate, (matched, distance) in zip(candidates, match_candidates(candidates, gates, thresholds)):
        if matched is None:
            plans.append(MaterializationPlan(candidate=candidate, action="create"))
        else:
            plans.append(
                MaterializationPlan(
                    candidate=candidate,
                    action="update",
                    gate_id=matched.gate_id,
                    match_distance_meters=distance,
                )
            )
    return plans


def _apply_candidate_fields(gate: Gate, candidate: CandidateGate, thresholds: Any) -> None:
    gate.name = candidate.name
    gate.gate_type = candidate.gate_type
    gate.latitude = candidate.latitude
    gate.longitude = candidate.longitude
    if gate.status not in REVIEWED_GATE_STATUSES:
        gate.status = gate_status_for(candidate.confidence, thresholds)
    derivation = candidate.derivation
    gate.derivation_method = derivation.derivation_method
    gate.confidence_score = candidate.confidence
    gate.purity_score = derivation.purity
    gate.spatial_variance = derivation.spatial_variance
    gate.temporal_consistency = derivation.temporal_consistency
    gate.category_entropy = derivation.category_entropy
    gate.sample_count = candidate.sample_count
    gate.derivation = {**(gate.derivation or {}), **derivation.to_dict()}


async def upsert_binding(
    db: AsyncSession,
    *,
    gate: Gate,
    category: str,
    confidence: float,
    sample_count: int,
    thresholds: Any,
) -> GateBinding:
    now = datetime.utcnow()
    computed = binding_status_for(confidence, thresholds)
    result = await db.execute(
        select(GateBinding).where(GateBinding.gate_id == gate.gate_id, GateBinding.category == category)
    )
    binding = result.scalar_one_or_none()
    if binding is None:
        binding = GateBinding(
            binding_id=uuid.uuid4(),
            gate_id=gate.gate_id,
            event_id=gate.event_id,
            category=category,
            status=computed,
            confidence=confidence,
            sample_count=sample_count,
            bound_at=now if computed in BOUND_STATUSES else None,
        )
        db.add(binding)
        return binding

    binding.status = merge_binding_status(binding.status, computed)
    binding.confidence = max(binding.confidence or 0.0, confidence)
    binding.sample_count = (binding.sample_count or 0) + sample_count
    if binding.bound_at is None and binding.status in BOUND_STATUSES:
        binding.bound_at = now
    return binding


async def _reassign_orphans(
    db: AsyncSession,
    *,
    gate: Gate,
    candidate: CandidateGate,
    orphans: pd.DataFrame,
    taken: set[str],
    thresholds: Any,
) -> int:
    if orphans.empty:
        return 0

    assigned_at = datetime.utcnow().isoformat()
    reassigned = 0
    for row in orphans.itertuples(index=False):
        if row.checkin_id in taken:
            continue
        distance = None
        if candidate.gate_type == "physical":
            if not has_usable_coordinates(row.app_lat, row.app_lon):
                continue
            distance = haversine_meters(row.app_lat, row.app_lon, gate.latitude, gate.longitude)
            if distance > thresholds.reassign_radius_meters:
                continue
            method = "materialization_proximity"
        else:
            if row.category != candidate.category:
                continue
            method = "materialization_category"

        applied = await assign_checkin(
            db,
            checkin_id=row.checkin_id,
            gate_id=gate.gate_id,
            metadata=row.metadata,
            annotation={
                "auto_assigned": True,
                "assignment_method": method,
                "assignment_confidence": round(candidate.confidence, 4),
                "assignment_distance_meters": round(distance, 2) if distance is not None else None,
                "assigned_at": assigned_at,
            },
        )
        taken.add(row.checkin_id)
        if applied:
            reassigned += 1
    return reassigned


async def materialize_candidates(
    db: AsyncSession,
    event_id: uuid.UUID,
    candidates: list[CandidateGate],
    thresholds: Any,
) -> MaterializationResult:
    """
    Create or update gates for ``candidates`` and attach nearby orphans.

    Flushes but does not commit; the caller owns the transaction.
    """
    log = logger.bind(event_id=str(event_id))
    result = MaterializationResult()
    gates = await load_event_gates(db, event_id)
    orphans = await load_checkins(db, event_id, unassigned_only=True)
    taken: set[str] = set()

    matches = match_candidates(candidates, gates, thresholds)

    for candidate, (gate, distance) in zip(candidates, matches):
        if gate is None:
            gate = Gate(
                gate_id=uuid.uuid4(),
                event_id=event_id,
                name=candidate.name,
                auto_created=True,
                status="probation",
                derivation={},
                extra_metadata={},
            )
            _apply_candidate_fields(gate, candidate, thresholds)
            db.add(gate)
            result.gates_created += 1
            action = "create"
            log.info("materializer.gate_created", gate_id=str(gate.gate_id), name=gate.name, confidence=candidate.confidence)
        else:
            _apply_candidate_fields(gate, candidate, thresholds)
            result.gates_updated += 1
            action = "update"
            log.info("materializer.gate_updated", gate_id=str(gate.gate_id), name=gate.name, match_distance_meters=distance)

        await db.flush()
        await upsert_binding(
            db,
            gate=gate,
            category=candidate.category,
            confidence=candidate.confidence,
            sample_count=candidate.sample_count,
            thresholds=thresholds,
        )
        result.bindings_upserted += 1
        await db.flush()

        result.checkins_reassigned += await _reassign_orphans(
            db,
            gate=gate,
            candidate=candidate,
            orphans=orphans,
            taken=taken,
            thresholds=thresholds,
        )
        result.gate_ids.append(str(gate.gate_id))
        result.plans.append(
            MaterializationPlan(candidate=candidate, action=action, gate_id=gate.gate_id, match_distance_meters=distance)
        )

    log.info(
        "materializer.completed",
        gates_created=result.gates_created,
        gates_updated=result.gates_updated,
        checkins_reassigned=result.checkins_reassigned,
    )
    return result
