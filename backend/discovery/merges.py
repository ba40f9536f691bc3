"""
Gate Merge Suggestions — flag physical gates that are probably one location.

Pairs are stored once, with the smaller gate id as primary. Re-running
refreshes distance, confidence, and reasoning of an existing pair and
leaves its review status alone.

Confidence by distance:
    < 10 m → 0.98
    < 15 m → 0.92
    < 20 m → 0.85
    else   → 0.75   (up to duplicate_distance_meters)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import GateMergeSuggestion
from discovery.geo import haversine_meters
from discovery.orphans import INELIGIBLE_GATE_STATUSES, GateSnapshot, load_gate_snapshots

logger = structlog.get_logger()

MERGE_CONFIDENCE_STEPS = ((10.0, 0.98), (15.0, 0.92), (20.0, 0.85))
MERGE_CONFIDENCE_FLOOR = 0.75

REVIEW_DECISIONS = ("approved", "rejected")


@dataclass
class MergeCandidate:
    primary_gate_id: str
    secondary_gate_id: str
    distance_meters: float
    confidence: float
    reasoning: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary_gate_id": self.primary_gate_id,
            "secondary_gate_id": self.secondary_gate_id,
            "distance_meters": round(self.distance_meters, 2),
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }


def merge_confidence(distance_meters: float) -> float:
    for maximum, confidence in MERGE_CONFIDENCE_STEPS:
        if distance_meters < maximum:
            return confidence
    return MERGE_CONFIDENCE_FLOOR


def find_duplicate_pairs(gates: list[GateSnapshot], max_distance_meters: float) -> list[MergeCandidate]:
    """Every canonically ordered pair of physical gates closer than ``max_distance_meters``."""
    physical = sorted(
        (g for g in gates if not g.is_virtual and g.status not in INELIGIBLE_GATE_STATUSES),
        key=lambda g: g.gate_id,
    )
    pairs = []
    for i, first in enumerate(physical):
        for second in physical[i + 1 :]:
            distance = haversine_meters(first.latitude, first.longitude, second.latitude, second.longitude)
            if distance >= max_distance_meters:
                continue
            # Sorted by id, so first is always the canonical primary
            primary, secondary = first, second
            pairs.append(
                MergeCandidate(
                    primary_gate_id=primary.gate_id,
                    secondary_gate_id=secondary.gate_id,
                    distance_meters=distance,
                    confidence=merge_confidence(distance),
                    reasoning=(
                        f"Gates detected within {distance:.1f} meters "
                        f"({primary.name} / {secondary.name}) - consider merging"
                    ),
                )
            )
    return pairs


async def suggest_merges(
    db: AsyncSession,
    event_id: uuid.UUID,
    thresholds: Any,
    *,
    dry_run: bool = False,
) -> dict[str, Any]:
    """Upsert merge suggestions for the event. Flushes but does not commit."""
    gates = await load_gate_snapshots(db, event_id)
    pairs = find_duplicate_pairs(gates, thresholds.duplicate_distance_meters)

    created = refreshed = 0
    if not dry_run:
        for pair in pairs:
            result = await db.execute(
                select(GateMergeSuggestion).where(
                    GateMergeSuggestion.event_id == event_id,
                    GateMergeSuggestion.primary_gate_id == uuid.UUID(pair.primary_gate_id),
                    GateMergeSuggestion.secondary_gate_id == uuid.UUID(pair.secondary_gate_id),
                )
            )
            suggestion = result.scalar_one_or_none()
            if suggestion is None:
                db.add(
                    GateMergeSuggestion(
                        event_id=event_id,
                        primary_gate_id=uuid.UUID(pair.primary_gate_id),
                        secondary_gate_id=uuid.UUID(pair.secondary_gate_id),
                        distance_meters=pair.distance_meters,
                        confidence_score=pair.confidence,
                        reasoning=pair.reasoning,
                        status="pending",
                    )
                )
                created += 1
            else:
                suggestion.distance_meters = pair.distance_meters
                suggestion.confidence_score = pair.confidence
                suggestion.reasoning = pair.reasoning
                refreshed += 1
        await db.flush()

    logger.info(
        "merge_suggestions.completed",
        event_id=str(event_id),
        dry_run=dry_run,
        pairs=len(pairs),
        created=created,
        refreshed=refreshed,
    )
    return {
        "pairs_found": len(pairs),
        "suggestions_created": created,
        "suggestions_refreshed": refreshed,
        "pairs": [pair.to_dict() for pair in pairs],
    }


async def review_merge_suggestion(
    db: AsyncSession,
    suggestion_id: uuid.UUID,
    *,
    decision: str,
    reviewed_by: str,
) -> GateMergeSuggestion | None:
    """Record a reviewer decision on a pending suggestion. Returns None if it does not exist."""
    if decision not in REVIEW_DECISIONS:
        raise ValueError(f"decision must be one of {REVIEW_DECISIONS}, got {decision!r}")
    if not reviewed_by or not reviewed_by.strip():
        raise ValueError("reviewed_by is required")

    suggestion = await db.get(GateMergeSuggestion, suggestion_id)
    if suggestion is None:
        return None
    if suggestion.status != "pending":
        raise ValueError(f"Suggestion is already {suggestion.status}")

    suggestion.status = decision
    suggestion.reviewed_by = reviewed_by.strip()
    suggestion.reviewed_at = datetime.utcnow()
    await db.commit()

    logger.info(
        "merge_suggestions.reviewed",
        suggestion_id=str(suggestion_id),
        decision=decision,
        reviewed_by=suggestion.reviewed_by,
    )
    return suggestion
