"""
Gates Router — discovery runs, orphan assignment, quality, catalog, merge review.
"""

from datetime import datetime
from typing import Literal
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from api.deps import get_db, get_event, get_event_locks
from db.models import Event, Gate, GateMergeSuggestion
from discovery.errors import CatalogUnavailableError
from discovery.locks import EventLockRegistry, RedisEventLocks
from discovery.merges import review_merge_suggestion
from discovery.pipeline import assign_orphans, quality_report, run_discovery
from discovery.scoring import enforcement_strength
from discovery.thresholds import ThresholdConfigError
from discovery.types import GateDerivation

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/events/{event_id}/gates", tags=["gates"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class BindingResponse(BaseModel):
    binding_id: UUID
    category: str
    status: str
    confidence: float
    sample_count: int
    violation_count: int
    bound_at: datetime | None

    model_config = {"from_attributes": True}


class GateResponse(BaseModel):
    gate_id: UUID
    event_id: UUID
    name: str
    gate_type: str
    status: str
    latitude: float | None
    longitude: float | None
    derivation_method: str | None
    confidence_score: float
    enforcement_strength: str
    sample_count: int
    auto_created: bool
    dominant_category: str | None = None
    selection_reason: str | None = None
    virtual_gate_id: str | None = None
    derivation: dict | None
    bindings: list[BindingResponse]
    created_at: datetime
    updated_at: datetime


class MergeSuggestionResponse(BaseModel):
    suggestion_id: UUID
    event_id: UUID
    primary_gate_id: UUID
    secondary_gate_id: UUID
    distance_meters: float
    confidence_score: float
    reasoning: str | None
    status: str
    reviewed_by: str | None
    reviewed_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class MergeReviewRequest(BaseModel):
    decision: Literal["approved", "rejected"]
    reviewed_by: str = Field(..., min_length=1, max_length=255)


def _gate_response(gate: Gate) -> GateResponse:
    derivation = GateDerivation.from_dict(gate.derivation)
    return GateResponse(
        gate_id=gate.gate_id,
        event_id=gate.event_id,
        name=gate.name,
        gate_type=gate.gate_type,
        status=gate.status,
        latitude=gate.latitude,
        longitude=gate.longitude,
        derivation_method=gate.derivation_method,
        confidence_score=gate.confidence_score,
        enforcement_strength=enforcement_strength(gate.confidence_score),
        sample_count=gate.sample_count,
        auto_created=gate.auto_created,
        dominant_category=derivation.dominant_category if derivation else None,
        selection_reason=derivation.selection_reason if derivation else None,
        virtual_gate_id=derivation.virtual_gate_id if derivation else None,
        derivation=gate.derivation,
        bindings=[BindingResponse.model_validate(b) for b in gate.bindings],
        created_at=gate.created_at,
        updated_at=gate.updated_at,
    )


def _unavailable(exc: CatalogUnavailableError) -> HTTPException:
    logger.error("gates_api.catalog_unavailable", event_id=exc.event_id, error=str(exc))
    return HTTPException(status_code=503, detail="Gate catalog unavailable")


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/discover")
async def discover_gates(
    dry_run: bool = Query(False),
    event: Event = Depends(get_event),
    db: AsyncSession = Depends(get_db),
    locks: EventLockRegistry | RedisEventLocks = Depends(get_event_locks),
):
    """Run the discovery pipeline. Failed runs come back as a report with success=false."""
    try:
        report = await run_discovery(db, event.event_id, dry_run=dry_run, trigger="api", locks=locks)
    except CatalogUnavailableError as exc:
        raise _unavailable(exc) from exc
    return report.to_dict()


@router.post("/assign-orphans")
async def assign_orphan_checkins(
    dry_run: bool = Query(False),
    event: Event = Depends(get_event),
    db: AsyncSession = Depends(get_db),
    locks: EventLockRegistry | RedisEventLocks = Depends(get_event_locks),
):
    try:
        report = await assign_orphans(db, event.event_id, dry_run=dry_run, trigger="api", locks=locks)
    except CatalogUnavailableError as exc:
        raise _unavailable(exc) from exc
    return report.to_dict()


@router.get("/quality")
async def get_quality_report(
    event: Event = Depends(get_event),
    db: AsyncSession = Depends(get_db),
):
    try:
        report = await quality_report(db, event.event_id)
    except ThresholdConfigError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except CatalogUnavailableError as exc:
        raise _unavailable(exc) from exc
    return report.to_dict()


@router.get("", response_model=list[GateResponse])
async def list_gates(
    status: str | None = None,
    gate_type: Literal["physical", "virtual"] | None = None,
    event: Event = Depends(get_event),
    db: AsyncSession = Depends(get_db),
):
    """Gate catalog for the event, most confident first."""
    query = select(Gate).options(selectinload(Gate.bindings)).where(Gate.event_id == event.event_id)
    if status:
        query = query.where(Gate.status == status)
    if gate_type:
        query = query.where(Gate.gate_type == gate_type)
    query = query.order_by(Gate.confidence_score.desc(), Gate.gate_id)
    result = await db.execute(query)
    return [_gate_response(gate) for gate in result.scalars().all()]


@router.get("/merge-suggestions", response_model=list[MergeSuggestionResponse])
async def list_merge_suggestions(
    status: str | None = Query(None, pattern="^(pending|approved|rejected|applied)$"),
    event: Event = Depends(get_event),
    db: AsyncSession = Depends(get_db),
):
    query = select(GateMergeSuggestion).where(GateMergeSuggestion.event_id == event.event_id)
    if status:
        query = query.where(GateMergeSuggestion.status == status)
    query = query.order_by(GateMergeSuggestion.confidence_score.desc(), GateMergeSuggestion.created_at)
    result = await db.execute(query)
    return result.scalars().all()


@router.post("/merge-suggestions/{suggestion_id}/review", response_model=MergeSuggestionResponse)
async def review_suggestion(
    suggestion_id: UUID,
    body: MergeReviewRequest,
    event: Event = Depends(get_event),
    db: AsyncSession = Depends(get_db),
):
    """Approve or reject a pending merge suggestion."""
    suggestion = await db.get(GateMergeSuggestion, suggestion_id)
    if suggestion is None or suggestion.event_id != event.event_id:
        raise HTTPException(status_code=404, detail="Merge suggestion not found")
    if suggestion.status != "pending":
        raise HTTPException(status_code=409, detail=f"Suggestion is already {suggestion.status}")

    try:
        reviewed = await review_merge_suggestion(
            db,
            suggestion_id,
            decision=body.decision,
            reviewed_by=body.reviewed_by,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return reviewed
