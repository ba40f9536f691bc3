"""
Gate Discovery Pipeline — one run per event, one report per run.

Steps:
  1. Data quality report (abort with ``insufficient_data`` when there is
     too little data AND too little good GPS)
  2. Derive candidates (filter → cluster/segment → score → select) and
     materialize them into the gate catalog
  3. Assign remaining orphan check-ins
  4. Suggest merges for near-duplicate physical gates
  5. Assemble the report (counts, catalog summary, recommendations)

Mutating runs hold the event's single-writer lock. Every step runs under
a timeout, commits on success, and is retried a bounded number of times
on persistence conflicts. Failures come back as a failed report; only an
unreachable catalog raises (``CatalogUnavailableError``).

Usage:
    from discovery.pipeline import run_discovery

    report = await run_discovery(db, event_id, dry_run=False)
    report.to_dict()
    # → {"success": True, "gates_created": 2, "checkins_assigned": 14, ...}
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import CheckinLog, Gate, GateBinding, GateMergeSuggestion, GatePipelineRun
from discovery.errors import CatalogUnavailableError, EventBusyError
from discovery.locks import EventLockRegistry, RedisEventLocks, event_locks
from discovery.materializer import materialize_candidates, plan_materialization
from discovery.merges import find_duplicate_pairs, suggest_merges
from discovery.orphans import AssignmentReport, assign_orphan_checkins, load_gate_snapshots, propose_assignments
from discovery.quality import DataQualityReport, build_quality_report
from discovery.thresholds import DiscoveryThresholds, ThresholdConfigError, load_event_thresholds

logger = structlog.get_logger()

TRANSIENT_ERRORS = (OperationalError, IntegrityError)


class StepTimeoutError(Exception):
    def __init__(self, step: str, timeout: float):
        super().__init__(f"Step {step} exceeded {timeout}s")
        self.step = step


@dataclass(frozen=True)
class PipelineRuntime:
    step_timeout_seconds: float = 120.0
    max_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    lock_timeout_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: Any) -> "PipelineRuntime":
        defaults = cls()
        return cls(
            step_timeout_seconds=getattr(settings, "pipeline_step_timeout_seconds", defaults.step_timeout_seconds),
            max_attempts=getattr(settings, "pipeline_max_attempts", defaults.max_attempts),
            retry_backoff_seconds=getattr(settings, "pipeline_retry_backoff_seconds", defaults.retry_backoff_seconds),
            lock_timeout_seconds=getattr(settings, "event_lock_timeout_seconds", defaults.lock_timeout_seconds),
        )


@dataclass
class PipelineReport:
    event_id: str
    success: bool
    dry_run: bool
    outcome: str  # completed | insufficient_data | failed
    trigger: str = "manual"
    error: str | None = None
    message: str | None = None
    gate_type: str | None = None
    selection_reason: str | None = None
    gates_created: int = 0
    gates_updated: int = 0
    checkins_reassigned: int = 0
    checkins_assigned: int = 0
    gates_affected: int = 0
    avg_confidence: float = 0.0
    merge_suggestions: dict[str, Any] = field(default_factory=dict)
    quality_report: dict[str, Any] | None = None
    summary: dict[str, Any] = field(default_factory=dict)
    recommendations: list[str] = field(default_factory=list)
    preview: dict[str, Any] | None = None
    execution_time_ms: float = 0.0
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = {
            "success": self.success,
            "event_id": self.event_id,
            "dry_run": self.dry_run,
            "outcome": self.outcome,
            "trigger": self.trigger,
            "gate_type": self.gate_type,
            "selection_reason": self.selection_reason,
            "gates_created": self.gates_created,
            "gates_updated": self.gates_updated,
            "checkins_reassigned": self.checkins_reassigned,
            "checkins_assigned": self.checkins_assigned,
            "gates_affected": self.gates_affected,
            "avg_confidence": round(self.avg_confidence, 3),
            "merge_suggestions": dict(self.merge_suggestions),
            "quality_report": self.quality_report,
            "summary": dict(self.summary),
            "recommendations": list(self.recommendations),
            "execution_time_ms": round(self.execution_time_ms, 2),
            "timestamp": self.timestamp.isoformat(),
        }
        if self.error:
            data["error"] = self.error
            data["message"] = self.message
        if self.preview is not None:
            data["preview"] = self.preview
        return data


# ── Step execution ─────────────────────────────────────────────────────────


def is_unreachable(exc: BaseException) -> bool:
    """Connection-level failures that retrying inside one run will not fix."""
    if isinstance(exc, CatalogUnavailableError):
        return True
    if isinstance(exc, (ConnectionError, OSError)):
        return True
    if isinstance(exc, InterfaceError):
        return True
    if isinstance(exc, DBAPIError):
        return bool(exc.connection_invalidated) or isinstance(exc.orig, (ConnectionError, OSError))
    return False


async def _safe_rollback(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except Exception as exc:  # noqa: BLE001
        logger.warning("gate_discovery.rollback_failed", error=str(exc))


async def run_step(
    db: AsyncSession,
    step: str,
    work: Callable[[], Awaitable[Any]],
    *,
    runtime: PipelineRuntime,
    commit: bool = True,
    event_id: str | None = None,
) -> Any:
    """Run one unit of work under a timeout, committing it atomically with bounded retries."""
    for attempt in range(1, runtime.max_attempts + 1):
        try:
            result = await asyncio.wait_for(work(), timeout=runtime.step_timeout_seconds)
            if commit:
                await db.commit()
            return result
        except asyncio.TimeoutError as exc:
            await _safe_rollback(db)
            raise StepTimeoutError(step, runtime.step_timeout_seconds) from exc
        except Exception as exc:
            await _safe_rollback(db)
            if is_unreachable(exc):
                raise CatalogUnavailableError(f"Gate catalog unavailable during {step}: {exc}", event_id=event_id) from exc
            if isinstance(exc, TRANSIENT_ERRORS) and attempt < runtime.max_attempts:
                logger.warning(
                    "gate_discovery.step_retry",
                    event_id=event_id,
                    step=step,
                    attempt=attempt,
                    error=str(exc),
                )
                await asyncio.sleep(runtime.retry_backoff_seconds * attempt)
                continue
            raise


# ── Catalog summary & recommendations ──────────────────────────────────────


async def catalog_summary(db: AsyncSession, event_id: uuid.UUID, thresholds: DiscoveryThresholds) -> dict[str, Any]:
    gates = (
        await db.execute(
            select(
                func.count(Gate.gate_id),
                func.count(Gate.gate_id).filter(Gate.status == "active"),
                func.count(Gate.gate_id).filter(Gate.latitude.is_not(None)),
                func.count(Gate.gate_id).filter(Gate.latitude.is_(None)),
            ).where(Gate.event_id == event_id)
        )
    ).one()
    checkins = (
        await db.execute(
            select(
                func.count(CheckinLog.checkin_id).filter(CheckinLog.gate_id.is_not(None)),
                func.count(CheckinLog.checkin_id).filter(CheckinLog.gate_id.is_(None)),
            ).where(CheckinLog.event_id == event_id, CheckinLog.status == "success")
        )
    ).one()
    pending_merges = (
        await db.execute(
            select(func.count(GateMergeSuggestion.suggestion_id)).where(
                GateMergeSuggestion.event_id == event_id,
                GateMergeSuggestion.status == "pending",
            )
        )
    ).scalar()
    promotion_ready = (
        await db.execute(
            select(func.count(GateBinding.binding_id)).where(
                GateBinding.event_id == event_id,
                GateBinding.status == "probation",
                GateBinding.sample_count >= thresholds.promotion_sample_size,
                GateBinding.confidence >= thresholds.confidence_threshold,
            )
        )
    ).scalar()
    return {
        "total_gates": int(gates[0] or 0),
        "active_gates": int(gates[1] or 0),
        "physical_gates": int(gates[2] or 0),
        "virtual_gates": int(gates[3] or 0),
        "assigned_checkins": int(checkins[0] or 0),
        "orphaned_checkins": int(checkins[1] or 0),
        "pending_merge_suggestions": int(pending_merges or 0),
        "bindings_ready_for_promotion": int(promotion_ready or 0),
    }


def build_recommendations(summary: dict[str, Any], quality: DataQualityReport, gates_touched: int) -> list[str]:
    recs = []
    if summary["orphaned_checkins"] > 0:
        recs.append(f"Re-run orphan assignment for {summary['orphaned_checkins']} remaining orphaned check-ins")
    if summary["pending_merge_suggestions"] > 0:
        recs.append(f"Review {summary['pending_merge_suggestions']} pending gate merge suggestions")
    if summary["bindings_ready_for_promotion"] > 0:
        recs.append(f"{summary['bindings_ready_for_promotion']} gate bindings are ready for promotion review")
    if quality.gps_quality_score == "poor":
        recs.append("GPS data quality is poor - monitor and consider manual gate creation")
    if gates_touched == 0:
        recs.append("No gates were created - check if event has sufficient check-in data")
    if not recs:
        recs.append("Gate discovery completed successfully - monitor performance")
    return recs


# ── Audit trail ────────────────────────────────────────────────────────────


async def record_run(
    db: AsyncSession,
    *,
    event_id: uuid.UUID,
    run_type: str,
    trigger: str,
    started_at: datetime,
    outcome: str,
    report: dict[str, Any],
) -> None:
    try:
        db.add(
            GatePipelineRun(
                event_id=event_id,
                run_type=run_type,
                trigger=trigger,
                dry_run=False,
                outcome=outcome,
                started_at=started_at,
                finished_at=datetime.utcnow(),
                report=report,
            )
        )
        await db.commit()
    except Exception as exc:  # noqa: BLE001
        await _safe_rollback(db)
        logger.error("gate_discovery.audit_failed", event_id=str(event_id), error=str(exc), exc_info=True)


# ── Public operations ──────────────────────────────────────────────────────


def _failed(event_id: uuid.UUID, *, dry_run: bool, trigger: str, error: str, message: str, **extra) -> PipelineReport:
    return PipelineReport(
        event_id=str(event_id),
        success=False,
        dry_run=dry_run,
        outcome="failed",
        trigger=trigger,
        error=error,
        message=message,
        **extra,
    )


def _settings_or_default(settings: Any) -> Any:
    if settings is None:
        from core.config import get_settings

        settings = get_settings()
    return settings


async def _resolve(db: AsyncSession, event_id: uuid.UUID, settings: Any) -> tuple[DiscoveryThresholds, PipelineRuntime]:
    settings = _settings_or_default(settings)
    try:
        thresholds = await load_event_thresholds(db, event_id, settings=settings)
    except ThresholdConfigError:
        raise
    except Exception as exc:
        if is_unreachable(exc):
            raise CatalogUnavailableError(f"Gate catalog unavailable: {exc}", event_id=str(event_id)) from exc
        raise
    return thresholds, PipelineRuntime.from_settings(settings)


async def _preview(
    db: AsyncSession,
    event_id: uuid.UUID,
    thresholds: DiscoveryThresholds,
    candidates: list,
) -> dict[str, Any]:
    plans = await plan_materialization(db, event_id, candidates, thresholds)
    proposals, orphans = await propose_assignments(db, event_id, thresholds)
    pairs = find_duplicate_pairs(await load_gate_snapshots(db, event_id), thresholds.duplicate_distance_meters)
    return {
        "gates_to_create": sum(1 for p in plans if p.action == "create"),
        "gates_to_update": sum(1 for p in plans if p.action == "update"),
        "candidates": [plan.to_dict() for plan in plans],
        "orphaned_checkins": len(orphans),
        "checkins_to_assign": len(proposals),
        "merge_pairs": [pair.to_dict() for pair in pairs],
    }


async def _execute_discovery(
    db: AsyncSession,
    event_id: uuid.UUID,
    *,
    dry_run: bool,
    trigger: str,
    thresholds: DiscoveryThresholds,
    runtime: PipelineRuntime,
) -> PipelineReport:
    log = logger.bind(event_id=str(event_id), dry_run=dry_run, trigger=trigger)
    eid = str(event_id)

    # Step 1: quality
    quality, _frame, derivation = await run_step(
        db, "quality_report", lambda: build_quality_report(db, event_id, thresholds),
        runtime=runtime, commit=False, event_id=eid,
    )
    quality_dict = quality.to_dict()
    if not quality.sufficient_data:
        log.warning(
            "gate_discovery.insufficient_data",
            total_checkins=quality.total_checkins,
            good_gps_pct=quality.checkins_with_good_gps_pct,
        )
        return PipelineReport(
            event_id=eid,
            success=False,
            dry_run=dry_run,
            outcome="insufficient_data",
            trigger=trigger,
            error="insufficient_data",
            message=(
                f"Need at least {thresholds.min_total_checkins} check-ins "
                f"or {thresholds.min_good_gps_pct:g}% with good GPS data"
            ),
            quality_report=quality_dict,
            recommendations=list(quality.recommendations),
        )

    selection = derivation.selection
    report = PipelineReport(
        event_id=eid,
        success=True,
        dry_run=dry_run,
        outcome="completed",
        trigger=trigger,
        gate_type=selection.gate_type,
        selection_reason=selection.reason,
        quality_report=quality_dict,
    )

    if dry_run:
        report.preview = await run_step(
            db, "preview", lambda: _preview(db, event_id, thresholds, selection.candidates),
            runtime=runtime, commit=False, event_id=eid,
        )
        report.summary = await catalog_summary(db, event_id, thresholds)
        report.recommendations = list(quality.recommendations)
        return report

    # Step 2: materialize
    materialized = await run_step(
        db, "materialize", lambda: materialize_candidates(db, event_id, selection.candidates, thresholds),
        runtime=runtime, event_id=eid,
    )
    report.gates_created = materialized.gates_created
    report.gates_updated = materialized.gates_updated
    report.checkins_reassigned = materialized.checkins_reassigned

    # Step 3: orphans
    assignment: AssignmentReport = await run_step(
        db, "assign_orphans", lambda: assign_orphan_checkins(db, event_id, thresholds),
        runtime=runtime, event_id=eid,
    )
    report.checkins_assigned = assignment.checkins_assigned
    report.gates_affected = assignment.gates_affected
    report.avg_confidence = assignment.avg_confidence

    # Step 4: merges
    merges = await run_step(
        db, "suggest_merges", lambda: suggest_merges(db, event_id, thresholds),
        runtime=runtime, event_id=eid,
    )
    report.merge_suggestions = {key: merges[key] for key in ("pairs_found", "suggestions_created", "suggestions_refreshed")}

    # Step 5: report
    report.summary = await catalog_summary(db, event_id, thresholds)
    report.recommendations = build_recommendations(
        report.summary, quality, report.gates_created + report.gates_updated
    )
    return report


async def run_discovery(
    db: AsyncSession,
    event_id: uuid.UUID,
    *,
    dry_run: bool = False,
    trigger: str = "manual",
    settings: Any = None,
    locks: EventLockRegistry | RedisEventLocks | None = None,
) -> PipelineReport:
    """Run the full discovery pipeline for one event and return its report."""
    started = time.perf_counter()
    started_at = datetime.utcnow()
    log = logger.bind(event_id=str(event_id), dry_run=dry_run, trigger=trigger)
    log.info("gate_discovery.started")

    try:
        settings = _settings_or_default(settings)
        thresholds, runtime = await _resolve(db, event_id, settings)
    except ThresholdConfigError as exc:
        log.error("gate_discovery.invalid_configuration", error=str(exc))
        return _failed(event_id, dry_run=dry_run, trigger=trigger, error="invalid_configuration", message=str(exc))

    try:
        if dry_run:
            report = await _execute_discovery(
                db, event_id, dry_run=True, trigger=trigger, thresholds=thresholds, runtime=runtime
            )
        else:
            async with (locks or event_locks(settings)).hold(event_id, timeout=runtime.lock_timeout_seconds):
                report = await _execute_discovery(
                    db, event_id, dry_run=False, trigger=trigger, thresholds=thresholds, runtime=runtime
                )
    except CatalogUnavailableError:
        log.error("gate_discovery.catalog_unavailable", exc_info=True)
        raise
    except EventBusyError as exc:
        log.warning("gate_discovery.event_busy", error=str(exc))
        report = _failed(event_id, dry_run=dry_run, trigger=trigger, error="event_busy", message=str(exc))
    except StepTimeoutError as exc:
        log.error("gate_discovery.timeout", step=exc.step)
        report = _failed(event_id, dry_run=dry_run, trigger=trigger, error="timeout", message=str(exc))
    except Exception as exc:  # noqa: BLE001
        log.error("gate_discovery.failed", error=str(exc), exc_info=True)
        report = _failed(
            event_id, dry_run=dry_run, trigger=trigger, error="pipeline_execution_failed", message=str(exc)
        )

    report.execution_time_ms = (time.perf_counter() - started) * 1000
    if not dry_run:
        await record_run(
            db,
            event_id=event_id,
            run_type="discovery",
            trigger=trigger,
            started_at=started_at,
            outcome=report.outcome,
            report=report.to_dict(),
        )

    log.info(
        "gate_discovery.completed",
        success=report.success,
        outcome=report.outcome,
        gates_created=report.gates_created,
        gates_updated=report.gates_updated,
        checkins_assigned=report.checkins_assigned,
        execution_time_ms=round(report.execution_time_ms, 2),
    )
    return report


async def assign_orphans(
    db: AsyncSession,
    event_id: uuid.UUID,
    *,
    dry_run: bool = False,
    trigger: str = "manual",
    settings: Any = None,
    locks: EventLockRegistry | RedisEventLocks | None = None,
) -> AssignmentReport:
    """Run only the orphan assigner for one event."""
    started_at = datetime.utcnow()
    eid = str(event_id)
    try:
        settings = _settings_or_default(settings)
        thresholds, runtime = await _resolve(db, event_id, settings)
    except ThresholdConfigError as exc:
        return AssignmentReport(
            event_id=eid, dry_run=dry_run, success=False, error="invalid_configuration", message=str(exc)
        )

    async def _assign() -> AssignmentReport:
        return await run_step(
            db, "assign_orphans", lambda: assign_orphan_checkins(db, event_id, thresholds, dry_run=dry_run),
            runtime=runtime, commit=not dry_run, event_id=eid,
        )

    try:
        if dry_run:
            report = await _assign()
        else:
            async with (locks or event_locks(settings)).hold(event_id, timeout=runtime.lock_timeout_seconds):
                report = await _assign()
    except CatalogUnavailableError:
        logger.error("orphan_assignment.catalog_unavailable", event_id=eid, exc_info=True)
        raise
    except EventBusyError as exc:
        report = AssignmentReport(event_id=eid, dry_run=dry_run, success=False, error="event_busy", message=str(exc))
    except StepTimeoutError as exc:
        report = AssignmentReport(event_id=eid, dry_run=dry_run, success=False, error="timeout", message=str(exc))
    except Exception as exc:  # noqa: BLE001
        logger.error("orphan_assignment.failed", event_id=eid, error=str(exc), exc_info=True)
        report = AssignmentReport(
            event_id=eid, dry_run=dry_run, success=False, error="pipeline_execution_failed", message=str(exc)
        )

    if not dry_run:
        await record_run(
            db,
            event_id=event_id,
            run_type="orphan_assignment",
            trigger=trigger,
            started_at=started_at,
            outcome="completed" if report.success else "failed",
            report=report.to_dict(),
        )
    return report


async def quality_report(db: AsyncSession, event_id: uuid.UUID, *, settings: Any = None) -> DataQualityReport:
    """Data quality report for an event. Raises ``ThresholdConfigError`` on bad per-event config."""
    thresholds, runtime = await _resolve(db, event_id, settings)
    report, _frame, _derivation = await run_step(
        db, "quality_report", lambda: build_quality_report(db, event_id, thresholds),
        runtime=runtime, commit=False, event_id=str(event_id),
    )
    return report
