"""
Gate discovery workers.

Each task runs one pipeline operation for one event. Mutating runs take
the shared event lock (``gates:lock:{event_id}`` in Redis) inside the
pipeline, the same lock API requests and the CLI take. A run that finds
the event busy is skipped, not retried.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()


def _busy(event_id: str, operation: str) -> dict[str, Any]:
    logger.warning("gate_worker.event_busy", event_id=event_id, operation=operation)
    return {
        "status": "skipped",
        "reason": "event_busy",
        "event_id": event_id,
        "operation": operation,
    }


async def _with_session(settings: Any, work):
    from db.session import standalone_session

    async with standalone_session(settings.database_url) as db:
        return await work(db)


@celery_app.task(
    name="workers.discovery.run_gate_discovery",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    acks_late=True,
)
def run_gate_discovery(self, event_id: str, dry_run: bool = False, trigger: str = "scheduler"):
    """
    Run the full gate discovery pipeline for one event.

    Flow:
      1. Open a session and run discovery.pipeline.run_discovery
         (mutating runs hold the shared event lock)
      2. Return the pipeline report, or a skip when the event is busy

    A failed report (insufficient data, busy event, timeout) is a normal
    result. Only an unreachable catalog or an unexpected error retries.
    """
    from core.config import get_settings
    from discovery.pipeline import run_discovery

    run_id = self.request.id or "manual"
    settings = get_settings()
    logger.info("gate_worker.discovery.started", event_id=event_id, dry_run=dry_run, trigger=trigger, run_id=run_id)

    async def _run(db):
        report = await run_discovery(db, uuid.UUID(event_id), dry_run=dry_run, trigger=trigger, settings=settings)
        return report.to_dict()

    try:
        result = asyncio.run(_with_session(settings, _run))
    except Exception as exc:  # noqa: BLE001
        logger.error("gate_worker.discovery.failed", event_id=event_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    if result.get("error") == "event_busy":
        return _busy(event_id, "run_gate_discovery")
    return result


@celery_app.task(
    name="workers.discovery.assign_orphan_checkins",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
)
def assign_orphan_checkins(self, event_id: str, dry_run: bool = False, trigger: str = "scheduler"):
    """Assign orphaned check-ins for one event to existing gates."""
    from core.config import get_settings
    from discovery.pipeline import assign_orphans

    run_id = self.request.id or "manual"
    settings = get_settings()
    logger.info("gate_worker.orphans.started", event_id=event_id, dry_run=dry_run, trigger=trigger, run_id=run_id)

    async def _run(db):
        report = await assign_orphans(db, uuid.UUID(event_id), dry_run=dry_run, trigger=trigger, settings=settings)
        return report.to_dict()

    try:
        result = asyncio.run(_with_session(settings, _run))
    except Exception as exc:  # noqa: BLE001
        logger.error("gate_worker.orphans.failed", event_id=event_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    if result.get("error") == "event_busy":
        return _busy(event_id, "assign_orphan_checkins")
    return result
