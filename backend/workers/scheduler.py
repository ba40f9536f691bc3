"""Event-aware scheduler helpers: beat fan-out and check-in triggers."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()

DEFAULT_LIVE_STATUSES = ("live",)

COUNTER_KEY = "gates:checkins:{event_id}"
COUNTER_TTL_SECONDS = 7 * 24 * 3600

ACTION_TASKS = {
    "run_discovery": "workers.discovery.run_gate_discovery",
    "assign_orphans": "workers.discovery.assign_orphan_checkins",
}


def _counter_store(settings: Any):
    import redis

    return redis.Redis.from_url(settings.redis_url)


def bump_checkin_counter(store: Any, event_id: str, seed: int) -> int:
    """
    Increment the event's running check-in counter.

    A missing counter is seeded with ``seed`` (the persisted count, which
    already includes the check-in being reported) instead of incremented.
    """
    key = COUNTER_KEY.format(event_id=event_id)
    if store.set(key, seed, nx=True, ex=COUNTER_TTL_SECONDS):
        return seed
    return int(store.incr(key))


@celery_app.task(
    name="workers.scheduler.dispatch_live_events",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_live_events(
    self,
    task_name: str,
    task_kwargs: dict | None = None,
    statuses: list[str] | None = None,
):
    """
    Dispatch an event-scoped task across all live events.
    """
    from core.config import get_settings
    from db.models import Event

    run_id = self.request.id or "manual"
    payload = dict(task_kwargs or {})
    selected_statuses = tuple(statuses or DEFAULT_LIVE_STATUSES)

    if not task_name.startswith("workers."):
        return {"status": "failed", "reason": "invalid_task_name", "task_name": task_name}

    async def _dispatch():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession)
            async with async_session() as db:
                result = await db.execute(
                    select(Event.event_id).where(Event.status.in_(selected_statuses)).order_by(Event.created_at)
                )
                events = [str(row.event_id) for row in result.all()]

            dispatched = 0
            for event_id in events:
                kwargs = dict(payload)
                kwargs["event_id"] = event_id
                celery_app.send_task(task_name, kwargs=kwargs)
                dispatched += 1

            summary = {
                "status": "success",
                "task_name": task_name,
                "event_count": len(events),
                "dispatched_count": dispatched,
                "statuses": list(selected_statuses),
                "triggered_at": datetime.now(timezone.utc).isoformat(),
                "run_id": run_id,
            }
            logger.info("scheduler.dispatch_complete", **summary)
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_dispatch())
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.dispatch_failed", task_name=task_name, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.scheduler.on_checkin_recorded",
    bind=True,
    max_retries=3,
    default_retry_delay=15,
    acks_late=True,
)
def on_checkin_recorded(self, event: dict | str):
    """
    Consume one ``checkin.recorded`` event and enqueue discovery work.

    Flow:
      1. Validate and normalize the event (invalid events are rejected, not retried)
      2. Ignore non-success check-ins
      3. Bump the event's Redis counter (seeded from the DB when missing)
      4. Read gate and orphan counts, apply the trigger policy
      5. send_task each decided action with trigger="checkin_event"
    """
    from core.config import get_settings
    from discovery.checkins import count_gates, count_orphans, count_successful_checkins
    from discovery.thresholds import load_event_thresholds
    from discovery.triggers import CheckinCounters, decide_actions
    from integrations.checkin_events import InvalidCheckinEvent, decode_message, normalize_checkin_recorded

    decoded = decode_message(event)
    if decoded is None:
        return {"status": "rejected", "errors": ["Undecodable message"]}

    try:
        checkin = normalize_checkin_recorded(decoded)
    except InvalidCheckinEvent as exc:
        logger.warning("scheduler.checkin_event_rejected", errors=exc.errors)
        return {"status": "rejected", "errors": exc.errors}

    event_id = checkin["event_id"]
    if checkin["status"] != "success":
        return {"status": "ignored", "reason": "non_success_checkin", "event_id": event_id}

    async def _decide():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession)
            async with async_session() as db:
                event_uuid = uuid.UUID(event_id)
                thresholds = await load_event_thresholds(db, event_uuid, settings=settings)
                persisted = await count_successful_checkins(db, event_uuid)
                checkin_count = bump_checkin_counter(_counter_store(settings), event_id, persisted)
                counters = CheckinCounters(
                    checkin_count=checkin_count,
                    gate_count=await count_gates(db, event_uuid),
                    orphan_count=await count_orphans(db, event_uuid),
                )
        finally:
            await engine.dispose()

        actions = decide_actions(counters, thresholds)
        for action in actions:
            celery_app.send_task(
                ACTION_TASKS[action],
                kwargs={"event_id": event_id, "trigger": "checkin_event"},
            )

        summary = {
            "status": "success",
            "event_id": event_id,
            "checkin_count": counters.checkin_count,
            "gate_count": counters.gate_count,
            "orphan_count": counters.orphan_count,
            "actions": actions,
        }
        if actions:
            logger.info("scheduler.checkin_triggered", **summary)
        return summary

    try:
        return asyncio.run(_decide())
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.checkin_event_failed", event_id=event_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
