"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "gate_discovery",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.discovery.*": {"queue": "discovery"},
        "workers.scheduler.*": {"queue": "triggers"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Fans out across live events via workers.scheduler.dispatch_live_events.
    beat_schedule={
        "orphan-sweep-10m": {
            "task": "workers.scheduler.dispatch_live_events",
            "schedule": crontab(minute="*/10"),
            "kwargs": {
                "task_name": "workers.discovery.assign_orphan_checkins",
                "task_kwargs": {"trigger": "scheduler"},
            },
            "options": {"queue": "triggers"},
        },
        "gate-refresh-hourly": {
            "task": "workers.scheduler.dispatch_live_events",
            "schedule": crontab(minute=5),
            "kwargs": {
                "task_name": "workers.discovery.run_gate_discovery",
                "task_kwargs": {"trigger": "scheduler"},
            },
            "options": {"queue": "triggers"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
