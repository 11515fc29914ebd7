"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "canopy",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.maintenance"],
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
        "workers.maintenance.relay_batch_events": {"queue": "events"},
        "workers.maintenance.*": {"queue": "maintenance"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        "relay-batch-events-1m": {
            "task": "workers.maintenance.relay_batch_events",
            "schedule": crontab(minute="*"),
            "options": {"queue": "events"},
        },
        "expire-stale-overrides-hourly": {
            "task": "workers.maintenance.expire_stale_overrides",
            "schedule": crontab(minute=5),
            "options": {"queue": "maintenance"},
        },
        "audit-genealogy-nightly": {
            "task": "workers.maintenance.audit_genealogy",
            "schedule": crontab(hour=3, minute=30),
            "options": {"queue": "maintenance"},
        },
    },
)
