"""
Celery Application Configuration
"""

from datetime import timedelta

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "slotops",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.monitoring", "workers.loyalty"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Daily trigger time is local to the venue.
    timezone=None,
    enable_utc=False,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.monitoring.*": {"queue": "telemetry"},
        "workers.loyalty.*": {"queue": "loyalty"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Both tasks take a Redis job lock, so overlapping beats are skipped.
    beat_schedule={
        # ── Telemetry Monitor ───────────────────────────────────────
        "monitor-telemetry": {
            "task": "workers.monitoring.poll_telemetry",
            "schedule": timedelta(seconds=settings.monitor_interval_seconds),
            # A poll older than one interval is stale; drop it rather than catch up.
            "options": {"queue": "telemetry", "expires": settings.monitor_interval_seconds},
        },
        # ── Tier Reclassifier ───────────────────────────────────────
        "reclassify-player-tiers-daily": {
            "task": "workers.loyalty.reclassify_player_tiers",
            "schedule": crontab(hour=settings.reclassify_hour, minute=settings.reclassify_minute),
            "options": {"queue": "loyalty"},
        },
    },
)
