"""
Loyalty Workers — nightly tier reclassification.

Schedule: See celery_app.py beat_schedule (daily, default 02:00 local)
"""

import asyncio

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.loyalty.reclassify_player_tiers",
    bind=True,
    acks_late=True,
)
def reclassify_player_tiers(self):
    """
    Recompute tiers for every player not evaluated in the last 24h.

    Not retried: a failed batch leaves last_evaluated_at untouched for the
    unfinished players, so the next daily run picks them up.
    """
    from core.config import get_settings
    from core.errors import JobFailedError
    from workers.jobs import run_reclassification
    from workers.runner import JobStatus

    task_id = self.request.id or "manual"
    logger.info("tier.task_started", task_id=task_id)

    record = asyncio.run(run_reclassification(get_settings()))
    if record.status == JobStatus.FAILED:
        raise JobFailedError(record.job_name, record.error)

    result = record.to_dict()
    result["task_id"] = task_id
    return result
