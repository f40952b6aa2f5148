"""
Monitoring Workers — telemetry polling.

Schedule: See celery_app.py beat_schedule (every monitor_interval_seconds)
"""

import asyncio

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.monitoring.poll_telemetry",
    bind=True,
    acks_late=True,
    ignore_result=False,
)
def poll_telemetry(self):
    """
    Run one telemetry cycle: fetch, persist, evaluate, escalate.

    Fetch and store failures are recorded on the returned run and left for
    the next beat; the task itself does not retry.
    """
    from core.config import get_settings
    from workers.jobs import run_monitor_cycle

    task_id = self.request.id or "manual"
    logger.info("monitor.task_started", task_id=task_id)

    record = asyncio.run(run_monitor_cycle(get_settings()))
    result = record.to_dict()
    result["task_id"] = task_id
    return result
