"""
Job entry points shared by the Celery tasks and the CLI scripts.

Each function acquires its store, HTTP clients, notifier and lock client from
an explicit Settings object and releases them on the way out, whatever the
outcome.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from alerts.notifier import Notifier, build_notifier
from core.config import Settings
from db.store import StoreAdapter
from integrations.telemetry import TelemetryClient
from integrations.tier_api import TierAPIClient
from loyalty.reclassifier import RECLASSIFY_JOB_NAME, TierReclassifier
from telemetry.monitor import MONITOR_JOB_NAME, TelemetryMonitor
from workers.runner import JobRunner, JobRunRecord, LockFactory, RedisLockFactory, build_redis_lock_factory


def default_lock_factory(settings: Settings) -> RedisLockFactory:
    return build_redis_lock_factory(settings.redis_url, settings.job_lock_timeout_seconds)


@asynccontextmanager
async def job_locks(settings: Settings, lock_factory: LockFactory | None = None) -> AsyncIterator[LockFactory]:
    """Yield the caller's factory as-is, or a Redis one closed on exit."""
    if lock_factory is not None:
        yield lock_factory
        return
    owned = default_lock_factory(settings)
    try:
        yield owned
    finally:
        await owned.aclose()


async def run_monitor_cycle(
    settings: Settings,
    lock_factory: LockFactory | None = None,
    notifier: Notifier | None = None,
) -> JobRunRecord:
    """One telemetry poll under the single-instance lock."""
    store = StoreAdapter.from_settings(settings)
    notifier = notifier or build_notifier(settings)
    try:
        async with TelemetryClient.from_settings(settings) as source, job_locks(settings, lock_factory) as locks:
            monitor = TelemetryMonitor(settings, source, store, notifier)
            runner = JobRunner(locks, store=store)
            return await runner.run_once(MONITOR_JOB_NAME, monitor.run_cycle)
    finally:
        await notifier.aclose()
        await store.dispose()


async def run_monitor_loop(
    settings: Settings,
    stop_event: asyncio.Event,
    lock_factory: LockFactory | None = None,
    max_cycles: int | None = None,
) -> list[JobRunRecord]:
    """Poll until stop_event is set; used by scripts/run_monitor.py."""
    store = StoreAdapter.from_settings(settings)
    notifier = build_notifier(settings)
    try:
        async with TelemetryClient.from_settings(settings) as source, job_locks(settings, lock_factory) as locks:
            monitor = TelemetryMonitor(settings, source, store, notifier)
            runner = JobRunner(locks, store=store)
            return await monitor.run_forever(runner, stop_event, max_cycles=max_cycles)
    finally:
        await notifier.aclose()
        await store.dispose()


async def run_reclassification(
    settings: Settings,
    lock_factory: LockFactory | None = None,
    now: datetime | None = None,
) -> JobRunRecord:
    """One reclassification batch under the single-instance lock."""
    store = StoreAdapter.from_settings(settings)
    try:
        async with TierAPIClient.from_settings(settings) as tier_api, job_locks(settings, lock_factory) as locks:
            reclassifier = TierReclassifier(settings, store, tier_api)
            runner = JobRunner(locks, store=store)
            return await runner.run_once(RECLASSIFY_JOB_NAME, lambda: reclassifier.run(now))
    finally:
        await store.dispose()
