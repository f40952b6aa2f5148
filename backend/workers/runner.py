"""
Scheduled Job Runner — single-instance execution, run records and
interval / time-of-day loops shared by the monitor and the reclassifier.

Celery beat drives production scheduling (see celery_app.py); the loops here
back the long-running scripts and tests. Either way every execution goes
through JobRunner.run_once, which:
  1. takes the job's lock without blocking (busy → status "skipped")
  2. times the call and captures success / failure
  3. logs job.completed / job.failed / job.skipped
  4. records the run in the store when one is attached
"""

from __future__ import annotations

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime, time as dt_time, timedelta
from enum import Enum
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError

from core.clock import utcnow
from core.errors import StoreUnavailableError

logger = structlog.get_logger()


class JobStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class JobRunRecord:
    """Outcome of one job execution."""

    job_name: str
    run_id: str
    status: JobStatus
    started_at: datetime
    completed_at: datetime | None = None
    duration_seconds: float | None = None
    summary: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    result: Any = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "run_id": self.run_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "summary": self.summary,
            "error": self.error,
        }


# ──────────────────────────────────────────────────────────────────────────
# Locks
# ──────────────────────────────────────────────────────────────────────────


class JobLock(ABC):
    @abstractmethod
    async def acquire(self) -> bool:
        """Try to take the lock without waiting."""
        ...

    @abstractmethod
    async def release(self) -> None:
        ...


_LOCAL_LOCKS: dict[str, asyncio.Lock] = {}


class LocalJobLock(JobLock):
    """In-process lock; enough for a single worker process."""

    def __init__(self, name: str):
        self.name = name
        self._lock = _LOCAL_LOCKS.setdefault(name, asyncio.Lock())

    async def acquire(self) -> bool:
        if self._lock.locked():
            return False
        await self._lock.acquire()
        return True

    async def release(self) -> None:
        if self._lock.locked():
            self._lock.release()


class RedisJobLock(JobLock):
    """Cross-process lock backed by a Redis key with a TTL."""

    def __init__(self, redis_client: aioredis.Redis, name: str, timeout_seconds: int):
        self.name = name
        self._lock = redis_client.lock(f"slotops:job-lock:{name}", timeout=timeout_seconds, blocking=False)

    async def acquire(self) -> bool:
        return bool(await self._lock.acquire(blocking=False))

    async def release(self) -> None:
        try:
            await self._lock.release()
        except LockError:
            # TTL expired before release; nothing left to free.
            logger.warning("job.lock_expired", lock=self.name)


LockFactory = Callable[[str], JobLock]


def summarize_result(result: Any) -> dict[str, Any]:
    if result is None:
        return {}
    if hasattr(result, "summary_dict"):
        return result.summary_dict()
    if is_dataclass(result):
        return asdict(result)
    if isinstance(result, dict):
        return result
    return {"result": str(result)}


# ──────────────────────────────────────────────────────────────────────────
# Runner
# ──────────────────────────────────────────────────────────────────────────


class JobRunner:
    def __init__(self, lock_factory: LockFactory = LocalJobLock, store=None):
        self.lock_factory = lock_factory
        self.store = store

    async def run_once(self, job_name: str, func: Callable[[], Awaitable[Any]]) -> JobRunRecord:
        run_id = f"{job_name}-{uuid.uuid4().hex[:12]}"
        started_at = utcnow()
        lock = self.lock_factory(job_name)

        if not await lock.acquire():
            record = JobRunRecord(
                job_name=job_name,
                run_id=run_id,
                status=JobStatus.SKIPPED,
                started_at=started_at,
                completed_at=started_at,
                duration_seconds=0.0,
                summary={"reason": "already_running"},
            )
            logger.warning("job.skipped", job_name=job_name, run_id=run_id, reason="already_running")
            await self._record(record)
            return record

        t0 = time.monotonic()
        structlog.contextvars.bind_contextvars(job_name=job_name, run_id=run_id)
        try:
            result = await func()
        except asyncio.CancelledError:
            record = self._finish(job_name, run_id, started_at, t0, JobStatus.CANCELLED)
            logger.warning("job.cancelled", duration_seconds=record.duration_seconds)
            await self._record(record)
            raise
        except Exception as exc:  # noqa: BLE001
            record = self._finish(job_name, run_id, started_at, t0, JobStatus.FAILED, error=f"{type(exc).__name__}: {exc}")
            logger.error("job.failed", duration_seconds=record.duration_seconds, error=record.error, exc_info=True)
        else:
            status = getattr(result, "job_status", JobStatus.SUCCESS)
            record = self._finish(
                job_name,
                run_id,
                started_at,
                t0,
                status,
                summary=summarize_result(result),
                error=getattr(result, "error", None),
            )
            record.result = result
            log = logger.info if status == JobStatus.SUCCESS else logger.warning
            log("job.completed", status=status.value, duration_seconds=record.duration_seconds, summary=record.summary)
        finally:
            structlog.contextvars.unbind_contextvars("job_name", "run_id")
            await lock.release()

        await self._record(record)
        return record

    @staticmethod
    def _finish(
        job_name: str,
        run_id: str,
        started_at: datetime,
        t0: float,
        status: JobStatus,
        summary: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> JobRunRecord:
        duration = round(time.monotonic() - t0, 3)
        return JobRunRecord(
            job_name=job_name,
            run_id=run_id,
            status=status,
            started_at=started_at,
            completed_at=utcnow(),
            duration_seconds=duration,
            summary=summary or {},
            error=error,
        )

    async def _record(self, record: JobRunRecord) -> None:
        if self.store is None:
            return
        try:
            await self.store.record_job_run(
                run_id=record.run_id,
                job_name=record.job_name,
                status=record.status.value,
                started_at=record.started_at,
                completed_at=record.completed_at,
                duration_seconds=record.duration_seconds,
                summary=record.summary,
                error=record.error,
            )
        except StoreUnavailableError as exc:
            logger.warning("job.record_failed", job_name=record.job_name, run_id=record.run_id, error=str(exc))

    async def run_interval(
        self,
        job_name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        stop_event: asyncio.Event,
        max_runs: int | None = None,
    ) -> list[JobRunRecord]:
        """
        Run `func` every `interval_seconds` until stop_event is set.

        The wait is measured from the start of each run; overruns start the
        next run immediately and missed ticks are never replayed.
        """
        records: list[JobRunRecord] = []
        while not stop_event.is_set():
            t0 = time.monotonic()
            records.append(await self.run_once(job_name, func))
            if max_runs is not None and len(records) >= max_runs:
                break
            delay = max(0.0, interval_seconds - (time.monotonic() - t0))
            if await wait_for_stop(stop_event, delay):
                break
        logger.info("job.loop_stopped", job_name=job_name, runs=len(records))
        return records

    async def run_daily(
        self,
        job_name: str,
        func: Callable[[], Awaitable[Any]],
        at: dt_time,
        stop_event: asyncio.Event,
        clock: Callable[[], datetime] = datetime.now,
    ) -> list[JobRunRecord]:
        """Run `func` once a day at local time `at` until stop_event is set."""
        records: list[JobRunRecord] = []
        while not stop_event.is_set():
            now = clock()
            delay = (next_daily_run(now, at) - now).total_seconds()
            logger.info("job.next_run_scheduled", job_name=job_name, in_seconds=round(delay, 1))
            if await wait_for_stop(stop_event, delay):
                break
            records.append(await self.run_once(job_name, func))
        return records


def next_daily_run(now: datetime, at: dt_time) -> datetime:
    """Next occurrence of `at` strictly after `now`."""
    candidate = now.replace(hour=at.hour, minute=at.minute, second=at.second, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


async def wait_for_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Sleep up to `timeout` seconds; True if stop was requested meanwhile."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        return False
    return True


class RedisLockFactory:
    """Hands out RedisJobLocks over one shared client; aclose() when the job is done."""

    def __init__(self, redis_client: aioredis.Redis, timeout_seconds: int):
        self._client = redis_client
        self.timeout_seconds = timeout_seconds

    def __call__(self, name: str) -> JobLock:
        return RedisJobLock(self._client, name, self.timeout_seconds)

    async def aclose(self) -> None:
        await self._client.aclose()


def build_redis_lock_factory(redis_url: str, timeout_seconds: int) -> RedisLockFactory:
    return RedisLockFactory(aioredis.from_url(redis_url), timeout_seconds)
