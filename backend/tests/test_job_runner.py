"""
Tests for the Job Runner — single-instance execution, run records and
scheduling loops.
"""

import asyncio
from datetime import datetime, time, timedelta

import pytest

from workers.runner import JobRunner, JobStatus, LocalJobLock, RedisLockFactory, next_daily_run


class TestNextDailyRun:
    def test_later_today(self):
        now = datetime(2026, 3, 14, 1, 30)
        assert next_daily_run(now, time(2, 0)) == datetime(2026, 3, 14, 2, 0)

    def test_already_passed_rolls_to_tomorrow(self):
        now = datetime(2026, 3, 14, 2, 30)
        assert next_daily_run(now, time(2, 0)) == datetime(2026, 3, 15, 2, 0)

    def test_exactly_now_is_tomorrow(self):
        now = datetime(2026, 3, 14, 2, 0)
        assert next_daily_run(now, time(2, 0)) == datetime(2026, 3, 15, 2, 0)

    def test_month_boundary(self):
        now = datetime(2026, 3, 31, 23, 0)
        assert next_daily_run(now, time(2, 0)) == datetime(2026, 4, 1, 2, 0)


@pytest.mark.asyncio
class TestRunOnce:
    async def test_overlapping_run_is_skipped(self):
        runner = JobRunner(LocalJobLock)
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_job():
            started.set()
            await release.wait()
            return {"ok": True}

        first = asyncio.create_task(runner.run_once("overlap_job", slow_job))
        await started.wait()
        second = await runner.run_once("overlap_job", slow_job)
        release.set()
        first_record = await first

        assert second.status == JobStatus.SKIPPED
        assert second.summary == {"reason": "already_running"}
        assert first_record.status == JobStatus.SUCCESS
        assert first_record.summary == {"ok": True}

    async def test_failure_is_captured_and_lock_released(self):
        runner = JobRunner(LocalJobLock)

        async def broken():
            raise ValueError("bad input")

        async def fine():
            return None

        failed = await runner.run_once("flaky_job", broken)
        succeeded = await runner.run_once("flaky_job", fine)

        assert failed.status == JobStatus.FAILED
        assert failed.error == "ValueError: bad input"
        assert succeeded.status == JobStatus.SUCCESS

    async def test_run_is_recorded_in_store(self, store):
        runner = JobRunner(LocalJobLock, store=store)

        async def job():
            return {"processed": 3}

        record = await runner.run_once("recorded_job", job)

        runs = await store.list_job_runs(job_name="recorded_job")
        assert len(runs) == 1
        assert runs[0].run_id == record.run_id
        assert runs[0].status == "success"
        assert runs[0].summary == {"processed": 3}

    async def test_cancellation_is_recorded_and_propagates(self, store):
        runner = JobRunner(LocalJobLock, store=store)
        started = asyncio.Event()

        async def forever():
            started.set()
            await asyncio.Event().wait()

        task = asyncio.create_task(runner.run_once("cancel_job", forever))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        runs = await store.list_job_runs(job_name="cancel_job")
        assert [r.status for r in runs] == ["cancelled"]


@pytest.mark.asyncio
class TestLoops:
    async def test_run_interval_until_stopped(self):
        runner = JobRunner(LocalJobLock)
        stop_event = asyncio.Event()
        calls = []

        async def job():
            calls.append(1)
            if len(calls) == 3:
                stop_event.set()

        records = await runner.run_interval("interval_job", job, 0, stop_event)

        assert len(records) == 3
        assert all(r.status == JobStatus.SUCCESS for r in records)

    async def test_run_interval_stops_during_wait(self):
        runner = JobRunner(LocalJobLock)
        stop_event = asyncio.Event()

        async def job():
            asyncio.get_running_loop().call_later(0.01, stop_event.set)

        records = await asyncio.wait_for(runner.run_interval("waiting_job", job, 60, stop_event), timeout=2)

        assert len(records) == 1

    async def test_run_daily_fires_at_time_of_day(self):
        runner = JobRunner(LocalJobLock)
        stop_event = asyncio.Event()
        fire_at = datetime(2026, 3, 14, 2, 0)

        async def job():
            stop_event.set()
            return {"ran": True}

        records = await asyncio.wait_for(
            runner.run_daily(
                "daily_job",
                job,
                time(2, 0),
                stop_event,
                clock=lambda: fire_at - timedelta(milliseconds=20),
            ),
            timeout=2,
        )

        assert len(records) == 1
        assert records[0].summary == {"ran": True}


class FakeRedisLock:
    def __init__(self, held: set[str], key: str):
        self.held = held
        self.key = key

    async def acquire(self, blocking=False):
        if self.key in self.held:
            return False
        self.held.add(self.key)
        return True

    async def release(self):
        self.held.discard(self.key)


class FakeRedis:
    """Just enough of redis.asyncio.Redis for RedisJobLock."""

    def __init__(self):
        self.held: set[str] = set()
        self.closed = False

    def lock(self, key, timeout=None, blocking=True):
        return FakeRedisLock(self.held, key)

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
class TestRedisLockFactory:
    async def test_locks_share_the_client_and_close_releases_it(self):
        client = FakeRedis()
        factory = RedisLockFactory(client, timeout_seconds=60)
        runner = JobRunner(factory)

        record = await runner.run_once("redis_job", lambda: asyncio.sleep(0, result={"ok": True}))
        await factory.aclose()

        assert record.status == JobStatus.SUCCESS
        assert client.held == set()
        assert client.closed

    async def test_held_key_skips_the_run(self):
        client = FakeRedis()
        client.held.add("slotops:job-lock:redis_job")
        runner = JobRunner(RedisLockFactory(client, timeout_seconds=60))

        record = await runner.run_once("redis_job", lambda: asyncio.sleep(0, result={}))

        assert record.status == JobStatus.SKIPPED
