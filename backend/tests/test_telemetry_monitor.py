"""
Tests for the Telemetry Monitor — poll, persist, evaluate, escalate.
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from conftest import FakeTelemetrySource, HangingTelemetrySource, RecordingNotifier, sample
from core.errors import StoreUnavailableError, TelemetryFetchError
from db.models import MetricSample
from db.store import StoreAdapter
from telemetry.monitor import TelemetryMonitor
from workers.runner import JobRunner, JobStatus, LocalJobLock


async def _sample_count(session_factory) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count(MetricSample.sample_id)))).scalar_one()


class FlakyAlertStore:
    """Delegates to a real store; opening an alert for `failing` raises StoreUnavailableError."""

    def __init__(self, inner: StoreAdapter, failing: str):
        self._inner = inner
        self.failing = failing

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def open_alert(self, sample, now):
        if sample.machine_id == self.failing:
            raise StoreUnavailableError("connection reset")
        await asyncio.sleep(0.05)
        return await self._inner.open_alert(sample, now)


@pytest.mark.asyncio
class TestAlertLifecycle:
    async def test_repeated_critical_cycles_notify_once(self, settings, store, session_factory, notifier):
        source = FakeTelemetrySource([[sample("M1", 92.0), sample("M2", 30.0)]])
        monitor = TelemetryMonitor(settings, source, store, notifier, concurrency=1)

        first = await monitor.run_cycle()
        second = await monitor.run_cycle()
        third = await monitor.run_cycle()

        assert first.alerts_opened == 1
        assert first.opened_machine_ids == ["M1"]
        assert second.alerts_opened == 0 and second.alerts_held == 1
        assert third.alerts_held == 1
        assert len(notifier.sent) == 1
        assert notifier.sent[0].machine_id == "M1"

        open_alerts = await store.list_alerts(open_only=True)
        assert len(open_alerts) == 1
        assert open_alerts[0].last_notified_at is not None

        # Every sample is kept, critical or not
        assert await _sample_count(session_factory) == 6

    async def test_recovery_resolves_then_new_alert(self, settings, store, notifier):
        source = FakeTelemetrySource(
            [
                [sample("M1", 92.0)],
                [sample("M1", 40.0)],
                [sample("M1", 95.0)],
            ]
        )
        monitor = TelemetryMonitor(settings, source, store, notifier, concurrency=1)

        await monitor.run_cycle()
        recovered = await monitor.run_cycle()
        reopened = await monitor.run_cycle()

        assert recovered.alerts_resolved == 1
        assert recovered.notifications_sent == 0
        assert reopened.alerts_opened == 1
        assert len(notifier.sent) == 2
        assert notifier.sent[0].alert_id != notifier.sent[1].alert_id

        history = await store.list_alerts(machine_id="M1")
        assert len(history) == 2
        assert sum(1 for a in history if a.is_open) == 1
        resolved = [a for a in history if not a.is_open][0]
        assert resolved.resolution_reason == "recovered"

    async def test_maintenance_resolves_without_notification(self, settings, store, notifier):
        source = FakeTelemetrySource(
            [
                [sample("M1", 92.0)],
                [sample("M1", 97.0, status="maintenance")],
            ]
        )
        monitor = TelemetryMonitor(settings, source, store, notifier, concurrency=1)

        await monitor.run_cycle()
        result = await monitor.run_cycle()

        assert result.alerts_resolved == 1
        assert result.critical_machines == 0
        assert len(notifier.sent) == 1
        alerts = await store.list_alerts(machine_id="M1")
        assert alerts[0].resolution_reason == "maintenance"

    async def test_maintenance_never_opens(self, settings, store, notifier):
        source = FakeTelemetrySource([[sample("M1", 99.0, status="maintenance")]])
        monitor = TelemetryMonitor(settings, source, store, notifier, concurrency=1)

        result = await monitor.run_cycle()

        assert result.alerts_opened == 0
        assert await store.list_alerts() == []

    async def test_threshold_is_exclusive(self, settings, store, notifier):
        source = FakeTelemetrySource([[sample("M1", 85.0), sample("M2", 85.01)]])
        monitor = TelemetryMonitor(settings, source, store, notifier, concurrency=1)

        result = await monitor.run_cycle()

        assert result.opened_machine_ids == ["M2"]

    async def test_missing_machine_keeps_alert_open(self, settings, store, notifier):
        source = FakeTelemetrySource([[sample("M1", 92.0)], [sample("M2", 10.0)]])
        monitor = TelemetryMonitor(settings, source, store, notifier, concurrency=1)

        await monitor.run_cycle()
        await monitor.run_cycle()

        assert await store.get_open_alert("M1") is not None


@pytest.mark.asyncio
class TestCycleFailures:
    async def test_fetch_failure_does_not_stop_the_loop(self, settings, store, notifier):
        fast = settings.model_copy(update={"monitor_interval_seconds": 0})
        source = FakeTelemetrySource([TelemetryFetchError("HTTP 503"), [sample("M1", 90.0)]])
        monitor = TelemetryMonitor(fast, source, store, notifier, concurrency=1)
        runner = JobRunner(LocalJobLock, store=store)

        records = await monitor.run_forever(runner, asyncio.Event(), max_cycles=2)

        assert [r.status for r in records] == [JobStatus.FAILED, JobStatus.SUCCESS]
        assert "fetch_failed" in records[0].error
        assert records[1].summary["alerts_opened"] == 1
        assert source.calls == 2
        assert len(notifier.sent) == 1

    async def test_fetch_failure_writes_nothing(self, settings, store, session_factory, notifier):
        source = FakeTelemetrySource([TelemetryFetchError("timed out")])
        monitor = TelemetryMonitor(settings, source, store, notifier, concurrency=1)

        result = await monitor.run_cycle()

        assert result.status == JobStatus.FAILED
        assert await _sample_count(session_factory) == 0

    async def test_empty_snapshot(self, settings, store, notifier):
        monitor = TelemetryMonitor(settings, FakeTelemetrySource([[]]), store, notifier, concurrency=1)

        result = await monitor.run_cycle()

        assert result.status == JobStatus.SUCCESS
        assert result.samples_persisted == 0
        assert notifier.attempts == 0

    async def test_notifier_failure_keeps_alert_open_without_retry(self, settings, store):
        notifier = RecordingNotifier(fail=True)
        source = FakeTelemetrySource([[sample("M1", 92.0)]])
        monitor = TelemetryMonitor(settings, source, store, notifier, concurrency=1)

        first = await monitor.run_cycle()
        second = await monitor.run_cycle()

        assert first.status == JobStatus.SUCCESS
        assert first.notifications_failed == 1
        assert second.alerts_held == 1
        assert notifier.attempts == 1
        alert = await store.get_open_alert("M1")
        assert alert is not None
        assert alert.last_notified_at is None

    async def test_duplicate_machine_ids_keep_last(self, settings, store, notifier):
        source = FakeTelemetrySource([[sample("M1", 10.0), sample("M1", 95.0)]])
        monitor = TelemetryMonitor(settings, source, store, notifier, concurrency=1)

        result = await monitor.run_cycle()

        assert result.duplicates_dropped == 1
        assert result.samples_persisted == 1
        assert result.alerts_opened == 1

    async def test_store_unavailable_fails_cycle(self, settings, notifier, tmp_path):
        broken = settings.model_copy(
            update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'db.sqlite'}"}
        )
        store = StoreAdapter.from_settings(broken)
        monitor = TelemetryMonitor(broken, FakeTelemetrySource([[sample("M1", 92.0)]]), store, notifier)
        try:
            result = await monitor.run_cycle()
        finally:
            await store.dispose()

        assert result.status == JobStatus.FAILED
        assert result.error.startswith("store_unavailable")
        assert notifier.attempts == 0

    async def test_store_failure_on_one_machine_abandons_the_others(self, settings, store, notifier):
        source = FakeTelemetrySource([[sample("M1", 92.0), sample("M2", 95.0), sample("M3", 97.0)]])
        flaky = FlakyAlertStore(store, failing="M1")
        monitor = TelemetryMonitor(settings, source, flaky, notifier, concurrency=4)

        result = await monitor.run_cycle()
        opened_at_return = result.alerts_opened
        await asyncio.sleep(0.2)

        assert result.status == JobStatus.FAILED
        assert result.error == "store_unavailable: connection reset"
        assert notifier.attempts == 0
        assert result.alerts_opened == opened_at_return == 0
        assert await store.list_alerts(open_only=True) == []


@pytest.mark.asyncio
class TestConcurrentCycles:
    async def test_parallel_machines_notify_once_each(self, settings, store, notifier):
        machines = [f"M{i}" for i in range(1, 7)]
        source = FakeTelemetrySource([[sample(m, 90.0 + i) for i, m in enumerate(machines)]])
        monitor = TelemetryMonitor(settings, source, store, notifier, concurrency=4)

        results = [await monitor.run_cycle() for _ in range(3)]

        assert results[0].alerts_opened == len(machines)
        assert all(r.alerts_held == len(machines) for r in results[1:])
        assert sorted(a.machine_id for a in notifier.sent) == machines
        open_alerts = await store.list_alerts(open_only=True)
        assert sorted(a.machine_id for a in open_alerts) == machines
        assert all(a.last_notified_at is not None for a in open_alerts)

    async def test_overlapping_cycles_share_one_alert_per_machine(self, settings, store, notifier):
        machines = ["M1", "M2", "M3"]
        source = FakeTelemetrySource([[sample(m, 95.0) for m in machines]])
        monitor = TelemetryMonitor(settings, source, store, notifier, concurrency=4)

        results = await asyncio.gather(monitor.run_cycle(), monitor.run_cycle())

        assert sum(r.alerts_opened for r in results) == len(machines)
        assert sorted(a.machine_id for a in notifier.sent) == machines
        assert len(await store.list_alerts(open_only=True)) == len(machines)


@pytest.mark.asyncio
class TestShutdown:
    async def test_stop_during_fetch_abandons_cycle(self, settings, store, session_factory, notifier):
        source = HangingTelemetrySource()
        monitor = TelemetryMonitor(settings, source, store, notifier, concurrency=1)
        stop_event = asyncio.Event()

        task = asyncio.create_task(monitor.run_cycle(stop_event))
        await asyncio.sleep(0.01)
        stop_event.set()
        result = await asyncio.wait_for(task, timeout=2)

        assert result.status == JobStatus.CANCELLED
        assert source.cancelled is True
        assert await _sample_count(session_factory) == 0


@pytest.mark.asyncio
class TestRenotify:
    async def test_realert_after_window(self, settings, store, notifier, monkeypatch):
        realert = settings.model_copy(update={"realert_after_minutes": 30})
        t0 = datetime(2026, 3, 14, 12, 0, 0)
        times = iter([t0, t0 + timedelta(minutes=10), t0 + timedelta(minutes=45)])
        monkeypatch.setattr("telemetry.monitor.utcnow", lambda: next(times))

        source = FakeTelemetrySource([[sample("M1", 92.0)]])
        monitor = TelemetryMonitor(realert, source, store, notifier, concurrency=1)

        await monitor.run_cycle()
        quiet = await monitor.run_cycle()
        reminded = await monitor.run_cycle()

        assert quiet.notifications_sent == 0
        assert reminded.notifications_sent == 1
        assert len(notifier.sent) == 2
        assert notifier.sent[0].alert_id == notifier.sent[1].alert_id
