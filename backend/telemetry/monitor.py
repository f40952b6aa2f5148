"""
Telemetry Monitor — poll → persist → evaluate → escalate, once per cycle.

Each cycle:
  1. Fetch the snapshot (cancellable; a stop request abandons the cycle
     before anything is written)
  2. Persist every sample, critical or not
  3. Per machine, under that machine's lock:
       critical + no open alert  → open alert, notify once
       critical + open alert     → nothing (dedup)
       not critical / maintenance → resolve open alert, no notification
  4. Return a cycle result; the runner sleeps until the next tick

A failed fetch or an unreachable store fails the cycle, never the loop.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

import structlog

from alerts.engine import AlertDecision, classify_sample, dedupe_snapshot, resolution_reason, should_renotify
from alerts.notifier import Notifier
from core.clock import utcnow
from core.config import Settings
from core.errors import NotificationError, StoreUnavailableError, TelemetryFetchError
from db.models import MetricSample
from db.store import SampleRecord, StoreAdapter
from workers.runner import JobRunner, JobStatus

logger = structlog.get_logger()

MONITOR_JOB_NAME = "telemetry_monitor"


class TelemetrySource(Protocol):
    async def fetch_snapshot(self) -> list[SampleRecord]: ...


@dataclass
class MonitorCycleResult:
    cycle_id: uuid.UUID
    status: JobStatus = JobStatus.SUCCESS
    samples_persisted: int = 0
    critical_machines: int = 0
    alerts_opened: int = 0
    alerts_held: int = 0
    alerts_resolved: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    duplicates_dropped: int = 0
    error: str | None = None
    opened_machine_ids: list[str] = field(default_factory=list)

    @property
    def job_status(self) -> JobStatus:
        return self.status

    def summary_dict(self) -> dict:
        return {
            "cycle_id": str(self.cycle_id),
            "cycle_status": self.status.value,
            "samples_persisted": self.samples_persisted,
            "critical_machines": self.critical_machines,
            "alerts_opened": self.alerts_opened,
            "alerts_held": self.alerts_held,
            "alerts_resolved": self.alerts_resolved,
            "notifications_sent": self.notifications_sent,
            "notifications_failed": self.notifications_failed,
            "duplicates_dropped": self.duplicates_dropped,
        }


class TelemetryMonitor:
    def __init__(
        self,
        settings: Settings,
        source: TelemetrySource,
        store: StoreAdapter,
        notifier: Notifier,
        concurrency: int | None = None,
    ):
        self.settings = settings
        self.source = source
        self.store = store
        self.notifier = notifier
        self.threshold = settings.utilization_threshold
        self.realert_after = (
            timedelta(minutes=settings.realert_after_minutes) if settings.realert_after_minutes else None
        )
        self._semaphore = asyncio.Semaphore(max(1, concurrency or settings.monitor_concurrency))
        self._machine_locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, machine_id: str) -> asyncio.Lock:
        lock = self._machine_locks.get(machine_id)
        if lock is None:
            lock = self._machine_locks[machine_id] = asyncio.Lock()
        return lock

    async def run_cycle(self, stop_event: asyncio.Event | None = None) -> MonitorCycleResult:
        cycle_id = uuid.uuid4()
        result = MonitorCycleResult(cycle_id=cycle_id)
        log = logger.bind(cycle_id=str(cycle_id))

        # 1: Fetch
        try:
            samples = await self._fetch(stop_event)
        except TelemetryFetchError as exc:
            log.warning("monitor.fetch_failed", error=str(exc))
            result.status = JobStatus.FAILED
            result.error = f"fetch_failed: {exc}"
            return result
        if samples is None:
            log.info("monitor.cycle_abandoned", reason="shutdown_during_fetch")
            result.status = JobStatus.CANCELLED
            return result

        partition = dedupe_snapshot(samples)
        if partition.duplicates:
            log.warning("monitor.duplicate_samples_dropped", machine_ids=sorted(set(partition.duplicates)))
        result.duplicates_dropped = len(partition.duplicates)

        if not partition.samples:
            log.info("monitor.empty_snapshot")
            return result

        now = utcnow()
        try:
            # 2: Persist
            rows = await self.store.append_metric_samples(cycle_id, partition.samples, now)
            result.samples_persisted = len(rows)

            # 3: Evaluate + escalate; a failed machine abandons the rest of the cycle
            tasks = [
                asyncio.create_task(self._evaluate_machine(sample, rows[sample.machine_id], now, result))
                for sample in partition.samples
            ]
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
        except StoreUnavailableError as exc:
            log.error("monitor.store_unavailable", error=str(exc))
            result.status = JobStatus.FAILED
            result.error = f"store_unavailable: {exc}"
            return result

        log.info("monitor.cycle_completed", **result.summary_dict())
        return result

    async def _fetch(self, stop_event: asyncio.Event | None) -> list[SampleRecord] | None:
        """Fetch the snapshot; None if stop_event fires first."""
        if stop_event is None:
            return await self.source.fetch_snapshot()

        fetch = asyncio.ensure_future(self.source.fetch_snapshot())
        stopper = asyncio.ensure_future(stop_event.wait())
        try:
            done, _ = await asyncio.wait({fetch, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
        if fetch in done:
            return fetch.result()
        fetch.cancel()
        try:
            await fetch
        except asyncio.CancelledError:
            pass
        return None

    async def _evaluate_machine(
        self,
        sample: SampleRecord,
        row: MetricSample,
        now: datetime,
        result: MonitorCycleResult,
    ) -> None:
        async with self._semaphore, self._lock_for(sample.machine_id):
            decision = classify_sample(sample, self.threshold)

            if decision == AlertDecision.RESOLVE:
                resolved = await self.store.resolve_alert(sample.machine_id, now, reason=resolution_reason(sample))
                if resolved is not None:
                    result.alerts_resolved += 1
                    logger.info(
                        "monitor.alert_resolved",
                        machine_id=sample.machine_id,
                        alert_id=str(resolved.alert_id),
                        reason=resolved.resolution_reason,
                    )
                return

            result.critical_machines += 1
            transition = await self.store.open_alert(row, now)
            alert = transition.alert
            if transition.already_open:
                result.alerts_held += 1
                if not should_renotify(alert.last_notified_at, now, self.realert_after):
                    return
                logger.info("monitor.alert_renotify", machine_id=sample.machine_id, alert_id=str(alert.alert_id))
            else:
                result.alerts_opened += 1
                result.opened_machine_ids.append(sample.machine_id)
                logger.warning(
                    "monitor.alert_opened",
                    machine_id=sample.machine_id,
                    alert_id=str(alert.alert_id),
                    utilization=sample.utilization,
                    location=alert.location,
                )

            try:
                await self.notifier.send(alert)
            except NotificationError as exc:
                result.notifications_failed += 1
                logger.error(
                    "monitor.notify_failed",
                    machine_id=sample.machine_id,
                    alert_id=str(alert.alert_id),
                    error=str(exc),
                )
                return
            result.notifications_sent += 1
            await self.store.mark_alert_notified(alert.alert_id, now)

    async def run_forever(self, runner: JobRunner, stop_event: asyncio.Event, max_cycles: int | None = None):
        """Poll on the configured interval until stop_event is set."""
        logger.info(
            "monitor.started",
            interval_seconds=self.settings.monitor_interval_seconds,
            threshold=self.threshold,
        )
        return await runner.run_interval(
            MONITOR_JOB_NAME,
            lambda: self.run_cycle(stop_event),
            self.settings.monitor_interval_seconds,
            stop_event,
            max_runs=max_cycles,
        )
