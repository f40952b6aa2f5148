"""
Store Adapter — the only path from the jobs to the relational store.

Every operation opens its own short-lived session and commits before
returning, so callers never hold a transaction across a network call.
Connection-level failures surface as StoreUnavailableError; everything
else propagates unchanged.
"""

import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from core.clock import to_naive_utc
from core.config import Settings
from core.errors import StoreUnavailableError, TierConflictError
from db.models import AlertEvent, JobRun, MetricSample, Player, SlotMachine, TierHistoryRecord
from db.session import Base, create_engine_from_settings, create_session_factory
from loyalty.tiers import Tier

logger = structlog.get_logger()


@dataclass
class SampleRecord:
    """Normalized telemetry reading, ready to be appended."""

    machine_id: str
    utilization: float
    status: str = "unknown"
    location: str | None = None
    revenue: float = 0.0
    spins: int = 0


@dataclass
class AlertTransition:
    """Result of open_alert: the open alert and whether it pre-existed."""

    alert: AlertEvent
    already_open: bool


class StoreAdapter:
    """Parameterized persistence operations for the monitor and reclassifier."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], engine: AsyncEngine | None = None):
        self._session_factory = session_factory
        self._engine = engine

    @classmethod
    def from_settings(cls, settings: Settings) -> "StoreAdapter":
        engine = create_engine_from_settings(settings)
        return cls(create_session_factory(engine), engine=engine)

    async def create_all(self) -> None:
        """Create missing tables (local/dev and tests; production uses Alembic)."""
        if self._engine is None:
            raise RuntimeError("create_all requires an engine-owning StoreAdapter")
        async with self._guard():
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        try:
            yield
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailableError(str(exc)) from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise StoreUnavailableError(str(exc)) from exc
            raise
        except (ConnectionError, OSError) as exc:
            raise StoreUnavailableError(str(exc)) from exc

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._guard():
            async with self._session_factory() as session:
                yield session

    # ──────────────────────────────────────────────────────────────────
    # Telemetry
    # ──────────────────────────────────────────────────────────────────

    async def append_metric_samples(
        self,
        cycle_id: uuid.UUID,
        samples: Sequence[SampleRecord],
        collected_at: datetime,
    ) -> dict[str, MetricSample]:
        """Append one row per sample. Returns rows keyed by machine_id."""
        if not samples:
            return {}
        collected_at = to_naive_utc(collected_at)
        rows: dict[str, MetricSample] = {}
        async with self._session() as db:
            for sample in samples:
                row = MetricSample(
                    sample_id=uuid.uuid4(),
                    cycle_id=cycle_id,
                    machine_id=sample.machine_id,
                    utilization=sample.utilization,
                    revenue=sample.revenue,
                    spins=sample.spins,
                    status=sample.status,
                    location=sample.location,
                    collected_at=collected_at,
                )
                db.add(row)
                rows[sample.machine_id] = row
            await db.commit()
        return rows

    async def get_open_alert(self, machine_id: str) -> AlertEvent | None:
        async with self._session() as db:
            result = await db.execute(
                select(AlertEvent).where(AlertEvent.machine_id == machine_id, AlertEvent.resolved_at.is_(None))
            )
            return result.scalar_one_or_none()

    async def open_alert(self, sample: MetricSample, now: datetime) -> AlertTransition:
        """
        Open an alert for the sample's machine unless one is already open.

        A second open for the same machine is a no-op that returns the
        existing alert with already_open=True.
        """
        now = to_naive_utc(now)
        async with self._session() as db:
            existing = await self._find_open_alert(db, sample.machine_id)
            if existing is not None:
                return AlertTransition(alert=existing, already_open=True)

            location = sample.location
            if not location:
                machine = await db.get(SlotMachine, sample.machine_id)
                location = machine.location if machine else None

            alert = AlertEvent(
                alert_id=uuid.uuid4(),
                machine_id=sample.machine_id,
                sample_id=sample.sample_id,
                cycle_id=sample.cycle_id,
                utilization=sample.utilization,
                location=location,
                created_at=now,
            )
            db.add(alert)
            try:
                await db.commit()
            except IntegrityError:
                # Lost a race against another writer; the partial unique index held.
                await db.rollback()
                existing = await self._find_open_alert(db, sample.machine_id)
                if existing is None:
                    raise
                return AlertTransition(alert=existing, already_open=True)
            return AlertTransition(alert=alert, already_open=False)

    async def resolve_alert(self, machine_id: str, now: datetime, reason: str = "recovered") -> AlertEvent | None:
        """Close the machine's open alert. Returns None when nothing was open."""
        now = to_naive_utc(now)
        async with self._session() as db:
            alert = await self._find_open_alert(db, machine_id)
            if alert is None:
                return None
            alert.resolved_at = now
            alert.resolution_reason = reason
            await db.commit()
            return alert

    async def mark_alert_notified(self, alert_id: uuid.UUID, now: datetime) -> None:
        async with self._session() as db:
            await db.execute(
                update(AlertEvent).where(AlertEvent.alert_id == alert_id).values(last_notified_at=to_naive_utc(now))
            )
            await db.commit()

    async def list_alerts(
        self,
        machine_id: str | None = None,
        open_only: bool = False,
        limit: int = 50,
    ) -> list[AlertEvent]:
        async with self._session() as db:
            query = select(AlertEvent)
            if machine_id:
                query = query.where(AlertEvent.machine_id == machine_id)
            if open_only:
                query = query.where(AlertEvent.resolved_at.is_(None))
            result = await db.execute(query.order_by(AlertEvent.created_at.desc()).limit(limit))
            return list(result.scalars().all())

    @staticmethod
    async def _find_open_alert(db: AsyncSession, machine_id: str) -> AlertEvent | None:
        result = await db.execute(
            select(AlertEvent).where(AlertEvent.machine_id == machine_id, AlertEvent.resolved_at.is_(None))
        )
        return result.scalar_one_or_none()

    # ──────────────────────────────────────────────────────────────────
    # Loyalty
    # ──────────────────────────────────────────────────────────────────

    async def select_players_due_for_evaluation(
        self,
        now: datetime,
        max_age: timedelta = timedelta(hours=24),
        limit: int | None = None,
    ) -> list[Player]:
        """Players never evaluated, or last evaluated before now - max_age."""
        cutoff = to_naive_utc(now) - max_age
        async with self._session() as db:
            query = (
                select(Player)
                .where(or_(Player.last_evaluated_at.is_(None), Player.last_evaluated_at < cutoff))
                .order_by(Player.last_evaluated_at.is_(None).desc(), Player.last_evaluated_at, Player.player_id)
            )
            if limit:
                query = query.limit(limit)
            result = await db.execute(query)
            return list(result.scalars().all())

    async def commit_tier_change(
        self,
        player_id: uuid.UUID,
        old_tier: Tier,
        new_tier: Tier,
        now: datetime,
        run_id: str | None = None,
    ) -> TierHistoryRecord:
        """
        Atomically move the player from old_tier to new_tier, stamp the
        evaluation time and append the history row.

        The update is conditioned on the stored tier still being old_tier,
        so the history row's old_tier always matches the prior state.
        """
        now = to_naive_utc(now)
        async with self._session() as db:
            async with db.begin():
                result = await db.execute(
                    update(Player)
                    .where(Player.player_id == player_id, Player.tier == old_tier.value)
                    .values(tier=new_tier.value, last_evaluated_at=now, updated_at=now)
                )
                if result.rowcount != 1:
                    raise TierConflictError(str(player_id), old_tier.value)
                record = TierHistoryRecord(
                    history_id=uuid.uuid4(),
                    player_id=player_id,
                    old_tier=old_tier.value,
                    new_tier=new_tier.value,
                    changed_at=now,
                    run_id=run_id,
                )
                db.add(record)
            return record

    async def touch_last_evaluated(self, player_id: uuid.UUID, now: datetime) -> None:
        now = to_naive_utc(now)
        async with self._session() as db:
            await db.execute(
                update(Player).where(Player.player_id == player_id).values(last_evaluated_at=now, updated_at=now)
            )
            await db.commit()

    async def get_player(self, player_id: uuid.UUID) -> Player | None:
        async with self._session() as db:
            return await db.get(Player, player_id)

    async def list_tier_history(self, player_id: uuid.UUID) -> list[TierHistoryRecord]:
        async with self._session() as db:
            result = await db.execute(
                select(TierHistoryRecord)
                .where(TierHistoryRecord.player_id == player_id)
                .order_by(TierHistoryRecord.changed_at, TierHistoryRecord.history_id)
            )
            return list(result.scalars().all())

    # ──────────────────────────────────────────────────────────────────
    # Job runs
    # ──────────────────────────────────────────────────────────────────

    async def record_job_run(
        self,
        *,
        run_id: str,
        job_name: str,
        status: str,
        started_at: datetime,
        completed_at: datetime | None,
        duration_seconds: float | None,
        summary: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        async with self._session() as db:
            db.add(
                JobRun(
                    run_id=run_id,
                    job_name=job_name,
                    status=status,
                    started_at=to_naive_utc(started_at),
                    completed_at=to_naive_utc(completed_at) if completed_at else None,
                    duration_seconds=duration_seconds,
                    summary=summary or {},
                    error=error,
                )
            )
            await db.commit()

    async def list_job_runs(self, job_name: str | None = None, limit: int = 50) -> list[JobRun]:
        async with self._session() as db:
            query = select(JobRun)
            if job_name:
                query = query.where(JobRun.job_name == job_name)
            result = await db.execute(query.order_by(JobRun.started_at.desc()).limit(limit))
            return list(result.scalars().all())
