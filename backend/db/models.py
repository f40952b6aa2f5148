"""
SlotOps Database Models

Tables:
  1. slot_machines    - Gaming device registry (read-only to the core)
  2. metric_samples   - Per-poll telemetry readings (append-only)
  3. alert_events     - Overutilization alerts (≤ 1 open per machine)
  4. players          - Loyalty members with cumulative wager and tier
  5. tier_history     - Tier transition audit trail (append-only)
  6. job_runs         - Scheduled job outcomes (status, duration, summary)
"""

import uuid

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


from sqlalchemy.orm import relationship

from core.clock import utcnow
from db.session import Base

MACHINE_STATUSES = ("normal", "maintenance", "unknown")

# ─── 1. Slot Machines ──────────────────────────────────────────────────────


class SlotMachine(Base):
    __tablename__ = "slot_machines"

    machine_id = Column(String(64), primary_key=True)
    location = Column(String(255))
    game_type = Column(String(100))
    max_bet = Column(Numeric(10, 2))
    last_maintenance_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# ─── 2. Metric Samples ─────────────────────────────────────────────────────


class MetricSample(Base):
    __tablename__ = "metric_samples"

    sample_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    cycle_id = Column(GUID(), nullable=False)
    machine_id = Column(String(64), nullable=False)
    utilization = Column(Float, nullable=False)
    revenue = Column(Numeric(14, 2), nullable=False, default=0)
    spins = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="unknown")
    location = Column(String(255))
    collected_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('normal', 'maintenance', 'unknown')", name="ck_sample_status"),
        Index("ix_samples_machine_time", "machine_id", "collected_at"),
        Index("ix_samples_cycle", "cycle_id"),
    )


# ─── 3. Alert Events ───────────────────────────────────────────────────────


class AlertEvent(Base):
    __tablename__ = "alert_events"

    alert_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    machine_id = Column(String(64), nullable=False)
    sample_id = Column(GUID(), ForeignKey("metric_samples.sample_id"), nullable=False)
    cycle_id = Column(GUID(), nullable=False)
    utilization = Column(Float, nullable=False)
    location = Column(String(255))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_notified_at = Column(DateTime)
    resolved_at = Column(DateTime)
    resolution_reason = Column(String(50))

    sample = relationship("MetricSample")

    __table_args__ = (
        # At most one open alert per machine.
        Index(
            "uq_alert_open_per_machine",
            "machine_id",
            unique=True,
            postgresql_where=resolved_at.is_(None),
            sqlite_where=resolved_at.is_(None),
        ),
        Index("ix_alerts_machine_created", "machine_id", "created_at"),
    )

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None


# ─── 4. Players ────────────────────────────────────────────────────────────


class Player(Base):
    __tablename__ = "players"

    player_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    display_name = Column(String(255), nullable=False)
    email = Column(String(255))
    total_wager = Column(Numeric(14, 2), nullable=False, default=0)
    tier = Column(String(20), nullable=False, default="silver")
    last_evaluated_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("tier IN ('silver', 'gold', 'platinum', 'diamond')", name="ck_player_tier"),
        CheckConstraint("total_wager >= 0", name="ck_player_wager_nonneg"),
        Index("ix_players_last_evaluated", "last_evaluated_at"),
    )


# ─── 5. Tier History ───────────────────────────────────────────────────────


class TierHistoryRecord(Base):
    __tablename__ = "tier_history"

    history_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    player_id = Column(GUID(), ForeignKey("players.player_id"), nullable=False)
    old_tier = Column(String(20), nullable=False)
    new_tier = Column(String(20), nullable=False)
    changed_at = Column(DateTime, nullable=False, default=utcnow)
    run_id = Column(String(64))

    __table_args__ = (
        CheckConstraint("old_tier <> new_tier", name="ck_history_effective_change"),
        Index("ix_history_player_time", "player_id", "changed_at"),
    )


# ─── 6. Job Runs ───────────────────────────────────────────────────────────


class JobRun(Base):
    __tablename__ = "job_runs"

    run_id = Column(String(64), primary_key=True)
    job_name = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)
    duration_seconds = Column(Float)
    summary = Column(JSON, default=dict)
    error = Column(Text)

    __table_args__ = (
        CheckConstraint("status IN ('success', 'failed', 'skipped', 'cancelled')", name="ck_job_run_status"),
        Index("ix_job_runs_name_started", "job_name", "started_at"),
    )
