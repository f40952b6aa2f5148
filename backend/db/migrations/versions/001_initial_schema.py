"""
Initial schema - slot telemetry, alerts, players, tier history, job runs

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # 1. Slot machines
    op.create_table(
        "slot_machines",
        sa.Column("machine_id", sa.String(64), primary_key=True),
        sa.Column("location", sa.String(255)),
        sa.Column("game_type", sa.String(100)),
        sa.Column("max_bet", sa.Numeric(10, 2)),
        sa.Column("last_maintenance_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )

    # 2. Metric samples
    op.create_table(
        "metric_samples",
        sa.Column("sample_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("cycle_id", UUID(as_uuid=True), nullable=False),
        sa.Column("machine_id", sa.String(64), nullable=False),
        sa.Column("utilization", sa.Float, nullable=False),
        sa.Column("revenue", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("spins", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="unknown"),
        sa.Column("location", sa.String(255)),
        sa.Column("collected_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status IN ('normal', 'maintenance', 'unknown')", name="ck_sample_status"),
    )
    op.create_index("ix_samples_machine_time", "metric_samples", ["machine_id", "collected_at"])
    op.create_index("ix_samples_cycle", "metric_samples", ["cycle_id"])

    # 3. Alert events
    op.create_table(
        "alert_events",
        sa.Column("alert_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("machine_id", sa.String(64), nullable=False),
        sa.Column("sample_id", UUID(as_uuid=True), sa.ForeignKey("metric_samples.sample_id"), nullable=False),
        sa.Column("cycle_id", UUID(as_uuid=True), nullable=False),
        sa.Column("utilization", sa.Float, nullable=False),
        sa.Column("location", sa.String(255)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("last_notified_at", sa.DateTime),
        sa.Column("resolved_at", sa.DateTime),
        sa.Column("resolution_reason", sa.String(50)),
    )
    op.create_index(
        "uq_alert_open_per_machine",
        "alert_events",
        ["machine_id"],
        unique=True,
        postgresql_where=sa.text("resolved_at IS NULL"),
    )
    op.create_index("ix_alerts_machine_created", "alert_events", ["machine_id", "created_at"])

    # 4. Players
    op.create_table(
        "players",
        sa.Column("player_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("total_wager", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("tier", sa.String(20), nullable=False, server_default="silver"),
        sa.Column("last_evaluated_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("tier IN ('silver', 'gold', 'platinum', 'diamond')", name="ck_player_tier"),
        sa.CheckConstraint("total_wager >= 0", name="ck_player_wager_nonneg"),
    )
    op.create_index("ix_players_last_evaluated", "players", ["last_evaluated_at"])

    # 5. Tier history (append-only)
    op.create_table(
        "tier_history",
        sa.Column("history_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("player_id", UUID(as_uuid=True), sa.ForeignKey("players.player_id"), nullable=False),
        sa.Column("old_tier", sa.String(20), nullable=False),
        sa.Column("new_tier", sa.String(20), nullable=False),
        sa.Column("changed_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("run_id", sa.String(64)),
        sa.CheckConstraint("old_tier <> new_tier", name="ck_history_effective_change"),
    )
    op.create_index("ix_history_player_time", "tier_history", ["player_id", "changed_at"])

    # Samples and history rows are facts: reject edits and deletes.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION reject_append_only_change() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION '% is append-only', TG_TABLE_NAME;
        END;
        $$ LANGUAGE plpgsql
        """
    )
    for table in ("metric_samples", "tier_history"):
        op.execute(
            f"CREATE TRIGGER {table}_append_only BEFORE UPDATE OR DELETE ON {table} "
            "FOR EACH ROW EXECUTE FUNCTION reject_append_only_change()"
        )

    # 6. Job runs
    op.create_table(
        "job_runs",
        sa.Column("run_id", sa.String(64), primary_key=True),
        sa.Column("job_name", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("started_at", sa.DateTime, nullable=False),
        sa.Column("completed_at", sa.DateTime),
        sa.Column("duration_seconds", sa.Float),
        sa.Column("summary", sa.JSON),
        sa.Column("error", sa.Text),
        sa.CheckConstraint("status IN ('success', 'failed', 'skipped', 'cancelled')", name="ck_job_run_status"),
    )
    op.create_index("ix_job_runs_name_started", "job_runs", ["job_name", "started_at"])


def downgrade() -> None:
    op.drop_table("job_runs")
    for table in ("metric_samples", "tier_history"):
        op.execute(f"DROP TRIGGER IF EXISTS {table}_append_only ON {table}")
    op.execute("DROP FUNCTION IF EXISTS reject_append_only_change()")
    op.drop_table("tier_history")
    op.drop_table("players")
    op.drop_table("alert_events")
    op.drop_table("metric_samples")
    op.drop_table("slot_machines")
