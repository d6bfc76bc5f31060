"""
Initial schema - six engine tables + departure/refill procedures

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


# Same checks as capacity.recorder, for clients calling the database directly.
UPDATE_DEPARTURE_COUNTS_SQL = """
CREATE OR REPLACE FUNCTION update_departure_counts(
    p_center_id uuid,
    p_stage_id uuid,
    p_departure_count integer
) RETURNS jsonb
LANGUAGE plpgsql
AS $$
DECLARE
    v_batch integer;
BEGIN
    IF p_departure_count IS NULL OR p_departure_count <= 0 THEN
        RETURN jsonb_build_object('success', false, 'error', 'departure_count must be positive');
    END IF;

    UPDATE centers
       SET current_count = current_count - p_departure_count,
           departed_pilgrims = departed_pilgrims + p_departure_count,
           updated_at = now()
     WHERE center_id = p_center_id
       AND current_count >= p_departure_count
    RETURNING current_batch INTO v_batch;
    IF NOT FOUND THEN
        RETURN jsonb_build_object('success', false, 'error', 'center missing or not enough pilgrims');
    END IF;

    UPDATE stages
       SET current_pilgrims = current_pilgrims - p_departure_count,
           departed_pilgrims = departed_pilgrims + p_departure_count,
           updated_at = now()
     WHERE stage_id = p_stage_id
       AND current_pilgrims >= p_departure_count
       AND status IN ('active', 'inactive');
    IF NOT FOUND THEN
        RAISE EXCEPTION 'stage % cannot accept % departures', p_stage_id, p_departure_count;
    END IF;

    INSERT INTO departure_history (center_id, stage_id, batch_number, departed_count, departure_date)
    VALUES (p_center_id, p_stage_id, v_batch, p_departure_count, (now() AT TIME ZONE 'Asia/Riyadh'));

    RETURN jsonb_build_object('success', true, 'batch_number', v_batch);
EXCEPTION
    WHEN raise_exception THEN
        RETURN jsonb_build_object('success', false, 'error', SQLERRM);
END;
$$;
"""

REFILL_CENTER_SQL = """
CREATE OR REPLACE FUNCTION refill_center_if_empty(p_center_id uuid) RETURNS boolean
LANGUAGE plpgsql
AS $$
DECLARE
    v_stage_id uuid;
BEGIN
    SELECT stage_id INTO v_stage_id
      FROM centers
     WHERE center_id = p_center_id AND current_count = 0 AND stage_id IS NOT NULL;
    IF NOT FOUND THEN
        RETURN false;
    END IF;

    UPDATE center_stage_refills
       SET is_refilled = true, refill_date = (now() AT TIME ZONE 'Asia/Riyadh')
     WHERE center_id = p_center_id AND stage_id = v_stage_id
       AND should_refill AND NOT is_refilled;
    IF NOT FOUND THEN
        RETURN false;
    END IF;

    UPDATE centers
       SET current_count = default_capacity,
           departed_pilgrims = 0,
           current_batch = current_batch + 1,
           updated_at = now()
     WHERE center_id = p_center_id AND current_count = 0 AND stage_id = v_stage_id;
    IF NOT FOUND THEN
        RAISE EXCEPTION 'center % changed during refill', p_center_id;
    END IF;
    RETURN true;
END;
$$;
"""


def upgrade() -> None:
    # 1. Pilgrim Groups
    op.create_table(
        "pilgrim_groups",
        sa.Column(
            "pilgrim_group_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("nationality", sa.String(100), nullable=False),
        sa.Column("count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("count >= 0", name="ck_pilgrim_group_count_nonneg"),
    )
    op.create_index("ix_pilgrim_groups_nationality", "pilgrim_groups", ["nationality"])

    # 2. Stages
    op.create_table(
        "stages",
        sa.Column("stage_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "pilgrim_group_id",
            UUID(as_uuid=True),
            sa.ForeignKey("pilgrim_groups.pilgrim_group_id"),
            nullable=False,
        ),
        sa.Column("area_id", UUID(as_uuid=True)),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="inactive"),
        sa.Column("current_pilgrims", sa.Integer, nullable=False, server_default="0"),
        sa.Column("departed_pilgrims", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_pilgrims", sa.Integer),
        sa.Column("start_date", sa.Date, nullable=False),
        sa.Column("start_time", sa.Time, nullable=False),
        sa.Column("end_date", sa.Date, nullable=False),
        sa.Column("end_time", sa.Time, nullable=False),
        sa.Column("required_departures", sa.Integer),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('inactive', 'active', 'waiting_departure', 'completed')",
            name="ck_stage_status",
        ),
        sa.CheckConstraint("current_pilgrims >= 0", name="ck_stage_current_nonneg"),
        sa.CheckConstraint("departed_pilgrims >= 0", name="ck_stage_departed_nonneg"),
        sa.CheckConstraint(
            "required_departures IS NULL OR required_departures >= 0",
            name="ck_stage_required_departures_nonneg",
        ),
    )
    op.create_index("ix_stages_group_status", "stages", ["pilgrim_group_id", "status"])
    op.create_index("ix_stages_status", "stages", ["status"])

    # 3. Centers
    op.create_table(
        "centers",
        sa.Column("center_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("location", sa.Text),
        sa.Column("default_capacity", sa.Integer, nullable=False),
        sa.Column("current_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("departed_pilgrims", sa.Integer, nullable=False, server_default="0"),
        sa.Column("current_batch", sa.Integer, nullable=False, server_default="1"),
        sa.Column("stage_id", UUID(as_uuid=True), sa.ForeignKey("stages.stage_id")),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("default_capacity >= 0", name="ck_center_capacity_nonneg"),
        sa.CheckConstraint("current_count >= 0", name="ck_center_count_nonneg"),
        sa.CheckConstraint("current_count <= default_capacity", name="ck_center_count_within_capacity"),
        sa.CheckConstraint("departed_pilgrims >= 0", name="ck_center_departed_nonneg"),
        sa.CheckConstraint("status IN ('active', 'inactive')", name="ck_center_status"),
    )
    op.create_index("ix_centers_stage", "centers", ["stage_id"])

    # 4. Center/Stage Refill Settings
    op.create_table(
        "center_stage_refills",
        sa.Column(
            "refill_setting_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("center_id", UUID(as_uuid=True), sa.ForeignKey("centers.center_id"), nullable=False),
        sa.Column("stage_id", UUID(as_uuid=True), sa.ForeignKey("stages.stage_id"), nullable=False),
        sa.Column("should_refill", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_refilled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("refill_date", sa.DateTime),
        sa.Column("notes", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("center_id", "stage_id", name="uq_center_stage_refill"),
    )

    # 5. Departure History (append-only ledger)
    op.create_table(
        "departure_history",
        sa.Column("history_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("center_id", UUID(as_uuid=True), sa.ForeignKey("centers.center_id"), nullable=False),
        sa.Column("stage_id", UUID(as_uuid=True), sa.ForeignKey("stages.stage_id")),
        sa.Column("batch_number", sa.Integer, nullable=False),
        sa.Column("departed_count", sa.Integer, nullable=False),
        sa.Column("departure_date", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("notes", sa.Text),
        sa.Column("recorded_by", sa.String(255)),
        sa.CheckConstraint("departed_count > 0", name="ck_departure_count_positive"),
    )
    op.create_index("ix_departure_history_center_date", "departure_history", ["center_id", "departure_date"])

    # 6. Stage Alerts
    op.create_table(
        "stage_alerts",
        sa.Column(
            "stage_alert_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("stage_id", UUID(as_uuid=True), sa.ForeignKey("stages.stage_id"), nullable=False),
        sa.Column("alert_type", sa.String(30), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False, server_default="medium"),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("metadata", JSONB, server_default="{}"),
        sa.Column("is_resolved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "alert_type IN ('consistency_drift', 'status_change_needed', 'capacity_warning', 'time_warning')",
            name="ck_stage_alert_type",
        ),
        sa.CheckConstraint("severity IN ('low', 'medium', 'high', 'critical')", name="ck_stage_alert_severity"),
    )
    op.create_index("ix_stage_alerts_open", "stage_alerts", ["stage_id", "alert_type", "is_resolved"])
    op.execute(
        "CREATE UNIQUE INDEX uq_stage_alerts_open ON stage_alerts(stage_id, alert_type) WHERE is_resolved = false"
    )

    op.execute(UPDATE_DEPARTURE_COUNTS_SQL)
    op.execute(REFILL_CENTER_SQL)


def downgrade() -> None:
    op.execute("DROP FUNCTION IF EXISTS refill_center_if_empty(uuid)")
    op.execute("DROP FUNCTION IF EXISTS update_departure_counts(uuid, uuid, integer)")
    tables = [
        "stage_alerts",
        "departure_history",
        "center_stage_refills",
        "centers",
        "stages",
        "pilgrim_groups",
    ]
    for table in tables:
        op.drop_table(table)
