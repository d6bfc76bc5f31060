"""
Tafweej Ops Database Models

Six tables for the stage admission and capacity engine.

Tables:
  1. pilgrim_groups        - Named cohorts with a fixed headcount
  2. stages                - Timed transit windows for part of a cohort
  3. centers               - Physical holding locations and their occupancy counters
  4. center_stage_refills  - Opt-in auto-refill toggle + one-shot guard per (center, stage)
  5. departure_history     - Append-only ledger of recorded departures
  6. stage_alerts          - Advisory alerts from the monitor and consistency audit

Counter columns on centers/stages are written only by capacity.recorder and
capacity.replenisher (plus admin edits through the stages router).
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base


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


STAGE_STATUSES = ("inactive", "active", "waiting_departure", "completed")
STAGE_ALERT_TYPES = ("consistency_drift", "status_change_needed", "capacity_warning", "time_warning")
ALERT_SEVERITIES = ("low", "medium", "high", "critical")


# ─── 1. Pilgrim Groups ─────────────────────────────────────────────────────


class PilgrimGroup(Base):
    __tablename__ = "pilgrim_groups"

    pilgrim_group_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    nationality = Column(String(100), nullable=False)
    count = Column(Integer, nullable=False, default=0)  # fixed headcount, admin-edited only
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_pilgrim_groups_nationality", "nationality"),
        CheckConstraint("count >= 0", name="ck_pilgrim_group_count_nonneg"),
    )

    stages = relationship("Stage", back_populates="pilgrim_group")


# ─── 2. Stages ─────────────────────────────────────────────────────────────


class Stage(Base):
    __tablename__ = "stages"

    stage_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    pilgrim_group_id = Column(GUID(), ForeignKey("pilgrim_groups.pilgrim_group_id"), nullable=False)
    area_id = Column(GUID(), nullable=True)
    name = Column(String(255), nullable=False)
    status = Column(String(30), nullable=False, default="inactive")
    current_pilgrims = Column(Integer, nullable=False, default=0)
    departed_pilgrims = Column(Integer, nullable=False, default=0)
    total_pilgrims = Column(Integer)  # headcount assigned at creation
    start_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_date = Column(Date, nullable=False)
    end_time = Column(Time, nullable=False)
    required_departures = Column(Integer)  # only meaningful while waiting_departure
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_stages_group_status", "pilgrim_group_id", "status"),
        Index("ix_stages_status", "status"),
        CheckConstraint(
            "status IN ('inactive', 'active', 'waiting_departure', 'completed')",
            name="ck_stage_status",
        ),
        CheckConstraint("current_pilgrims >= 0", name="ck_stage_current_nonneg"),
        CheckConstraint("departed_pilgrims >= 0", name="ck_stage_departed_nonneg"),
        CheckConstraint(
            "required_departures IS NULL OR required_departures >= 0",
            name="ck_stage_required_departures_nonneg",
        ),
    )

    pilgrim_group = relationship("PilgrimGroup", back_populates="stages")
    alerts = relationship("StageAlert", back_populates="stage", cascade="all, delete-orphan")


# ─── 3. Centers ────────────────────────────────────────────────────────────


class Center(Base):
    __tablename__ = "centers"

    center_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    location = Column(Text)
    default_capacity = Column(Integer, nullable=False)
    current_count = Column(Integer, nullable=False, default=0)
    departed_pilgrims = Column(Integer, nullable=False, default=0)  # since last refill
    current_batch = Column(Integer, nullable=False, default=1)  # refill generation
    stage_id = Column(GUID(), ForeignKey("stages.stage_id"), nullable=True)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_centers_stage", "stage_id"),
        CheckConstraint("default_capacity >= 0", name="ck_center_capacity_nonneg"),
        CheckConstraint("current_count >= 0", name="ck_center_count_nonneg"),
        CheckConstraint("current_count <= default_capacity", name="ck_center_count_within_capacity"),
        CheckConstraint("departed_pilgrims >= 0", name="ck_center_departed_nonneg"),
        CheckConstraint("status IN ('active', 'inactive')", name="ck_center_status"),
    )

    stage = relationship("Stage")
    departures = relationship("DepartureHistory", back_populates="center")


# ─── 4. Center/Stage Refill Settings ───────────────────────────────────────


class CenterStageRefill(Base):
    """Operator opt-in for automatic refill, with a one-shot guard per stage assignment."""

    __tablename__ = "center_stage_refills"

    refill_setting_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    center_id = Column(GUID(), ForeignKey("centers.center_id"), nullable=False)
    stage_id = Column(GUID(), ForeignKey("stages.stage_id"), nullable=False)
    should_refill = Column(Boolean, nullable=False, default=False)
    is_refilled = Column(Boolean, nullable=False, default=False)
    refill_date = Column(DateTime)  # last automatic refill
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("center_id", "stage_id", name="uq_center_stage_refill"),)


# ─── 5. Departure History (append-only) ────────────────────────────────────


class DepartureHistory(Base):
    __tablename__ = "departure_history"

    history_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    center_id = Column(GUID(), ForeignKey("centers.center_id"), nullable=False)
    stage_id = Column(GUID(), ForeignKey("stages.stage_id"), nullable=True)
    batch_number = Column(Integer, nullable=False)
    departed_count = Column(Integer, nullable=False)
    departure_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    notes = Column(Text)
    recorded_by = Column(String(255))

    __table_args__ = (
        Index("ix_departure_history_center_date", "center_id", "departure_date"),
        CheckConstraint("departed_count > 0", name="ck_departure_count_positive"),
    )

    center = relationship("Center", back_populates="departures")


# ─── 6. Stage Alerts ───────────────────────────────────────────────────────


class StageAlert(Base):
    __tablename__ = "stage_alerts"

    stage_alert_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    stage_id = Column(GUID(), ForeignKey("stages.stage_id"), nullable=False)
    alert_type = Column(String(30), nullable=False)
    severity = Column(String(20), nullable=False, default="medium")
    message = Column(Text, nullable=False)
    alert_metadata = Column("metadata", JSON, default=dict)
    is_resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_stage_alerts_open", "stage_id", "alert_type", "is_resolved"),
        CheckConstraint(
            "alert_type IN ('consistency_drift', 'status_change_needed', 'capacity_warning', 'time_warning')",
            name="ck_stage_alert_type",
        ),
        CheckConstraint("severity IN ('low', 'medium', 'high', 'critical')", name="ck_stage_alert_severity"),
    )

    stage = relationship("Stage", back_populates="alerts")
