"""
Stage Lifecycle — window helpers and explicit admin transitions.

State machine:
    inactive ──start──────────────▶ active ──complete──▶ completed
    inactive ──queue──▶ waiting_departure ──(allocator)──▶ active
    active ──(scheduler: outside window)──▶ inactive

The scheduler only ever narrows status and the allocator is the only path
out of waiting_departure. Everything here is the admin side of the machine.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, time
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import PilgrimGroup, Stage
from stages.errors import EngineNotFoundError, EngineValidationError, StageTransitionError

logger = structlog.get_logger()

_settings = get_settings()
STAGE_TIMEZONE = ZoneInfo(_settings.stage_timezone)

CREATABLE_STATUSES = ("inactive", "active", "waiting_departure")


@dataclass(frozen=True)
class StageWindow:
    starts_at: datetime
    ends_at: datetime

    def contains(self, moment: datetime) -> bool:
        return self.starts_at <= moment <= self.ends_at

    def hours_until_end(self, moment: datetime) -> float:
        return (self.ends_at - moment).total_seconds() / 3600


def local_now() -> datetime:
    """Naive wall-clock time in the stage timezone (stage dates are stored naive)."""
    return datetime.now(STAGE_TIMEZONE).replace(tzinfo=None, microsecond=0)


def stage_window(stage) -> StageWindow:
    """Window boundaries for anything exposing start/end date and time attributes."""
    return StageWindow(
        starts_at=datetime.combine(stage.start_date, stage.start_time),
        ends_at=datetime.combine(stage.end_date, stage.end_time),
    )


def validate_stage_counts(stage) -> list[str]:
    """Return human-readable problems with a stage's counters; empty when valid."""
    errors = []
    if stage.current_pilgrims is None or stage.current_pilgrims < 0:
        errors.append("current_pilgrims cannot be negative")
    if (stage.departed_pilgrims or 0) < 0:
        errors.append("departed_pilgrims cannot be negative")
    if stage.status == "waiting_departure" and stage.required_departures is None:
        errors.append("required_departures is required for waiting_departure stages")
    if stage.required_departures is not None and stage.required_departures < 0:
        errors.append("required_departures cannot be negative")
    return errors


async def get_stage_or_raise(db: AsyncSession, stage_id: uuid.UUID) -> Stage:
    stage = await db.get(Stage, stage_id, populate_existing=True)
    if stage is None:
        raise EngineNotFoundError(f"Stage {stage_id} not found")
    return stage


async def create_stage(
    db: AsyncSession,
    *,
    pilgrim_group_id: uuid.UUID,
    name: str,
    start_date: date,
    start_time: time,
    end_date: date,
    end_time: time,
    current_pilgrims: int,
    departed_pilgrims: int = 0,
    area_id: uuid.UUID | None = None,
    status: str = "inactive",
    required_departures: int | None = None,
    now: datetime | None = None,
) -> Stage:
    """Create a stage. total_pilgrims is frozen at current + departed for the auditor."""
    if status not in CREATABLE_STATUSES:
        raise StageTransitionError(f"Cannot create a stage in '{status}' status")

    group = await db.get(PilgrimGroup, pilgrim_group_id)
    if group is None:
        raise EngineNotFoundError(f"Pilgrim group {pilgrim_group_id} not found")

    stage = Stage(
        pilgrim_group_id=pilgrim_group_id,
        area_id=area_id,
        name=name,
        status=status,
        current_pilgrims=current_pilgrims,
        departed_pilgrims=departed_pilgrims,
        total_pilgrims=current_pilgrims + departed_pilgrims,
        start_date=start_date,
        start_time=start_time,
        end_date=end_date,
        end_time=end_time,
        required_departures=required_departures,
    )
    problems = validate_stage_counts(stage)
    window = stage_window(stage)
    if window.ends_at < window.starts_at:
        problems.append("stage window ends before it starts")
    if problems:
        raise EngineValidationError("; ".join(problems))

    if status == "active" and not window.contains(now or local_now()):
        raise StageTransitionError("Cannot create an active stage outside its time window")

    db.add(stage)
    await db.commit()
    await db.refresh(stage)

    logger.info(
        "stage.created",
        stage_id=str(stage.stage_id),
        pilgrim_group_id=str(pilgrim_group_id),
        status=status,
        total_pilgrims=stage.total_pilgrims,
    )
    return stage


async def _transition(
    db: AsyncSession,
    stage_id: uuid.UUID,
    *,
    allowed_from: tuple[str, ...],
    values: dict,
) -> Stage:
    stage = await get_stage_or_raise(db, stage_id)
    previous = stage.status
    if previous not in allowed_from:
        raise StageTransitionError(
            f"Cannot move stage from '{previous}' to '{values['status']}'. "
            f"Must be one of: {', '.join(allowed_from)}."
        )

    result = await db.execute(
        update(Stage)
        .where(Stage.stage_id == stage_id, Stage.status == previous)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise StageTransitionError(f"Stage {stage_id} changed status concurrently; reload and retry")
    await db.commit()

    logger.info("stage.transitioned", stage_id=str(stage_id), from_status=previous, to_status=values["status"])
    return await get_stage_or_raise(db, stage_id)


async def queue_stage(db: AsyncSession, stage_id: uuid.UUID, required_departures: int | None) -> Stage:
    """Park an inactive stage until enough upstream departures accrue."""
    if required_departures is None:
        raise EngineValidationError("required_departures is required to queue a stage")
    if required_departures < 0:
        raise EngineValidationError("required_departures cannot be negative")
    return await _transition(
        db,
        stage_id,
        allowed_from=("inactive",),
        values={"status": "waiting_departure", "required_departures": required_departures},
    )


async def start_stage(db: AsyncSession, stage_id: uuid.UUID, now: datetime | None = None) -> Stage:
    """Explicit start. Rejected outside the window, the scheduler would undo it anyway."""
    stage = await get_stage_or_raise(db, stage_id)
    moment = now or local_now()
    window = stage_window(stage)
    if moment > window.ends_at:
        raise StageTransitionError("Stage window has already ended")
    if moment < window.starts_at:
        raise StageTransitionError("Stage window has not started yet")
    return await _transition(db, stage_id, allowed_from=("inactive",), values={"status": "active"})


async def complete_stage(db: AsyncSession, stage_id: uuid.UUID) -> Stage:
    return await _transition(db, stage_id, allowed_from=("active", "inactive"), values={"status": "completed"})


async def list_group_stages(db: AsyncSession, pilgrim_group_id: uuid.UUID) -> list[Stage]:
    result = await db.execute(
        select(Stage)
        .where(Stage.pilgrim_group_id == pilgrim_group_id)
        .order_by(Stage.created_at, Stage.stage_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
