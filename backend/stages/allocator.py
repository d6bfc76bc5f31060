"""
Departure Allocator — FIFO admission of waiting stages.

A `waiting_departure` stage may start once enough of its pilgrim group has
already left through earlier stages. Within one evaluation departures are
earmarked in queue order, so two stages admitted by the same pass never
both count the same departures. Reservations are not carried between
evaluations: an activated stage restarts its own departure count at 0 and
drops out of the reserved total, so a later pass may admit the next stage
on departures that already admitted an earlier one.

Algorithm (per pilgrim group, recomputed from durable state every call):
1. cumulative_departed = Σ departed_pilgrims over the group's
   completed + active stages
2. waiting stages sorted by created_at (queue order, ties by id)
3. reserved = 0; for each waiting stage w:
     available = max(cumulative_departed - reserved, 0)
     available >= w.required_departures → activate w, reserved += required
     otherwise w keeps waiting; under strict FIFO so does everything
     queued behind it

Nothing is maintained incrementally: a missed trigger is repaired by the
next evaluation.

Triggered by capacity.pipeline after each recorded departure and by
workers.scheduler.dispatch_waiting_groups (every 30 min).
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import Stage
from stages.lifecycle import local_now

logger = structlog.get_logger()

_settings = get_settings()
DEFAULT_QUEUE_POLICY = _settings.allocator_queue_policy

UPSTREAM_STATUSES = ("completed", "active")


@dataclass(frozen=True)
class WaitingStage:
    stage_id: uuid.UUID
    required_departures: int | None
    created_at: datetime


@dataclass
class AllocationPlan:
    """Pure outcome of the FIFO walk, before anything is written."""

    cumulative_departed: int
    activate: list[WaitingStage] = field(default_factory=list)
    blocked: list[WaitingStage] = field(default_factory=list)
    reserved: int = 0


@dataclass
class AllocationResult:
    pilgrim_group_id: uuid.UUID
    cumulative_departed: int = 0
    reserved: int = 0
    activated: list[str] = field(default_factory=list)
    waiting: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "pilgrim_group_id": str(self.pilgrim_group_id),
            "cumulative_departed": self.cumulative_departed,
            "reserved": self.reserved,
            "activated": self.activated,
            "waiting": self.waiting,
            "failed": self.failed,
        }


def plan_activations(
    cumulative_departed: int,
    waiting: list[WaitingStage],
    policy: str = "strict_fifo",
) -> AllocationPlan:
    """
    Walk the queue and decide which waiting stages can start.

    `waiting` is sorted here, so callers may pass it in any order.
    """
    plan = AllocationPlan(cumulative_departed=max(int(cumulative_departed or 0), 0))
    queue = sorted(waiting, key=lambda w: (w.created_at, str(w.stage_id)))

    for position, stage in enumerate(queue):
        if stage.required_departures is None:
            logger.warning("allocator.missing_requirement", stage_id=str(stage.stage_id))
            plan.blocked.append(stage)
            if policy == "strict_fifo":
                plan.blocked.extend(queue[position + 1 :])
                break
            continue

        available = max(plan.cumulative_departed - plan.reserved, 0)
        if available >= stage.required_departures:
            plan.activate.append(stage)
            plan.reserved += stage.required_departures
            continue

        plan.blocked.append(stage)
        if policy == "strict_fifo":
            plan.blocked.extend(queue[position + 1 :])
            break

    return plan


async def cumulative_departed_for_group(db: AsyncSession, pilgrim_group_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(Stage.departed_pilgrims), 0)).where(
            Stage.pilgrim_group_id == pilgrim_group_id,
            Stage.status.in_(UPSTREAM_STATUSES),
        )
    )
    return int(result.scalar() or 0)


async def waiting_stages_for_group(db: AsyncSession, pilgrim_group_id: uuid.UUID) -> list[WaitingStage]:
    result = await db.execute(
        select(Stage.stage_id, Stage.required_departures, Stage.created_at)
        .where(
            Stage.pilgrim_group_id == pilgrim_group_id,
            Stage.status == "waiting_departure",
        )
        .order_by(Stage.created_at, Stage.stage_id)
    )
    return [
        WaitingStage(stage_id=row.stage_id, required_departures=row.required_departures, created_at=row.created_at)
        for row in result.all()
    ]


async def _activate(db: AsyncSession, stage: WaitingStage, now: datetime) -> bool:
    """
    Start one waiting stage. Its departure count restarts at 0, so the audited
    total is re-based on the pilgrims still assigned to it.

    False when someone else already moved it out of the queue.
    """
    result = await db.execute(
        update(Stage)
        .where(Stage.stage_id == stage.stage_id, Stage.status == "waiting_departure")
        .values(
            status="active",
            departed_pilgrims=0,
            total_pilgrims=Stage.current_pilgrims,
            start_date=now.date(),
            start_time=now.time().replace(microsecond=0),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def evaluate_group(
    db: AsyncSession,
    pilgrim_group_id: uuid.UUID,
    now: datetime | None = None,
    policy: str | None = None,
) -> AllocationResult:
    """Re-derive reservations for one pilgrim group and start every stage the queue admits."""
    moment = now or local_now()
    queue_policy = policy or DEFAULT_QUEUE_POLICY
    result = AllocationResult(pilgrim_group_id=pilgrim_group_id)

    waiting = await waiting_stages_for_group(db, pilgrim_group_id)
    if not waiting:
        return result

    cumulative = await cumulative_departed_for_group(db, pilgrim_group_id)
    plan = plan_activations(cumulative, waiting, policy=queue_policy)
    result.cumulative_departed = plan.cumulative_departed
    result.reserved = plan.reserved
    result.waiting = [str(w.stage_id) for w in plan.blocked]

    for stage in plan.activate:
        try:
            activated = await _activate(db, stage, moment)
        except SQLAlchemyError as exc:
            # Requirement stays reserved so later stages cannot jump the queue.
            await db.rollback()
            result.failed.append(str(stage.stage_id))
            logger.error(
                "allocator.activation_failed",
                stage_id=str(stage.stage_id),
                pilgrim_group_id=str(pilgrim_group_id),
                error=str(exc),
            )
            continue

        if activated:
            result.activated.append(str(stage.stage_id))
            logger.info(
                "allocator.stage_activated",
                stage_id=str(stage.stage_id),
                pilgrim_group_id=str(pilgrim_group_id),
                required_departures=stage.required_departures,
                cumulative_departed=plan.cumulative_departed,
            )
        else:
            logger.info("allocator.stage_already_moved", stage_id=str(stage.stage_id))

    logger.info(
        "allocator.evaluated",
        pilgrim_group_id=str(pilgrim_group_id),
        policy=queue_policy,
        cumulative_departed=plan.cumulative_departed,
        reserved=plan.reserved,
        activated=len(result.activated),
        waiting=len(result.waiting),
    )
    return result


async def groups_with_waiting_stages(db: AsyncSession) -> list[uuid.UUID]:
    result = await db.execute(
        select(Stage.pilgrim_group_id).where(Stage.status == "waiting_departure").distinct()
    )
    return [row.pilgrim_group_id for row in result.all()]
