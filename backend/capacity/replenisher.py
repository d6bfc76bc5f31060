"""
Capacity Replenisher — one automatic refill per center per stage assignment.

When a center empties (current_count == 0) and the operator opted in for
its current stage, the center is restored to default_capacity, its
departure counter reset and its batch number advanced. The refill guard
(`is_refilled`) makes redundant triggers (realtime feed + 60s poll) no-ops
until the center is reassigned to another stage.

Guard flip and counter refill happen in one transaction, each as a
conditional update, so two workers seeing the same empty center cannot
refill it twice.
"""

import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Center, CenterStageRefill, Stage
from stages.errors import EngineNotFoundError, EngineTransactionError, EngineValidationError
from stages.lifecycle import local_now

logger = structlog.get_logger()


@dataclass
class RefillOutcome:
    center_id: uuid.UUID
    refilled: bool
    reason: str  # refilled, not_empty, no_stage, no_setting, disabled, already_refilled, race_lost
    batch_number: int | None = None
    current_count: int | None = None

    def as_dict(self) -> dict:
        return {
            "center_id": str(self.center_id),
            "refilled": self.refilled,
            "reason": self.reason,
            "batch_number": self.batch_number,
            "current_count": self.current_count,
        }


async def _load_center(db: AsyncSession, center_id: uuid.UUID):
    return (
        await db.execute(
            select(
                Center.center_id,
                Center.current_count,
                Center.default_capacity,
                Center.current_batch,
                Center.stage_id,
            ).where(Center.center_id == center_id)
        )
    ).one_or_none()


async def get_refill_setting(db: AsyncSession, center_id: uuid.UUID, stage_id: uuid.UUID) -> CenterStageRefill | None:
    result = await db.execute(
        select(CenterStageRefill)
        .where(CenterStageRefill.center_id == center_id, CenterStageRefill.stage_id == stage_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def check_and_refill(db: AsyncSession, center_id: uuid.UUID) -> RefillOutcome:
    """Refill an empty, opted-in center. Safe to call any number of times."""
    center = await _load_center(db, center_id)
    if center is None:
        raise EngineNotFoundError(f"Center {center_id} not found")

    if center.current_count != 0:
        return RefillOutcome(center_id, False, "not_empty", center.current_batch, center.current_count)
    if center.stage_id is None:
        return RefillOutcome(center_id, False, "no_stage", center.current_batch, center.current_count)

    setting = await get_refill_setting(db, center_id, center.stage_id)
    if setting is None:
        return RefillOutcome(center_id, False, "no_setting", center.current_batch, center.current_count)
    if not setting.should_refill:
        return RefillOutcome(center_id, False, "disabled", center.current_batch, center.current_count)
    if setting.is_refilled:
        return RefillOutcome(center_id, False, "already_refilled", center.current_batch, center.current_count)

    refilled_at = local_now()
    try:
        guard = await db.execute(
            update(CenterStageRefill)
            .where(
                CenterStageRefill.refill_setting_id == setting.refill_setting_id,
                CenterStageRefill.should_refill.is_(True),
                CenterStageRefill.is_refilled.is_(False),
            )
            .values(is_refilled=True, refill_date=refilled_at)
            .execution_options(synchronize_session=False)
        )
        if guard.rowcount != 1:
            await db.rollback()
            logger.info("refill.guard_taken", center_id=str(center_id))
            return RefillOutcome(center_id, False, "race_lost", center.current_batch, center.current_count)

        filled = await db.execute(
            update(Center)
            .where(
                Center.center_id == center_id,
                Center.current_count == 0,
                Center.stage_id == center.stage_id,
            )
            .values(
                current_count=Center.default_capacity,
                departed_pilgrims=0,
                current_batch=Center.current_batch + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if filled.rowcount != 1:
            await db.rollback()
            logger.info("refill.center_changed", center_id=str(center_id))
            return RefillOutcome(center_id, False, "race_lost", center.current_batch, center.current_count)

        after = (
            await db.execute(
                select(Center.current_count, Center.current_batch).where(Center.center_id == center_id)
            )
        ).one()
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("refill.transaction_failed", center_id=str(center_id), error=str(exc))
        raise EngineTransactionError("Refill transaction failed; center left unchanged") from exc

    logger.info(
        "refill.completed",
        center_id=str(center_id),
        stage_id=str(center.stage_id),
        batch_number=after.current_batch,
        current_count=after.current_count,
    )
    return RefillOutcome(center_id, True, "refilled", after.current_batch, after.current_count)


async def check_empty_centers(db: AsyncSession) -> list[RefillOutcome]:
    """Poll path: run the refill check for every empty center that has a stage."""
    rows = (
        await db.execute(
            select(Center.center_id).where(
                Center.current_count == 0,
                Center.stage_id.isnot(None),
                Center.status == "active",
            )
        )
    ).all()

    outcomes = []
    for row in rows:
        try:
            outcomes.append(await check_and_refill(db, row.center_id))
        except (EngineTransactionError, EngineNotFoundError) as exc:
            logger.error("refill.poll_failed", center_id=str(row.center_id), error=str(exc))
    return outcomes


async def set_refill_setting(
    db: AsyncSession,
    center_id: uuid.UUID,
    should_refill: bool,
    notes: str | None = None,
) -> CenterStageRefill:
    """
    Operator toggle for the center's current stage.

    Updating an existing setting leaves `is_refilled` alone; only a stage
    reassignment re-arms the guard.
    """
    center = await db.get(Center, center_id, populate_existing=True)
    if center is None:
        raise EngineNotFoundError(f"Center {center_id} not found")
    if center.stage_id is None:
        raise EngineValidationError("Assign a stage to the center before configuring refill")

    setting = await get_refill_setting(db, center_id, center.stage_id)
    if setting is None:
        setting = CenterStageRefill(
            center_id=center_id,
            stage_id=center.stage_id,
            should_refill=should_refill,
            is_refilled=False,
            notes=notes,
        )
        db.add(setting)
    else:
        setting.should_refill = should_refill
        if notes is not None:
            setting.notes = notes

    await db.commit()
    await db.refresh(setting)
    logger.info(
        "refill.setting_saved",
        center_id=str(center_id),
        stage_id=str(center.stage_id),
        should_refill=should_refill,
        is_refilled=setting.is_refilled,
    )
    return setting


async def assign_stage(db: AsyncSession, center_id: uuid.UUID, stage_id: uuid.UUID) -> Center:
    """
    Point a center at a new stage and start a new refill cycle.

    Occupancy counters are left as they are; refilling happens only through
    check_and_refill.
    """
    center = await db.get(Center, center_id, populate_existing=True)
    if center is None:
        raise EngineNotFoundError(f"Center {center_id} not found")
    stage = await db.get(Stage, stage_id)
    if stage is None:
        raise EngineNotFoundError(f"Stage {stage_id} not found")
    if stage.status == "completed":
        raise EngineValidationError("Cannot assign a completed stage to a center")

    previous_stage_id = center.stage_id
    if previous_stage_id == stage_id:
        return center

    try:
        await db.execute(
            update(Center)
            .where(Center.center_id == center_id)
            .values(stage_id=stage_id)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(CenterStageRefill)
            .where(CenterStageRefill.center_id == center_id, CenterStageRefill.stage_id == stage_id)
            .values(is_refilled=False)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("center.assign_failed", center_id=str(center_id), stage_id=str(stage_id), error=str(exc))
        raise EngineTransactionError("Stage assignment failed") from exc

    logger.info(
        "center.stage_assigned",
        center_id=str(center_id),
        stage_id=str(stage_id),
        previous_stage_id=str(previous_stage_id) if previous_stage_id else None,
    )
    return await db.get(Center, center_id, populate_existing=True)
