"""
Departure Recorder — the only path that moves headcount out of a center.

One call = one database transaction:
  centers.current_count     -= n
  centers.departed_pilgrims += n
  stages.departed_pilgrims  += n
  stages.current_pilgrims   -= n
  + one departure_history row (batch_number = center.current_batch)

Counter writes are conditional updates (`current_count >= n`), so two
sessions racing on the same center can never drive it negative; whoever
loses the race gets the whole transaction rolled back.

Callers must follow a successful record with an allocator re-evaluation
and a refill check (see capacity.pipeline.process_departure).
"""

import uuid
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Center, DepartureHistory, Stage
from stages.errors import DepartureValidationError, EngineNotFoundError, EngineTransactionError
from stages.lifecycle import local_now

logger = structlog.get_logger()

CLOSED_STAGE_STATUSES = ("waiting_departure", "completed")


@dataclass
class DepartureResult:
    """Post-transaction snapshot of everything the departure touched."""

    history_id: uuid.UUID
    center_id: uuid.UUID
    stage_id: uuid.UUID
    pilgrim_group_id: uuid.UUID
    departed_count: int
    batch_number: int
    center_current_count: int
    center_departed_pilgrims: int
    stage_current_pilgrims: int
    stage_departed_pilgrims: int
    departure_date: datetime

    def as_dict(self) -> dict:
        return {
            "history_id": str(self.history_id),
            "center_id": str(self.center_id),
            "stage_id": str(self.stage_id),
            "pilgrim_group_id": str(self.pilgrim_group_id),
            "departed_count": self.departed_count,
            "batch_number": self.batch_number,
            "center_current_count": self.center_current_count,
            "center_departed_pilgrims": self.center_departed_pilgrims,
            "stage_current_pilgrims": self.stage_current_pilgrims,
            "stage_departed_pilgrims": self.stage_departed_pilgrims,
            "departure_date": self.departure_date.isoformat(),
        }


async def _validate(db: AsyncSession, center_id: uuid.UUID, stage_id: uuid.UUID, departure_count: int):
    if not isinstance(departure_count, int) or isinstance(departure_count, bool):
        raise DepartureValidationError("departure_count must be an integer")
    if departure_count <= 0:
        raise DepartureValidationError("departure_count must be greater than zero")

    center = (
        await db.execute(
            select(Center.center_id, Center.current_count, Center.stage_id).where(Center.center_id == center_id)
        )
    ).one_or_none()
    if center is None:
        raise EngineNotFoundError(f"Center {center_id} not found")

    stage = (
        await db.execute(
            select(Stage.stage_id, Stage.status, Stage.current_pilgrims, Stage.pilgrim_group_id).where(
                Stage.stage_id == stage_id
            )
        )
    ).one_or_none()
    if stage is None:
        raise EngineNotFoundError(f"Stage {stage_id} not found")

    if departure_count > center.current_count:
        raise DepartureValidationError(
            f"Cannot record {departure_count} departures; center holds only {center.current_count}"
        )
    if departure_count > stage.current_pilgrims:
        raise DepartureValidationError(
            f"Cannot record {departure_count} departures; stage has only {stage.current_pilgrims} remaining"
        )
    if stage.status in CLOSED_STAGE_STATUSES:
        raise DepartureValidationError(f"Cannot record departures for a stage in '{stage.status}' status")

    if center.stage_id is not None and center.stage_id != stage_id:
        logger.warning(
            "departure.stage_mismatch",
            center_id=str(center_id),
            assigned_stage_id=str(center.stage_id),
            stage_id=str(stage_id),
        )
    return center, stage


async def record_departure(
    db: AsyncSession,
    center_id: uuid.UUID,
    stage_id: uuid.UUID,
    departure_count: int,
    notes: str | None = None,
    recorded_by: str | None = None,
) -> DepartureResult:
    """
    Atomically move `departure_count` pilgrims out of a center and off a stage.

    Raises DepartureValidationError / EngineNotFoundError before any write,
    EngineTransactionError when the transaction had to be rolled back.
    """
    _, stage = await _validate(db, center_id, stage_id, departure_count)
    history_id = uuid.uuid4()
    departed_at = local_now()

    try:
        center_update = await db.execute(
            update(Center)
            .where(Center.center_id == center_id, Center.current_count >= departure_count)
            .values(
                current_count=Center.current_count - departure_count,
                departed_pilgrims=Center.departed_pilgrims + departure_count,
            )
            .execution_options(synchronize_session=False)
        )
        if center_update.rowcount != 1:
            await db.rollback()
            raise EngineTransactionError("Center occupancy changed concurrently; departure not recorded")

        stage_update = await db.execute(
            update(Stage)
            .where(
                Stage.stage_id == stage_id,
                Stage.current_pilgrims >= departure_count,
                Stage.status.notin_(CLOSED_STAGE_STATUSES),
            )
            .values(
                current_pilgrims=Stage.current_pilgrims - departure_count,
                departed_pilgrims=Stage.departed_pilgrims + departure_count,
            )
            .execution_options(synchronize_session=False)
        )
        if stage_update.rowcount != 1:
            await db.rollback()
            raise EngineTransactionError("Stage counters changed concurrently; departure not recorded")

        center_after = (
            await db.execute(
                select(Center.current_count, Center.departed_pilgrims, Center.current_batch).where(
                    Center.center_id == center_id
                )
            )
        ).one()
        stage_after = (
            await db.execute(
                select(Stage.current_pilgrims, Stage.departed_pilgrims).where(Stage.stage_id == stage_id)
            )
        ).one()

        db.add(
            DepartureHistory(
                history_id=history_id,
                center_id=center_id,
                stage_id=stage_id,
                batch_number=center_after.current_batch,
                departed_count=departure_count,
                departure_date=departed_at,
                notes=notes,
                recorded_by=recorded_by,
            )
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error(
            "departure.transaction_failed",
            center_id=str(center_id),
            stage_id=str(stage_id),
            departure_count=departure_count,
            error=str(exc),
        )
        raise EngineTransactionError("Departure transaction failed; nothing was recorded") from exc

    result = DepartureResult(
        history_id=history_id,
        center_id=center_id,
        stage_id=stage_id,
        pilgrim_group_id=stage.pilgrim_group_id,
        departed_count=departure_count,
        batch_number=center_after.current_batch,
        center_current_count=center_after.current_count,
        center_departed_pilgrims=center_after.departed_pilgrims,
        stage_current_pilgrims=stage_after.current_pilgrims,
        stage_departed_pilgrims=stage_after.departed_pilgrims,
        departure_date=departed_at,
    )
    logger.info(
        "departure.recorded",
        center_id=str(center_id),
        stage_id=str(stage_id),
        departed_count=departure_count,
        batch_number=result.batch_number,
        center_current_count=result.center_current_count,
    )
    return result
