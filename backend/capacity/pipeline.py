"""
Departure Pipeline — what callers run instead of the bare recorder.

Flow:
  1. record_departure (atomic, raises on validation/transaction errors)
  2. publish the center's new counters on the realtime feed
  3. re-evaluate the waiting-stage queue of the stage's pilgrim group
  4. refill check when the center just hit zero

Steps 2-4 run after the departure committed. Their failures are logged and
left for the periodic sweeps; they never undo or hide a recorded departure.
"""

import uuid
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from capacity.recorder import record_departure
from capacity.replenisher import check_and_refill
from realtime.feed import publish_center_change
from stages.allocator import evaluate_group

logger = structlog.get_logger()


async def handle_center_emptied(db: AsyncSession, center_id: uuid.UUID) -> dict[str, Any]:
    """Refill check + feed update. Shared by the pipeline, the feed consumer and the poll."""
    outcome = await check_and_refill(db, center_id)
    if outcome.refilled:
        await publish_center_change(db, center_id)
    return outcome.as_dict()


async def process_departure(
    db: AsyncSession,
    center_id: uuid.UUID,
    stage_id: uuid.UUID,
    departure_count: int,
    notes: str | None = None,
    recorded_by: str | None = None,
) -> dict[str, Any]:
    departure = await record_departure(
        db,
        center_id=center_id,
        stage_id=stage_id,
        departure_count=departure_count,
        notes=notes,
        recorded_by=recorded_by,
    )
    summary: dict[str, Any] = {"departure": departure.as_dict(), "allocation": None, "refill": None}

    await publish_center_change(db, center_id)

    try:
        allocation = await evaluate_group(db, departure.pilgrim_group_id)
        summary["allocation"] = allocation.as_dict()
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "pipeline.allocation_failed",
            pilgrim_group_id=str(departure.pilgrim_group_id),
            error=str(exc),
            exc_info=True,
        )

    if departure.center_current_count == 0:
        try:
            summary["refill"] = await handle_center_emptied(db, center_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("pipeline.refill_failed", center_id=str(center_id), error=str(exc), exc_info=True)

    return summary
