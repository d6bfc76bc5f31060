"""
Stage Scheduler — keep active stages inside their time window.

Sweep semantics:
  - Every `active` stage whose window [start, end] does not contain `now`
    is moved to `inactive`, however long it has been overdue.
  - Nothing is ever widened: inactive stages wait for an explicit start,
    waiting stages wait for the allocator.
  - Each stage is written and committed on its own; a failed write is
    logged and picked up again on the next tick.

Schedule: workers.celery_app beat entry "sweep-stage-windows" (hourly).
"""

from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Stage
from stages.lifecycle import local_now, stage_window

logger = structlog.get_logger()


@dataclass
class SweepResult:
    checked: int = 0
    deactivated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "checked": self.checked,
            "deactivated": len(self.deactivated),
            "failed": len(self.failed),
            "deactivated_stage_ids": self.deactivated,
        }


async def sweep(db: AsyncSession, now: datetime | None = None) -> SweepResult:
    """Deactivate every active stage whose window does not contain `now`."""
    moment = now or local_now()
    result = SweepResult()

    rows = (
        await db.execute(
            select(
                Stage.stage_id,
                Stage.start_date,
                Stage.start_time,
                Stage.end_date,
                Stage.end_time,
            ).where(Stage.status == "active")
        )
    ).all()

    for row in rows:
        result.checked += 1
        window = stage_window(row)
        if window.contains(moment):
            continue

        try:
            updated = await db.execute(
                update(Stage)
                .where(Stage.stage_id == row.stage_id, Stage.status == "active")
                .values(status="inactive")
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            result.failed.append(str(row.stage_id))
            logger.error("scheduler.deactivate_failed", stage_id=str(row.stage_id), error=str(exc))
            continue

        if updated.rowcount == 1:
            result.deactivated.append(str(row.stage_id))
            logger.info(
                "scheduler.stage_deactivated",
                stage_id=str(row.stage_id),
                reason="window_ended" if moment > window.ends_at else "window_not_started",
                window_start=window.starts_at.isoformat(),
                window_end=window.ends_at.isoformat(),
            )

    logger.info(
        "scheduler.sweep_complete",
        checked=result.checked,
        deactivated=len(result.deactivated),
        failed=len(result.failed),
    )
    return result
