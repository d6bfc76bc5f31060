"""
Stage Sweep Workers — periodic ticks of the admission and capacity engine.

  1. check_empty_centers: refill poll (backs up the realtime feed consumer)
  2. evaluate_group_queue: waiting-stage allocator for one pilgrim group
  3. sweep_stage_windows: deactivate active stages outside their window
  4. run_stage_monitor: advisory stage alerts
  5. audit_stage_consistency: counter drift report

Each task opens its own engine so it can run in any worker process.

Schedule: See celery_app.py beat_schedule
"""

import asyncio
import uuid

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


async def _with_session(work):
    from core.config import get_settings

    settings = get_settings()
    engine = create_async_engine(settings.database_url)
    try:
        async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with async_session() as db:
            return await work(db)
    finally:
        await engine.dispose()


@celery_app.task(
    name="workers.stage_sweeps.check_empty_centers",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
)
def check_empty_centers(self):
    """Every minute: refill opted-in centers that reached zero."""
    from capacity.replenisher import check_empty_centers as poll_empty_centers
    from realtime.feed import publish_center_change

    run_id = self.request.id or "manual"

    async def _poll(db):
        outcomes = await poll_empty_centers(db)
        refilled = [o for o in outcomes if o.refilled]
        for outcome in refilled:
            await publish_center_change(db, outcome.center_id)
        return {
            "status": "success",
            "checked": len(outcomes),
            "refilled": len(refilled),
            "refilled_center_ids": [str(o.center_id) for o in refilled],
            "run_id": run_id,
        }

    try:
        summary = asyncio.run(_with_session(_poll))
        logger.info("refill.poll_complete", **summary)
        return summary
    except Exception as exc:  # noqa: BLE001
        logger.error("refill.poll_task_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.stage_sweeps.evaluate_group_queue",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def evaluate_group_queue(self, pilgrim_group_id: str):
    """Start the waiting stages of one group that upstream departures now cover."""
    from stages.allocator import evaluate_group

    run_id = self.request.id or "manual"

    async def _evaluate(db):
        result = await evaluate_group(db, uuid.UUID(pilgrim_group_id))
        return {"status": "success", **result.as_dict(), "run_id": run_id}

    try:
        return asyncio.run(_with_session(_evaluate))
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "allocator.task_failed",
            pilgrim_group_id=pilgrim_group_id,
            error=str(exc),
            exc_info=True,
        )
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.stage_sweeps.sweep_stage_windows",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
    acks_late=True,
)
def sweep_stage_windows(self):
    """Hourly: active stages outside their window go back to inactive."""
    from stages.scheduler import sweep

    run_id = self.request.id or "manual"

    async def _sweep(db):
        result = await sweep(db)
        return {"status": "success", **result.as_dict(), "run_id": run_id}

    try:
        return asyncio.run(_with_session(_sweep))
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.sweep_task_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.stage_sweeps.run_stage_monitor",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
    acks_late=True,
)
def run_stage_monitor(self):
    from alerts.engine import run_stage_monitor as monitor

    run_id = self.request.id or "manual"

    async def _monitor(db):
        counts = await monitor(db)
        return {"status": "success", "alerts_created": counts, "run_id": run_id}

    try:
        return asyncio.run(_with_session(_monitor))
    except Exception as exc:  # noqa: BLE001
        logger.error("monitor.task_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.stage_sweeps.audit_stage_consistency",
    bind=True,
    max_retries=1,
    default_retry_delay=300,
    acks_late=True,
)
def audit_stage_consistency(self):
    """Report stages whose current + departed no longer match their stored total."""
    from alerts.auditor import audit_stages

    run_id = self.request.id or "manual"

    async def _audit(db):
        report = await audit_stages(db)
        return {
            "status": "success",
            "checked": report.checked,
            "drifted": len(report.drifts),
            "details": report.details,
            "run_id": run_id,
        }

    return asyncio.run(_with_session(_audit))
