"""Queue-aware scheduler helpers for Celery beat fan-out."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.scheduler.dispatch_waiting_groups",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_waiting_groups(
    self,
    task_name: str = "workers.stage_sweeps.evaluate_group_queue",
    task_kwargs: dict | None = None,
):
    """
    Dispatch a group-scoped task for every pilgrim group that still has
    stages in waiting_departure.
    """
    from core.config import get_settings
    from stages.allocator import groups_with_waiting_stages

    run_id = self.request.id or "manual"
    payload = dict(task_kwargs or {})

    if not task_name.startswith("workers."):
        return {"status": "failed", "reason": "invalid_task_name", "task_name": task_name}

    async def _dispatch():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession)
            async with async_session() as db:
                groups = [str(group_id) for group_id in await groups_with_waiting_stages(db)]

            dispatched = 0
            for pilgrim_group_id in groups:
                kwargs = dict(payload)
                kwargs["pilgrim_group_id"] = pilgrim_group_id
                celery_app.send_task(task_name, kwargs=kwargs)
                dispatched += 1

            summary = {
                "status": "success",
                "task_name": task_name,
                "group_count": len(groups),
                "dispatched_count": dispatched,
                "triggered_at": datetime.now(timezone.utc).isoformat(),
                "run_id": run_id,
            }
            logger.info("scheduler.dispatch_complete", **summary)
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_dispatch())
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.dispatch_failed", task_name=task_name, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
