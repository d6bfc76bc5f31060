import asyncio
import uuid
from datetime import date, time
from types import SimpleNamespace

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.session import Base
from workers.scheduler import dispatch_waiting_groups


def test_dispatch_waiting_groups_fans_out_only_queued_groups(tmp_path, monkeypatch):
    from db.models import PilgrimGroup, Stage

    db_path = tmp_path / "dispatch.db"
    db_url = f"sqlite+aiosqlite:///{db_path}"
    engine = create_async_engine(db_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    queued_a = uuid.UUID("00000000-0000-0000-0000-000000000101")
    queued_b = uuid.UUID("00000000-0000-0000-0000-000000000102")
    idle = uuid.UUID("00000000-0000-0000-0000-000000000103")

    def _stage(group_id, status, required=None):
        return Stage(
            pilgrim_group_id=group_id,
            name=f"{status} stage",
            status=status,
            current_pilgrims=10,
            departed_pilgrims=0,
            total_pilgrims=10,
            start_date=date(2026, 6, 1),
            start_time=time(8, 0),
            end_date=date(2026, 6, 2),
            end_time=time(8, 0),
            required_departures=required,
        )

    async def _seed() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async with session_factory() as db:
            db.add_all(
                [
                    PilgrimGroup(pilgrim_group_id=queued_a, name="Queued A", nationality="Egypt", count=10),
                    PilgrimGroup(pilgrim_group_id=queued_b, name="Queued B", nationality="Turkey", count=20),
                    PilgrimGroup(pilgrim_group_id=idle, name="Idle", nationality="Pakistan", count=10),
                ]
            )
            await db.flush()
            db.add_all(
                [
                    _stage(queued_a, "waiting_departure", 5),
                    _stage(queued_a, "waiting_departure", 8),
                    _stage(queued_b, "waiting_departure", 3),
                    _stage(idle, "active"),
                ]
            )
            await db.commit()

    asyncio.run(_seed())

    monkeypatch.setattr("core.config.get_settings", lambda: SimpleNamespace(database_url=db_url))

    dispatched_calls: list[tuple[str, dict]] = []

    def _capture_send_task(task_name: str, kwargs: dict):
        dispatched_calls.append((task_name, kwargs))
        return None

    monkeypatch.setattr("workers.scheduler.celery_app.send_task", _capture_send_task)

    result = dispatch_waiting_groups.run(task_name="workers.stage_sweeps.evaluate_group_queue")
    assert result["status"] == "success"
    assert result["group_count"] == 2
    assert result["dispatched_count"] == 2

    task_names = {task for task, _ in dispatched_calls}
    assert task_names == {"workers.stage_sweeps.evaluate_group_queue"}
    group_ids = {kwargs["pilgrim_group_id"] for _, kwargs in dispatched_calls}
    assert group_ids == {str(queued_a), str(queued_b)}

    asyncio.run(engine.dispose())


def test_dispatch_rejects_non_worker_task_names():
    result = dispatch_waiting_groups.run(task_name="os.system")
    assert result["status"] == "failed"
    assert result["reason"] == "invalid_task_name"
