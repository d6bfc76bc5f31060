"""
Test Configuration — Fixtures for async DB, test client, and mock data.

Each test gets a fresh in-memory SQLite database. The engine code commits
and rolls back on its own, so there is no outer transaction to unwind;
tests refresh ORM objects before asserting on counters written by
conditional UPDATEs.
"""

import uuid
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import Update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import get_current_user, get_db
from api.main import app
from db.models import Center, CenterStageRefill, PilgrimGroup, Stage
from db.session import Base
from stages.lifecycle import local_now

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def test_engine():
    """One in-memory database per test; StaticPool keeps every session on it."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def published(monkeypatch):
    """Capture realtime feed messages instead of talking to Redis."""
    messages: list[tuple[str, dict]] = []

    async def _capture(channel, batch):
        messages.extend((channel, message) for message in batch)
        return 0

    monkeypatch.setattr("realtime.feed._publish", _capture)
    return messages


@pytest.fixture
def mock_user():
    """Mock authenticated user."""
    return {
        "sub": "auth|test-operator",
        "email": "operator@tafweej.test",
    }


@pytest.fixture
async def client(test_db, mock_user):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    def override_get_current_user():
        return mock_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# ─── Factories ──────────────────────────────────────────────────────────────


async def make_group(db, name="Group A", nationality="Indonesia", count=1000) -> PilgrimGroup:
    group = PilgrimGroup(pilgrim_group_id=uuid.uuid4(), name=name, nationality=nationality, count=count)
    db.add(group)
    await db.commit()
    return group


async def make_stage(
    db,
    group,
    *,
    name="Stage",
    status="active",
    current=100,
    departed=0,
    total=None,
    starts_at: datetime | None = None,
    ends_at: datetime | None = None,
    required_departures=None,
    created_at: datetime | None = None,
) -> Stage:
    now = local_now()
    starts_at = starts_at or now - timedelta(days=1)
    ends_at = ends_at or now + timedelta(days=3)
    stage = Stage(
        stage_id=uuid.uuid4(),
        pilgrim_group_id=group.pilgrim_group_id,
        name=name,
        status=status,
        current_pilgrims=current,
        departed_pilgrims=departed,
        total_pilgrims=total if total is not None else current + departed,
        start_date=starts_at.date(),
        start_time=starts_at.time().replace(microsecond=0),
        end_date=ends_at.date(),
        end_time=ends_at.time().replace(microsecond=0),
        required_departures=required_departures,
        created_at=created_at or datetime.utcnow(),
    )
    db.add(stage)
    await db.commit()
    return stage


async def make_center(db, *, stage=None, capacity=50, current=None, batch=1, name="Center 1") -> Center:
    center = Center(
        center_id=uuid.uuid4(),
        name=name,
        default_capacity=capacity,
        current_count=capacity if current is None else current,
        departed_pilgrims=0 if current is None else capacity - current,
        current_batch=batch,
        stage_id=stage.stage_id if stage else None,
    )
    db.add(center)
    await db.commit()
    return center


async def make_refill_setting(db, center, stage, *, should_refill=True, is_refilled=False) -> CenterStageRefill:
    setting = CenterStageRefill(
        refill_setting_id=uuid.uuid4(),
        center_id=center.center_id,
        stage_id=stage.stage_id,
        should_refill=should_refill,
        is_refilled=is_refilled,
    )
    db.add(setting)
    await db.commit()
    return setting


@pytest.fixture
async def seeded_db(test_db):
    """A group with one active stage of 100 pilgrims and a full 50-seat center assigned to it."""
    group = await make_group(test_db)
    stage = await make_stage(test_db, group, name="Mina Transfer", current=100)
    center = await make_center(test_db, stage=stage, capacity=50)
    return {"group": group, "stage": stage, "center": center}


def intercept_updates(monkeypatch, db, table: str, *, times=1, error=None, rowcount=0):
    """
    Make the next `times` UPDATEs against `table` raise `error`, or, without
    an error, report `rowcount` rows matched as if another session won the
    conditional write. Every other statement runs normally.
    """
    real_execute = db.execute
    remaining = {"count": times}

    async def _execute(statement, *args, **kwargs):
        if isinstance(statement, Update) and statement.table.name == table and remaining["count"] > 0:
            remaining["count"] -= 1
            if error is not None:
                raise error
            return SimpleNamespace(rowcount=rowcount)
        return await real_execute(statement, *args, **kwargs)

    monkeypatch.setattr(db, "execute", _execute)
