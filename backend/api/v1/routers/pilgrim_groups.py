"""
Pilgrim Groups Router — cohorts and their waiting-stage queue.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import ENGINE_ERRORS, get_current_user, get_db, http_error
from db.models import PilgrimGroup, Stage
from stages.allocator import evaluate_group

router = APIRouter(prefix="/api/v1/pilgrim-groups", tags=["pilgrim-groups"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class PilgrimGroupCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    nationality: str = Field(..., min_length=1, max_length=100)
    count: int = Field(0, ge=0)


class PilgrimGroupResponse(BaseModel):
    pilgrim_group_id: UUID
    name: str
    nationality: str
    count: int
    created_at: datetime
    updated_at: datetime
    stage_count: int | None = None
    waiting_stages: int | None = None

    model_config = {"from_attributes": True}


class AllocationResponse(BaseModel):
    pilgrim_group_id: UUID
    cumulative_departed: int
    reserved: int
    activated: list[str]
    waiting: list[str]
    failed: list[str]


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[PilgrimGroupResponse])
async def list_pilgrim_groups(
    nationality: str | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """List pilgrim groups with their stage counts."""
    query = select(PilgrimGroup)
    if nationality:
        query = query.where(PilgrimGroup.nationality == nationality)
    query = query.order_by(PilgrimGroup.name).offset(skip).limit(limit)
    groups = (await db.execute(query)).scalars().all()

    stats = await _stage_stats(db, [g.pilgrim_group_id for g in groups])
    return [_serialize_group(g, stats) for g in groups]


@router.get("/{pilgrim_group_id}", response_model=PilgrimGroupResponse)
async def get_pilgrim_group(
    pilgrim_group_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    group = await db.get(PilgrimGroup, pilgrim_group_id)
    if not group:
        raise HTTPException(status_code=404, detail="Pilgrim group not found")
    stats = await _stage_stats(db, [group.pilgrim_group_id])
    return _serialize_group(group, stats)


@router.post("/", response_model=PilgrimGroupResponse, status_code=201)
async def create_pilgrim_group(
    body: PilgrimGroupCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    group = PilgrimGroup(**body.model_dump())
    db.add(group)
    await db.commit()
    await db.refresh(group)
    return _serialize_group(group, {})


@router.post("/{pilgrim_group_id}/evaluate", response_model=AllocationResponse)
async def evaluate_pilgrim_group(
    pilgrim_group_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Re-run the waiting-stage allocator for one group now."""
    group = await db.get(PilgrimGroup, pilgrim_group_id)
    if not group:
        raise HTTPException(status_code=404, detail="Pilgrim group not found")
    try:
        result = await evaluate_group(db, pilgrim_group_id)
    except ENGINE_ERRORS as exc:
        raise http_error(exc) from exc
    return result.as_dict()


def _serialize_group(group: PilgrimGroup, stats: dict[UUID, dict]) -> dict:
    group_stats = stats.get(group.pilgrim_group_id, {})
    return {
        "pilgrim_group_id": group.pilgrim_group_id,
        "name": group.name,
        "nationality": group.nationality,
        "count": group.count,
        "created_at": group.created_at,
        "updated_at": group.updated_at,
        "stage_count": group_stats.get("stage_count", 0),
        "waiting_stages": group_stats.get("waiting_stages", 0),
    }


async def _stage_stats(db: AsyncSession, group_ids: list[UUID]) -> dict[UUID, dict]:
    if not group_ids:
        return {}
    rows = (
        await db.execute(
            select(Stage.pilgrim_group_id, Stage.status, func.count().label("count"))
            .where(Stage.pilgrim_group_id.in_(group_ids))
            .group_by(Stage.pilgrim_group_id, Stage.status)
        )
    ).all()

    stats: dict[UUID, dict] = {}
    for row in rows:
        entry = stats.setdefault(row.pilgrim_group_id, {"stage_count": 0, "waiting_stages": 0})
        entry["stage_count"] += int(row.count)
        if row.status == "waiting_departure":
            entry["waiting_stages"] += int(row.count)
    return stats
