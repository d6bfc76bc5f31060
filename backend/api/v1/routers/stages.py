"""
Stages Router — stage CRUD and explicit lifecycle transitions.

Stage lifecycle:
  1. Created inactive, active (inside its window) or waiting_departure
  2. Started explicitly, or by the allocator once upstream departures accrue
  3. Deactivated by the window sweep, or completed by an operator

Listing stages runs the consistency audit on the listed rows.
"""

from datetime import date, datetime, time
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.auditor import audit_stages
from api.deps import ENGINE_ERRORS, get_current_user, get_db, http_error
from db.models import Stage
from stages.lifecycle import (
    complete_stage,
    create_stage,
    get_stage_or_raise,
    queue_stage,
    start_stage,
    validate_stage_counts,
)

router = APIRouter(prefix="/api/v1/stages", tags=["stages"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class StageCreate(BaseModel):
    pilgrim_group_id: UUID
    name: str = Field(..., min_length=1, max_length=255)
    area_id: UUID | None = None
    status: str = "inactive"
    current_pilgrims: int = Field(..., ge=0)
    departed_pilgrims: int = Field(0, ge=0)
    start_date: date
    start_time: time
    end_date: date
    end_time: time
    required_departures: int | None = Field(None, ge=0)


class StageUpdate(BaseModel):
    """Admin edit. Counter edits here are what the consistency audit watches for."""

    name: str | None = Field(None, min_length=1, max_length=255)
    area_id: UUID | None = None
    current_pilgrims: int | None = Field(None, ge=0)
    departed_pilgrims: int | None = Field(None, ge=0)
    start_date: date | None = None
    start_time: time | None = None
    end_date: date | None = None
    end_time: time | None = None
    required_departures: int | None = Field(None, ge=0)


class StageQueueRequest(BaseModel):
    required_departures: int = Field(..., ge=0)


class StageResponse(BaseModel):
    stage_id: UUID
    pilgrim_group_id: UUID
    area_id: UUID | None
    name: str
    status: str
    current_pilgrims: int
    departed_pilgrims: int
    total_pilgrims: int | None
    start_date: date
    start_time: time
    end_date: date
    end_time: time
    required_departures: int | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[StageResponse])
async def list_stages(
    pilgrim_group_id: UUID | None = None,
    status: str | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """List stages, oldest first. Drift found on the listed rows is recorded as alerts."""
    query = select(Stage)
    if pilgrim_group_id:
        query = query.where(Stage.pilgrim_group_id == pilgrim_group_id)
    if status:
        query = query.where(Stage.status == status)
    query = query.order_by(Stage.created_at, Stage.stage_id).offset(skip).limit(limit)
    result = await db.execute(query.execution_options(populate_existing=True))
    stages = result.scalars().all()

    payload = [StageResponse.model_validate(s) for s in stages]
    await audit_stages(db, payload)
    return payload


@router.get("/{stage_id}", response_model=StageResponse)
async def get_stage(
    stage_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    try:
        return await get_stage_or_raise(db, stage_id)
    except ENGINE_ERRORS as exc:
        raise http_error(exc) from exc


@router.post("/", response_model=StageResponse, status_code=201)
async def create_stage_endpoint(
    body: StageCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    try:
        return await create_stage(db, **body.model_dump())
    except ENGINE_ERRORS as exc:
        raise http_error(exc) from exc


@router.patch("/{stage_id}", response_model=StageResponse)
async def update_stage(
    stage_id: UUID,
    update: StageUpdate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Edit stage fields. Status changes go through the lifecycle endpoints."""
    stage = await db.get(Stage, stage_id)
    if not stage:
        raise HTTPException(status_code=404, detail="Stage not found")

    for field, value in update.model_dump(exclude_unset=True).items():
        setattr(stage, field, value)

    problems = validate_stage_counts(stage)
    if datetime.combine(stage.end_date, stage.end_time) < datetime.combine(stage.start_date, stage.start_time):
        problems.append("stage window ends before it starts")
    if problems:
        await db.rollback()
        raise HTTPException(status_code=422, detail="; ".join(problems))

    stage.updated_at = datetime.utcnow()
    await db.commit()
    await db.refresh(stage)
    return stage


@router.post("/{stage_id}/start", response_model=StageResponse)
async def start_stage_endpoint(
    stage_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    try:
        return await start_stage(db, stage_id)
    except ENGINE_ERRORS as exc:
        raise http_error(exc) from exc


@router.post("/{stage_id}/complete", response_model=StageResponse)
async def complete_stage_endpoint(
    stage_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    try:
        return await complete_stage(db, stage_id)
    except ENGINE_ERRORS as exc:
        raise http_error(exc) from exc


@router.post("/{stage_id}/queue", response_model=StageResponse)
async def queue_stage_endpoint(
    stage_id: UUID,
    body: StageQueueRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Park an inactive stage behind the group's upstream departures."""
    try:
        return await queue_stage(db, stage_id, body.required_departures)
    except ENGINE_ERRORS as exc:
        raise http_error(exc) from exc
