"""
Centers Router — holding centers, departures and refill configuration.

Counters are never written here directly: departures go through the
departure pipeline and refills through the replenisher.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import ENGINE_ERRORS, get_current_user, get_db, http_error
from capacity.pipeline import handle_center_emptied, process_departure
from capacity.replenisher import assign_stage, get_refill_setting, set_refill_setting
from db.models import Center, DepartureHistory, Stage

router = APIRouter(prefix="/api/v1/centers", tags=["centers"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class CenterCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    location: str | None = None
    default_capacity: int = Field(..., ge=0)
    stage_id: UUID | None = None


class CenterResponse(BaseModel):
    center_id: UUID
    name: str
    location: str | None
    default_capacity: int
    current_count: int
    departed_pilgrims: int
    current_batch: int
    stage_id: UUID | None
    status: str
    created_at: datetime
    updated_at: datetime
    should_refill: bool | None = None
    is_refilled: bool | None = None

    model_config = {"from_attributes": True}


class StageAssignment(BaseModel):
    stage_id: UUID


class RefillSettingRequest(BaseModel):
    should_refill: bool
    notes: str | None = None


class RefillSettingResponse(BaseModel):
    refill_setting_id: UUID
    center_id: UUID
    stage_id: UUID
    should_refill: bool
    is_refilled: bool
    refill_date: datetime | None
    notes: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class DepartureRequest(BaseModel):
    stage_id: UUID
    departure_count: int = Field(..., gt=0)
    notes: str | None = None


class DepartureHistoryResponse(BaseModel):
    history_id: UUID
    center_id: UUID
    stage_id: UUID | None
    batch_number: int
    departed_count: int
    departure_date: datetime
    notes: str | None
    recorded_by: str | None

    model_config = {"from_attributes": True}


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[CenterResponse])
async def list_centers(
    status: str | None = None,
    stage_id: UUID | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    query = select(Center)
    if status:
        query = query.where(Center.status == status)
    if stage_id:
        query = query.where(Center.stage_id == stage_id)
    query = query.order_by(Center.name).offset(skip).limit(limit)
    result = await db.execute(query.execution_options(populate_existing=True))
    centers = result.scalars().all()
    return [await _serialize_center(db, c) for c in centers]


@router.get("/{center_id}", response_model=CenterResponse)
async def get_center(
    center_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    center = await db.get(Center, center_id, populate_existing=True)
    if not center:
        raise HTTPException(status_code=404, detail="Center not found")
    return await _serialize_center(db, center)


@router.post("/", response_model=CenterResponse, status_code=201)
async def create_center(
    body: CenterCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Create a center. New centers start full at their default capacity."""
    if body.stage_id and not await db.get(Stage, body.stage_id):
        raise HTTPException(status_code=404, detail="Stage not found")

    center = Center(
        name=body.name,
        location=body.location,
        default_capacity=body.default_capacity,
        current_count=body.default_capacity,
        departed_pilgrims=0,
        current_batch=1,
        stage_id=body.stage_id,
    )
    db.add(center)
    await db.commit()
    await db.refresh(center)
    return await _serialize_center(db, center)


@router.put("/{center_id}/stage", response_model=CenterResponse)
async def assign_center_stage(
    center_id: UUID,
    body: StageAssignment,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Point the center at a stage. Starts a new refill cycle; counters are untouched."""
    try:
        center = await assign_stage(db, center_id, body.stage_id)
    except ENGINE_ERRORS as exc:
        raise http_error(exc) from exc
    return await _serialize_center(db, center)


@router.put("/{center_id}/refill-setting", response_model=RefillSettingResponse)
async def update_refill_setting(
    center_id: UUID,
    body: RefillSettingRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    try:
        return await set_refill_setting(db, center_id, body.should_refill, notes=body.notes)
    except ENGINE_ERRORS as exc:
        raise http_error(exc) from exc


@router.post("/{center_id}/refill-check")
async def run_refill_check(
    center_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Run the refill check now. Idempotent; reports why nothing happened."""
    try:
        return await handle_center_emptied(db, center_id)
    except ENGINE_ERRORS as exc:
        raise http_error(exc) from exc


@router.post("/{center_id}/departures", status_code=201)
async def record_center_departure(
    center_id: UUID,
    body: DepartureRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """
    Record pilgrims leaving the center for a stage. Returns the new counters,
    any waiting stages this unlocked and the refill outcome.
    """
    try:
        return await process_departure(
            db,
            center_id=center_id,
            stage_id=body.stage_id,
            departure_count=body.departure_count,
            notes=body.notes,
            recorded_by=user.get("email") or user.get("sub"),
        )
    except ENGINE_ERRORS as exc:
        raise http_error(exc) from exc


@router.get("/{center_id}/departure-history", response_model=list[DepartureHistoryResponse])
async def list_departure_history(
    center_id: UUID,
    batch_number: int | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Ledger entries for one center, newest first."""
    center = await db.get(Center, center_id)
    if not center:
        raise HTTPException(status_code=404, detail="Center not found")

    query = select(DepartureHistory).where(DepartureHistory.center_id == center_id)
    if batch_number is not None:
        query = query.where(DepartureHistory.batch_number == batch_number)
    query = query.order_by(DepartureHistory.departure_date.desc()).offset(skip).limit(limit)
    result = await db.execute(query)
    return result.scalars().all()


async def _serialize_center(db: AsyncSession, center: Center) -> dict:
    setting = await get_refill_setting(db, center.center_id, center.stage_id) if center.stage_id else None
    return {
        "center_id": center.center_id,
        "name": center.name,
        "location": center.location,
        "default_capacity": center.default_capacity,
        "current_count": center.current_count,
        "departed_pilgrims": center.departed_pilgrims,
        "current_batch": center.current_batch,
        "stage_id": center.stage_id,
        "status": center.status,
        "created_at": center.created_at,
        "updated_at": center.updated_at,
        "should_refill": setting.should_refill if setting else None,
        "is_refilled": setting.is_refilled if setting else None,
    }
