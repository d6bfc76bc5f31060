"""
Stage Alerts Router — advisory alerts from the stage monitor and consistency audit.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db
from db.models import StageAlert

router = APIRouter(prefix="/api/v1/stage-alerts", tags=["stage-alerts"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class StageAlertResponse(BaseModel):
    stage_alert_id: UUID
    stage_id: UUID
    alert_type: str
    severity: str
    message: str
    alert_metadata: dict | None
    is_resolved: bool
    resolved_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class StageAlertSummary(BaseModel):
    total: int
    open: int
    resolved: int
    critical: int
    high: int
    by_type: dict[str, int]


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[StageAlertResponse])
async def list_stage_alerts(
    stage_id: UUID | None = None,
    alert_type: str | None = None,
    severity: str | None = None,
    is_resolved: bool | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """List stage alerts with filters, newest first."""
    query = select(StageAlert)
    if stage_id:
        query = query.where(StageAlert.stage_id == stage_id)
    if alert_type:
        query = query.where(StageAlert.alert_type == alert_type)
    if severity:
        query = query.where(StageAlert.severity == severity)
    if is_resolved is not None:
        query = query.where(StageAlert.is_resolved.is_(is_resolved))
    query = query.order_by(StageAlert.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/summary", response_model=StageAlertSummary)
async def get_stage_alert_summary(
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    result = await db.execute(
        select(
            StageAlert.alert_type,
            StageAlert.severity,
            StageAlert.is_resolved,
            func.count(StageAlert.stage_alert_id),
        ).group_by(StageAlert.alert_type, StageAlert.severity, StageAlert.is_resolved)
    )

    total = open_count = critical = high = 0
    by_type: dict[str, int] = {}
    for alert_type, severity, is_resolved, count in result.all():
        total += count
        if is_resolved:
            continue
        open_count += count
        by_type[alert_type] = by_type.get(alert_type, 0) + count
        if severity == "critical":
            critical += count
        elif severity == "high":
            high += count

    return StageAlertSummary(
        total=total,
        open=open_count,
        resolved=total - open_count,
        critical=critical,
        high=high,
        by_type=by_type,
    )


@router.patch("/{stage_alert_id}/resolve", response_model=StageAlertResponse)
async def resolve_stage_alert(
    stage_alert_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Resolve an alert. A later monitor run may raise it again if the condition persists."""
    alert = await db.get(StageAlert, stage_alert_id)
    if not alert:
        raise HTTPException(status_code=404, detail="Stage alert not found")
    if alert.is_resolved:
        raise HTTPException(status_code=400, detail="Stage alert is already resolved")

    alert.is_resolved = True
    alert.resolved_at = datetime.utcnow()
    await db.commit()
    await db.refresh(alert)
    return alert
