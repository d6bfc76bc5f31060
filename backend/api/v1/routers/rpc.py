"""
RPC Router — procedure-style entry points kept for dashboard clients.

update_departure_counts mirrors the database procedure of the same name:
a departure either fully lands or nothing changes, and the caller gets
{"success": bool} either way.
"""

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import ENGINE_ERRORS, get_current_user, get_db, http_error
from capacity.pipeline import process_departure

router = APIRouter(prefix="/api/v1/rpc", tags=["rpc"])
logger = structlog.get_logger()


class UpdateDepartureCountsRequest(BaseModel):
    center_id: UUID
    stage_id: UUID
    departure_count: int


@router.post("/update_departure_counts")
async def update_departure_counts(
    body: UpdateDepartureCountsRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    try:
        summary = await process_departure(
            db,
            center_id=body.center_id,
            stage_id=body.stage_id,
            departure_count=body.departure_count,
            recorded_by=user.get("email") or user.get("sub"),
        )
    except ENGINE_ERRORS as exc:
        error = http_error(exc)
        logger.info("rpc.update_departure_counts_rejected", status=error.status_code, error=str(exc))
        return JSONResponse(status_code=error.status_code, content={"success": False, "error": error.detail})
    return {"success": True, **summary}
