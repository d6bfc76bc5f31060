"""
Stage Alert Engine — advisory monitoring of active stages, alert lifecycle.

Alert Types:
  - status_change_needed: active stage outside its window (overdue / early)
  - capacity_warning: active stage that is empty or above the expected ceiling
  - time_warning: active stage close to its end
  - consistency_drift: emitted by alerts.auditor

Alerts are observational only; no stage or center transition reads them.
Open alerts are deduplicated on (stage_id, alert_type).
"""

import uuid
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import Stage, StageAlert
from realtime.feed import publish_stage_alerts
from stages.lifecycle import local_now, stage_window

settings = get_settings()
logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────────────────
# Detection Rules
# ──────────────────────────────────────────────────────────────────────────

SEVERITY_THRESHOLDS = {
    "hours_remaining": {
        "critical": 6,  # ends in ≤ 6 hours
        "high": 24,  # ends in ≤ 24 hours
        "medium": 48,  # ends in ≤ 48 hours
    },
}

WARNING_HOURS = float(settings.monitor_warning_hours)
CAPACITY_CEILING = int(settings.monitor_capacity_ceiling)


def classify_time_severity(hours_remaining: float) -> str:
    """Classify a time warning by hours left before the stage window closes."""
    thresholds = SEVERITY_THRESHOLDS["hours_remaining"]
    if hours_remaining <= thresholds["critical"]:
        return "critical"
    elif hours_remaining <= thresholds["high"]:
        return "high"
    elif hours_remaining <= thresholds["medium"]:
        return "medium"
    return "low"


def analyze_stage(stage, now: datetime) -> list[dict[str, Any]]:
    """
    Return alert dicts for one active stage. Pure; `stage` only needs the
    Stage column attributes.
    """
    if stage.status != "active":
        return []

    window = stage_window(stage)
    hours_left = window.hours_until_end(now)
    base = {"stage_id": stage.stage_id}
    alerts: list[dict[str, Any]] = []

    if now > window.ends_at:
        alerts.append(
            {
                **base,
                "alert_type": "status_change_needed",
                "severity": "critical",
                "message": f'Stage "{stage.name}" is still active past its end time',
                "metadata": {"hours_overdue": round(-hours_left, 1)},
            }
        )
    elif now < window.starts_at:
        alerts.append(
            {
                **base,
                "alert_type": "status_change_needed",
                "severity": "high",
                "message": f'Stage "{stage.name}" is active before its start time',
                "metadata": {"starts_at": window.starts_at.isoformat()},
            }
        )
    elif hours_left <= 24 and (stage.departed_pilgrims or 0) == 0:
        alerts.append(
            {
                **base,
                "alert_type": "time_warning",
                "severity": "critical",
                "message": f'Stage "{stage.name}" is about to end and no pilgrim has departed',
                "metadata": {"hours_remaining": round(hours_left, 1)},
            }
        )
    elif hours_left <= WARNING_HOURS:
        alerts.append(
            {
                **base,
                "alert_type": "time_warning",
                "severity": classify_time_severity(hours_left),
                "message": f'Stage "{stage.name}" ends in {max(round(hours_left), 0)} hours',
                "metadata": {
                    "hours_remaining": round(hours_left, 1),
                    "current_pilgrims": stage.current_pilgrims,
                    "departed_pilgrims": stage.departed_pilgrims,
                },
            }
        )

    if stage.current_pilgrims == 0:
        alerts.append(
            {
                **base,
                "alert_type": "capacity_warning",
                "severity": "medium",
                "message": f'Stage "{stage.name}" is active with no pilgrims remaining',
                "metadata": {"current_pilgrims": 0},
            }
        )
    elif stage.current_pilgrims > CAPACITY_CEILING:
        alerts.append(
            {
                **base,
                "alert_type": "capacity_warning",
                "severity": "critical",
                "message": (
                    f'Stage "{stage.name}" exceeds the expected number of pilgrims '
                    f"({stage.current_pilgrims} > {CAPACITY_CEILING})"
                ),
                "metadata": {"current_pilgrims": stage.current_pilgrims, "ceiling": CAPACITY_CEILING},
            }
        )

    return alerts


# ──────────────────────────────────────────────────────────────────────────
# Alert Deduplication + Creation
# ──────────────────────────────────────────────────────────────────────────


async def deduplicate_alerts(
    db: AsyncSession,
    new_alerts: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """
    Filter out alerts that already exist unresolved for the same
    stage + alert_type combination (and duplicates within the batch).
    """
    if not new_alerts:
        return []

    existing = await db.execute(
        select(StageAlert.stage_id, StageAlert.alert_type).where(StageAlert.is_resolved.is_(False))
    )
    seen = {(str(row.stage_id), row.alert_type) for row in existing.all()}

    unique = []
    for alert in new_alerts:
        key = (str(alert["stage_id"]), alert["alert_type"])
        if key in seen:
            continue
        seen.add(key)
        unique.append(alert)
    return unique


async def create_alerts(
    db: AsyncSession,
    alerts: list[dict[str, Any]],
) -> list[StageAlert]:
    """Persist alerts to database and return created records."""
    created = []
    for alert_data in alerts:
        alert = StageAlert(
            stage_alert_id=uuid.uuid4(),
            stage_id=alert_data["stage_id"],
            alert_type=alert_data["alert_type"],
            severity=alert_data["severity"],
            message=alert_data["message"],
            alert_metadata=alert_data.get("metadata", {}),
            is_resolved=False,
            created_at=datetime.utcnow(),
        )
        db.add(alert)
        created.append(alert)

    await db.commit()
    return created


# ──────────────────────────────────────────────────────────────────────────
# Monitor Pipeline (run periodically)
# ──────────────────────────────────────────────────────────────────────────


async def run_stage_monitor(db: AsyncSession, now: datetime | None = None) -> dict[str, int]:
    """
    1. Analyze every active stage
    2. Deduplicate against open alerts
    3. Persist
    4. Publish via Redis

    Returns counts of alerts created by type.
    """
    moment = now or local_now()
    result = await db.execute(select(Stage).where(Stage.status == "active").execution_options(populate_existing=True))
    stages = result.scalars().all()

    candidates: list[dict[str, Any]] = []
    for stage in stages:
        candidates.extend(analyze_stage(stage, moment))

    unique = await deduplicate_alerts(db, candidates)
    created = await create_alerts(db, unique)
    await publish_stage_alerts(created)

    counts = {
        alert_type: sum(1 for a in created if a.alert_type == alert_type)
        for alert_type in ("status_change_needed", "capacity_warning", "time_warning")
    }
    counts["total"] = len(created)
    logger.info("monitor.complete", stages_checked=len(stages), **counts)
    return counts
