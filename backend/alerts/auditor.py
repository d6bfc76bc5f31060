"""
Consistency Auditor — detect drift between derived and stored stage totals.

For every stage, current_pilgrims + departed_pilgrims should still equal
the headcount assigned at creation (total_pilgrims). Admin edits can break
that; the auditor reports it and corrects nothing.

audit_stages() is advisory: it never raises into its caller.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.engine import create_alerts, deduplicate_alerts
from db.models import Stage

logger = structlog.get_logger()


@dataclass
class StageDrift:
    stage_id: Any
    stage_name: str
    computed_total: int
    stored_total: int

    @property
    def message(self) -> str:
        return (
            f'Count mismatch in stage "{self.stage_name}": '
            f"computed ({self.computed_total}) != stored ({self.stored_total})"
        )


@dataclass
class ConsistencyReport:
    checked: int = 0
    drifts: list[StageDrift] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.drifts)

    @property
    def details(self) -> list[str]:
        return [d.message for d in self.drifts]


def stage_totals(stage) -> tuple[int, int]:
    """(computed, stored) totals. A stage without a stored total falls back to current_pilgrims."""
    current = stage.current_pilgrims or 0
    computed = current + (stage.departed_pilgrims or 0)
    stored = stage.total_pilgrims if stage.total_pilgrims is not None else current
    return computed, stored


def check_stage_consistency(stages) -> ConsistencyReport:
    report = ConsistencyReport()
    for stage in stages:
        report.checked += 1
        computed, stored = stage_totals(stage)
        if computed != stored:
            report.drifts.append(
                StageDrift(
                    stage_id=stage.stage_id,
                    stage_name=stage.name,
                    computed_total=computed,
                    stored_total=stored,
                )
            )
    return report


async def audit_stages(db: AsyncSession, stages=None) -> ConsistencyReport:
    """
    Check `stages` (or every stage) and record one open consistency_drift
    alert per drifting stage. Errors are logged and an empty report returned.
    """
    try:
        if stages is None:
            result = await db.execute(
                select(
                    Stage.stage_id,
                    Stage.name,
                    Stage.current_pilgrims,
                    Stage.departed_pilgrims,
                    Stage.total_pilgrims,
                )
            )
            stages = result.all()

        report = check_stage_consistency(stages)
        for drift in report.drifts:
            logger.warning(
                "audit.stage_drift",
                stage_id=str(drift.stage_id),
                computed_total=drift.computed_total,
                stored_total=drift.stored_total,
            )

        if report.drifts:
            alerts = [
                {
                    "stage_id": drift.stage_id,
                    "alert_type": "consistency_drift",
                    "severity": "medium",
                    "message": drift.message,
                    "metadata": {
                        "computed_total": drift.computed_total,
                        "stored_total": drift.stored_total,
                    },
                }
                for drift in report.drifts
            ]
            await create_alerts(db, await deduplicate_alerts(db, alerts))
        return report
    except Exception as exc:  # noqa: BLE001
        await db.rollback()
        logger.error("audit.failed", error=str(exc), exc_info=True)
        return ConsistencyReport()
