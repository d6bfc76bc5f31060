import uuid
from datetime import datetime

import pytest

from conftest import make_group, make_stage
from db.models import StageAlert


async def _alert(db, stage, alert_type="time_warning", severity="high", is_resolved=False):
    alert = StageAlert(
        stage_alert_id=uuid.uuid4(),
        stage_id=stage.stage_id,
        alert_type=alert_type,
        severity=severity,
        message=f"{alert_type} for {stage.name}",
        alert_metadata={},
        is_resolved=is_resolved,
        created_at=datetime.utcnow(),
    )
    db.add(alert)
    await db.commit()
    return alert


@pytest.mark.asyncio
class TestStageAlertsAPI:
    async def test_list_filters(self, client, test_db):
        group = await make_group(test_db)
        stage = await make_stage(test_db, group)
        await _alert(test_db, stage, "time_warning", "high")
        await _alert(test_db, stage, "capacity_warning", "medium", is_resolved=True)

        response = await client.get("/api/v1/stage-alerts/?is_resolved=false")
        assert response.status_code == 200
        assert [a["alert_type"] for a in response.json()] == ["time_warning"]

        response = await client.get("/api/v1/stage-alerts/?alert_type=capacity_warning")
        assert len(response.json()) == 1

    async def test_summary(self, client, test_db):
        group = await make_group(test_db)
        stage = await make_stage(test_db, group)
        other = await make_stage(test_db, group, name="Other")
        await _alert(test_db, stage, "status_change_needed", "critical")
        await _alert(test_db, other, "time_warning", "high")
        await _alert(test_db, other, "consistency_drift", "medium", is_resolved=True)

        response = await client.get("/api/v1/stage-alerts/summary")

        data = response.json()
        assert data["total"] == 3
        assert data["open"] == 2
        assert data["resolved"] == 1
        assert data["critical"] == 1
        assert data["high"] == 1
        assert data["by_type"] == {"status_change_needed": 1, "time_warning": 1}

    async def test_resolve(self, client, test_db):
        group = await make_group(test_db)
        stage = await make_stage(test_db, group)
        alert = await _alert(test_db, stage)

        response = await client.patch(f"/api/v1/stage-alerts/{alert.stage_alert_id}/resolve")
        assert response.status_code == 200
        assert response.json()["is_resolved"] is True
        assert response.json()["resolved_at"] is not None

        response = await client.patch(f"/api/v1/stage-alerts/{alert.stage_alert_id}/resolve")
        assert response.status_code == 400

    async def test_resolve_missing(self, client):
        response = await client.patch(f"/api/v1/stage-alerts/{uuid.uuid4()}/resolve")
        assert response.status_code == 404
