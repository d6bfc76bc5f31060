import uuid

import pytest
from sqlalchemy import func, select

from db.models import DepartureHistory

RPC_URL = "/api/v1/rpc/update_departure_counts"


@pytest.mark.asyncio
class TestUpdateDepartureCounts:
    async def test_success(self, client, test_db, seeded_db):
        center, stage = seeded_db["center"], seeded_db["stage"]

        response = await client.post(
            RPC_URL,
            json={"center_id": str(center.center_id), "stage_id": str(stage.stage_id), "departure_count": 10},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["departure"]["center_current_count"] == 40
        assert data["departure"]["stage_departed_pilgrims"] == 10

    async def test_over_capacity_returns_success_false(self, client, test_db, seeded_db):
        center, stage = seeded_db["center"], seeded_db["stage"]

        response = await client.post(
            RPC_URL,
            json={"center_id": str(center.center_id), "stage_id": str(stage.stage_id), "departure_count": 60},
        )

        assert response.status_code == 422
        assert response.json()["success"] is False
        await test_db.refresh(center)
        assert center.current_count == 50
        ledger = (await test_db.execute(select(func.count(DepartureHistory.history_id)))).scalar()
        assert ledger == 0

    async def test_zero_count_returns_success_false(self, client, seeded_db):
        response = await client.post(
            RPC_URL,
            json={
                "center_id": str(seeded_db["center"].center_id),
                "stage_id": str(seeded_db["stage"].stage_id),
                "departure_count": 0,
            },
        )

        assert response.status_code == 422
        assert response.json()["success"] is False

    async def test_unknown_center(self, client, seeded_db):
        response = await client.post(
            RPC_URL,
            json={"center_id": str(uuid.uuid4()), "stage_id": str(seeded_db["stage"].stage_id), "departure_count": 1},
        )

        assert response.status_code == 404
        assert response.json()["success"] is False
