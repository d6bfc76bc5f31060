"""
Tests for the capacity replenisher — one refill per center per stage assignment.
"""

import uuid
from datetime import datetime

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from capacity import replenisher
from capacity.recorder import record_departure
from capacity.replenisher import (
    assign_stage,
    check_and_refill,
    check_empty_centers,
    get_refill_setting,
    set_refill_setting,
)
from conftest import intercept_updates, make_center, make_group, make_refill_setting, make_stage
from db.models import CenterStageRefill
from stages.errors import EngineNotFoundError, EngineTransactionError, EngineValidationError


@pytest.mark.asyncio
class TestCheckAndRefill:
    async def test_empty_opted_in_center_is_refilled(self, test_db, seeded_db):
        center, stage = seeded_db["center"], seeded_db["stage"]
        setting = await make_refill_setting(test_db, center, stage)

        await record_departure(test_db, center.center_id, stage.stage_id, 50)
        outcome = await check_and_refill(test_db, center.center_id)

        await test_db.refresh(center)
        await test_db.refresh(setting)
        assert outcome.refilled is True
        assert outcome.reason == "refilled"
        assert center.current_count == 50
        assert center.departed_pilgrims == 0
        assert center.current_batch == 2
        assert setting.is_refilled is True
        assert setting.refill_date is not None

    async def test_second_check_is_a_noop(self, test_db):
        group = await make_group(test_db)
        stage = await make_stage(test_db, group)
        center = await make_center(test_db, stage=stage, capacity=50, current=0)
        await make_refill_setting(test_db, center, stage)

        first = await check_and_refill(test_db, center.center_id)
        await record_departure(test_db, center.center_id, stage.stage_id, 50)
        second = await check_and_refill(test_db, center.center_id)

        await test_db.refresh(center)
        assert first.refilled is True
        assert second.refilled is False
        assert second.reason == "already_refilled"
        assert center.current_count == 0
        assert center.current_batch == 2

    async def test_back_to_back_checks_refill_once(self, test_db):
        group = await make_group(test_db)
        stage = await make_stage(test_db, group)
        center = await make_center(test_db, stage=stage, capacity=50, current=0)
        await make_refill_setting(test_db, center, stage)

        outcomes = [await check_and_refill(test_db, center.center_id) for _ in range(2)]

        await test_db.refresh(center)
        assert [o.refilled for o in outcomes] == [True, False]
        assert center.current_batch == 2

    async def test_center_that_is_not_empty_is_left_alone(self, test_db, seeded_db):
        await make_refill_setting(test_db, seeded_db["center"], seeded_db["stage"])

        outcome = await check_and_refill(test_db, seeded_db["center"].center_id)

        assert outcome.refilled is False
        assert outcome.reason == "not_empty"

    async def test_refill_disabled(self, test_db):
        group = await make_group(test_db)
        stage = await make_stage(test_db, group)
        center = await make_center(test_db, stage=stage, capacity=50, current=0)
        await make_refill_setting(test_db, center, stage, should_refill=False)

        outcome = await check_and_refill(test_db, center.center_id)

        await test_db.refresh(center)
        assert outcome.reason == "disabled"
        assert center.current_count == 0
        assert center.current_batch == 1

    async def test_no_setting(self, test_db):
        group = await make_group(test_db)
        stage = await make_stage(test_db, group)
        center = await make_center(test_db, stage=stage, capacity=50, current=0)

        outcome = await check_and_refill(test_db, center.center_id)

        assert outcome.reason == "no_setting"

    async def test_no_stage(self, test_db):
        center = await make_center(test_db, capacity=50, current=0)

        outcome = await check_and_refill(test_db, center.center_id)

        assert outcome.reason == "no_stage"

    async def test_unknown_center(self, test_db):
        with pytest.raises(EngineNotFoundError):
            await check_and_refill(test_db, uuid.uuid4())

    async def test_poll_refills_every_opted_in_empty_center(self, test_db):
        group = await make_group(test_db)
        stage = await make_stage(test_db, group)
        opted_in = await make_center(test_db, stage=stage, capacity=30, current=0, name="A")
        opted_out = await make_center(test_db, stage=stage, capacity=30, current=0, name="B")
        await make_center(test_db, stage=stage, capacity=30, name="Full")
        await make_refill_setting(test_db, opted_in, stage)
        await make_refill_setting(test_db, opted_out, stage, should_refill=False)

        outcomes = await check_empty_centers(test_db)

        by_center = {o.center_id: o for o in outcomes}
        assert len(outcomes) == 2
        assert by_center[opted_in.center_id].refilled is True
        assert by_center[opted_out.center_id].reason == "disabled"


@pytest.mark.asyncio
class TestRefillRaces:
    async def _empty_center(self, db):
        group = await make_group(db)
        stage = await make_stage(db, group)
        center = await make_center(db, stage=stage, capacity=50, current=0)
        setting = await make_refill_setting(db, center, stage)
        return center, setting

    async def test_guard_claimed_by_another_worker(self, test_db, monkeypatch):
        center, setting = await self._empty_center(test_db)
        real_get_setting = replenisher.get_refill_setting

        async def read_then_claim(db, center_id, stage_id):
            current = await real_get_setting(db, center_id, stage_id)
            # A second worker flips the guard after our read.
            await db.execute(
                update(CenterStageRefill)
                .where(CenterStageRefill.refill_setting_id == setting.refill_setting_id)
                .values(is_refilled=True)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return current

        monkeypatch.setattr(replenisher, "get_refill_setting", read_then_claim)

        outcome = await check_and_refill(test_db, center.center_id)

        await test_db.refresh(center)
        assert outcome.refilled is False
        assert outcome.reason == "race_lost"
        assert center.current_count == 0
        assert center.current_batch == 1

    async def test_center_changed_after_guard_flip_releases_guard(self, test_db, monkeypatch):
        center, setting = await self._empty_center(test_db)
        intercept_updates(monkeypatch, test_db, "centers", rowcount=0)

        outcome = await check_and_refill(test_db, center.center_id)

        await test_db.refresh(center)
        await test_db.refresh(setting)
        assert outcome.reason == "race_lost"
        assert setting.is_refilled is False
        assert setting.refill_date is None
        assert center.current_count == 0
        assert center.current_batch == 1

        retry = await check_and_refill(test_db, center.center_id)

        await test_db.refresh(center)
        assert retry.refilled is True
        assert center.current_batch == 2

    async def test_store_error_rolls_back_guard(self, test_db, monkeypatch):
        center, setting = await self._empty_center(test_db)
        intercept_updates(
            monkeypatch,
            test_db,
            "centers",
            error=OperationalError("UPDATE centers", {}, Exception("database is locked")),
        )

        with pytest.raises(EngineTransactionError):
            await check_and_refill(test_db, center.center_id)

        await test_db.refresh(center)
        await test_db.refresh(setting)
        assert setting.is_refilled is False
        assert center.current_count == 0
        assert center.current_batch == 1

    async def test_refill_date_uses_stage_clock(self, test_db, monkeypatch):
        center, setting = await self._empty_center(test_db)
        moment = datetime(2026, 6, 5, 23, 15)
        monkeypatch.setattr(replenisher, "local_now", lambda: moment)

        await check_and_refill(test_db, center.center_id)

        await test_db.refresh(setting)
        assert setting.refill_date == moment


@pytest.mark.asyncio
class TestRefillConfiguration:
    async def test_setting_is_created_for_current_stage(self, test_db, seeded_db):
        center, stage = seeded_db["center"], seeded_db["stage"]

        setting = await set_refill_setting(test_db, center.center_id, True, notes="night shift")

        assert setting.stage_id == stage.stage_id
        assert setting.should_refill is True
        assert setting.is_refilled is False
        assert setting.notes == "night shift"

    async def test_updating_setting_keeps_guard(self, test_db, seeded_db):
        center, stage = seeded_db["center"], seeded_db["stage"]
        await make_refill_setting(test_db, center, stage, is_refilled=True)

        setting = await set_refill_setting(test_db, center.center_id, False)

        assert setting.should_refill is False
        assert setting.is_refilled is True

    async def test_setting_requires_assigned_stage(self, test_db):
        center = await make_center(test_db)

        with pytest.raises(EngineValidationError):
            await set_refill_setting(test_db, center.center_id, True)

    async def test_reassignment_rearms_guard_without_touching_counters(self, test_db):
        group = await make_group(test_db)
        first = await make_stage(test_db, group, name="First")
        second = await make_stage(test_db, group, name="Second")
        center = await make_center(test_db, stage=first, capacity=50, current=0, batch=2)
        await make_refill_setting(test_db, center, second, is_refilled=True)

        await assign_stage(test_db, center.center_id, second.stage_id)

        await test_db.refresh(center)
        setting = await get_refill_setting(test_db, center.center_id, second.stage_id)
        assert center.stage_id == second.stage_id
        assert center.current_count == 0
        assert center.current_batch == 2
        assert setting.is_refilled is False

        outcome = await check_and_refill(test_db, center.center_id)
        assert outcome.refilled is True
        assert outcome.batch_number == 3

    async def test_completed_stage_cannot_be_assigned(self, test_db, seeded_db):
        done = await make_stage(test_db, seeded_db["group"], status="completed", current=0)

        with pytest.raises(EngineValidationError):
            await assign_stage(test_db, seeded_db["center"].center_id, done.stage_id)

    async def test_assigning_unknown_stage(self, test_db, seeded_db):
        with pytest.raises(EngineNotFoundError):
            await assign_stage(test_db, seeded_db["center"].center_id, uuid.uuid4())
