import json
import uuid

import pytest

from capacity.pipeline import handle_center_emptied
from conftest import make_center, make_group, make_refill_setting, make_stage
from realtime.feed import CENTER_CHANNEL, parse_center_event, publish_center_change


class TestParseCenterEvent:
    def test_center_update_payload(self):
        raw = json.dumps({"type": "center_update", "payload": {"center_id": "abc", "current_count": 0}}).encode()

        assert parse_center_event(raw) == {"center_id": "abc", "current_count": 0}

    def test_other_message_types_are_ignored(self):
        assert parse_center_event(json.dumps({"type": "stage_alert", "payload": {}})) is None

    def test_malformed_json_is_ignored(self):
        assert parse_center_event(b"{not json") is None

    def test_payload_without_center_is_ignored(self):
        assert parse_center_event(json.dumps({"type": "center_update", "payload": {"current_count": 0}})) is None


@pytest.mark.asyncio
class TestPublishing:
    async def test_center_change_carries_committed_counters(self, test_db, seeded_db, published):
        await publish_center_change(test_db, seeded_db["center"].center_id)

        channel, message = published[0]
        assert channel == CENTER_CHANNEL
        assert message["type"] == "center_update"
        assert message["payload"]["center_id"] == str(seeded_db["center"].center_id)
        assert message["payload"]["current_count"] == 50
        assert message["payload"]["stage_id"] == str(seeded_db["stage"].stage_id)

    async def test_unknown_center_publishes_nothing(self, test_db, published):
        assert await publish_center_change(test_db, uuid.uuid4()) == 0
        assert published == []

    async def test_emptied_handler_publishes_only_after_refill(self, test_db, published):
        group = await make_group(test_db)
        stage = await make_stage(test_db, group)
        center = await make_center(test_db, stage=stage, capacity=20, current=0)

        outcome = await handle_center_emptied(test_db, center.center_id)
        assert outcome["reason"] == "no_setting"
        assert published == []

        await make_refill_setting(test_db, center, stage)
        outcome = await handle_center_emptied(test_db, center.center_id)
        assert outcome["refilled"] is True
        assert published[-1][1]["payload"]["current_count"] == 20
        assert published[-1][1]["payload"]["current_batch"] == 2
