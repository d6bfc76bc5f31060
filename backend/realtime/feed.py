"""
Realtime Change Feed — Redis pub/sub channels for the dashboard and workers.

Channels:
  - centers       : {"type": "center_update", "payload": {...counters...}}
  - stage_alerts  : {"type": "stage_alert", "payload": {...alert...}}

Publishing happens after the writing transaction commits. The feed is a
notification layer only: a lost message is recovered by the periodic polls,
so publish failures are logged and never undo the write.
"""

import json
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import Center, StageAlert

settings = get_settings()
logger = structlog.get_logger()

CENTER_CHANNEL = settings.center_feed_channel
ALERT_CHANNEL = settings.alert_feed_channel


def center_payload(row) -> dict[str, Any]:
    return {
        "center_id": str(row.center_id),
        "current_count": row.current_count,
        "default_capacity": row.default_capacity,
        "departed_pilgrims": row.departed_pilgrims,
        "current_batch": row.current_batch,
        "stage_id": str(row.stage_id) if row.stage_id else None,
    }


def alert_payload(alert: StageAlert) -> dict[str, Any]:
    return {
        "stage_alert_id": str(alert.stage_alert_id),
        "stage_id": str(alert.stage_id),
        "alert_type": alert.alert_type,
        "severity": alert.severity,
        "message": alert.message,
        "created_at": alert.created_at.isoformat() if alert.created_at else None,
    }


async def _publish(channel: str, messages: list[dict[str, Any]]) -> int:
    if not messages:
        return 0
    redis = aioredis.from_url(settings.redis_url)
    try:
        total_subs = 0
        for message in messages:
            total_subs += await redis.publish(channel, json.dumps(message))
        return total_subs
    except (RedisError, OSError) as exc:
        logger.warning("feed.publish_failed", channel=channel, messages=len(messages), error=str(exc))
        return 0
    finally:
        await redis.aclose()


async def publish_center_change(db: AsyncSession, center_id: uuid.UUID) -> int:
    """Publish the committed counters of one center. Returns subscriber count."""
    row = (
        await db.execute(
            select(
                Center.center_id,
                Center.current_count,
                Center.default_capacity,
                Center.departed_pilgrims,
                Center.current_batch,
                Center.stage_id,
            ).where(Center.center_id == center_id)
        )
    ).one_or_none()
    if row is None:
        return 0
    return await _publish(CENTER_CHANNEL, [{"type": "center_update", "payload": center_payload(row)}])


async def publish_stage_alerts(alerts: list[StageAlert]) -> int:
    return await _publish(ALERT_CHANNEL, [{"type": "stage_alert", "payload": alert_payload(a)} for a in alerts])


def parse_center_event(raw: bytes | str) -> dict[str, Any] | None:
    """Decode a center_update message; None for anything else."""
    try:
        message = json.loads(raw.decode() if isinstance(raw, bytes) else raw)
    except (ValueError, UnicodeDecodeError):
        logger.warning("feed.bad_message", channel=CENTER_CHANNEL)
        return None
    if not isinstance(message, dict) or message.get("type") != "center_update":
        return None
    payload = message.get("payload")
    if not isinstance(payload, dict) or "center_id" not in payload:
        return None
    return payload


async def consume_center_changes(on_empty: Callable[[uuid.UUID], Awaitable[Any]]) -> None:
    """
    Block on the centers channel and call `on_empty(center_id)` for every
    update reporting current_count == 0. Runs until cancelled.
    """
    redis = aioredis.from_url(settings.redis_url)
    pubsub = redis.pubsub()
    await pubsub.subscribe(CENTER_CHANNEL)
    logger.info("feed.consumer_started", channel=CENTER_CHANNEL)
    try:
        async for message in pubsub.listen():
            if message["type"] != "message":
                continue
            payload = parse_center_event(message["data"])
            if payload is None or payload.get("current_count") != 0:
                continue
            center_id = uuid.UUID(payload["center_id"])
            try:
                await on_empty(center_id)
            except Exception as exc:  # noqa: BLE001
                logger.error("feed.handler_failed", center_id=str(center_id), error=str(exc), exc_info=True)
    finally:
        await pubsub.unsubscribe(CENTER_CHANNEL)
        await pubsub.aclose()
        await redis.aclose()
