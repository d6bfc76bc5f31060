"""
WebSocket endpoint for the realtime operations feed.

Bridges the Redis pub/sub channels (center counters + stage alerts) to
dashboard clients.
"""

import asyncio

import redis.asyncio as aioredis
import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from core.config import get_settings
from core.security import decode_access_token
from realtime.feed import ALERT_CHANNEL, CENTER_CHANNEL

settings = get_settings()
logger = structlog.get_logger()
router = APIRouter()

HEARTBEAT_SECONDS = 30


async def authenticate_ws(token: str) -> dict | None:
    """Validate JWT token from WebSocket query param."""
    if settings.debug:
        return {"sub": "dev-operator"}
    return decode_access_token(token)


@router.websocket("/ws/feed")
async def websocket_feed(websocket: WebSocket, token: str = Query(...)):
    """
    WebSocket endpoint that streams engine changes via Redis pub/sub.

    Connect: ws://host/ws/feed?token=<jwt>

    Messages sent to client:
        {"type": "center_update", "payload": {...}}
        {"type": "stage_alert", "payload": {...}}
        {"type": "heartbeat", "payload": {}}
    """
    user = await authenticate_ws(token)
    if user is None:
        await websocket.close(code=4001, reason="Unauthorized")
        return

    await websocket.accept()
    logger.info("feed.client_connected", sub=user.get("sub"))

    redis = aioredis.from_url(settings.redis_url)
    pubsub = redis.pubsub()
    await pubsub.subscribe(CENTER_CHANNEL, ALERT_CHANNEL)

    try:

        async def listen_redis():
            async for message in pubsub.listen():
                if message["type"] == "message":
                    data = message["data"]
                    await websocket.send_text(data.decode() if isinstance(data, bytes) else data)

        async def send_heartbeat():
            while True:
                await asyncio.sleep(HEARTBEAT_SECONDS)
                await websocket.send_json({"type": "heartbeat", "payload": {}})

        await asyncio.gather(listen_redis(), send_heartbeat())

    except (WebSocketDisconnect, RuntimeError):
        logger.info("feed.client_disconnected", sub=user.get("sub"))
    finally:
        await pubsub.unsubscribe(CENTER_CHANNEL, ALERT_CHANNEL)
        await pubsub.aclose()
        await redis.aclose()
