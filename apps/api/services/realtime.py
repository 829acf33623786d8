"""Row-level asset change notifications over Redis pub/sub."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "padlox:assets"
CHANGE_TYPES = ("INSERT", "UPDATE", "DELETE")


def channel_for_user(user_id: str) -> str:
    return f"{CHANNEL_PREFIX}:{user_id}"


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


async def publish_asset_change(
    user_id: str,
    asset_id: str,
    change_type: str = "UPDATE",
    fields: Optional[Dict[str, Any]] = None,
) -> bool:
    """Publish a change for the owner's feed. Best effort: failures are logged."""
    if not settings.REALTIME_ENABLED:
        return False
    if change_type not in CHANGE_TYPES:
        raise ValueError(f"Unsupported change type: {change_type}")

    message = json.dumps(
        {
            "type": change_type,
            "asset_id": asset_id,
            "fields": {key: _jsonable(value) for key, value in (fields or {}).items()},
            "at": datetime.now(timezone.utc).isoformat(),
        }
    )
    try:
        client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        try:
            await client.publish(channel_for_user(user_id), message)
        finally:
            await client.aclose()
        return True
    except Exception as exc:
        logger.warning("Realtime publish for asset %s skipped: %s", asset_id, exc)
        return False


async def stream_asset_changes(user_id: str) -> AsyncIterator[str]:
    """Yield server-sent-event frames for one owner's asset changes."""
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    pubsub = client.pubsub()
    await pubsub.subscribe(channel_for_user(user_id))
    try:
        yield "event: ready\ndata: {}\n\n"
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            yield f"event: asset\ndata: {message.get('data')}\n\n"
    finally:
        await pubsub.unsubscribe(channel_for_user(user_id))
        await pubsub.aclose()
        await client.aclose()
