"""Redis pub/sub — pushes session messages out to WebSocket handlers.

Learn: Redis pub/sub is fire-and-forget. If no one is listening, the message
is lost. That's fine here: everything we publish (stale-cache hints, toasts)
is ephemeral, and the frontend can always refetch to catch up.

Channel naming: taskpulse:events:{user_id}:{session_id}
Each WebSocket (one browser tab) subscribes to its own channel only.
"""

import asyncio
import json
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog

from taskpulse.config import settings

logger = structlog.get_logger()

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


def session_channel(user_id: str, session_id: str) -> str:
    """One channel per socket, so a user's tabs never see each other's toasts."""
    return f"taskpulse:events:{user_id}:{session_id}"


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    _redis = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Verify connection
    await _redis.ping()
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


async def publish_event(
    channel: str,
    event_type: str,
    data: dict[str, Any],
) -> None:
    """Publish an event to one session's Redis channel."""
    r = get_redis()
    payload = json.dumps({
        "type": event_type,
        **data,
    })
    await r.publish(channel, payload)


# Strong refs so background publishes aren't garbage-collected mid-flight.
_pending: set[asyncio.Task] = set()


def publish_soon(channel: str, event_type: str, data: dict[str, Any]) -> None:
    """Fire-and-forget publish_event() for synchronous callers.

    Failures (e.g. Redis down) are logged, never raised.
    """
    task = asyncio.get_running_loop().create_task(
        publish_event(channel, event_type, data)
    )
    _pending.add(task)
    task.add_done_callback(_publish_finished)


def _publish_finished(task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("realtime.publish_failed", error=str(exc))
