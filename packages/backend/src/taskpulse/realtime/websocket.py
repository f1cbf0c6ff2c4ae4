"""WebSocket endpoint — one realtime session per connected browser tab.

Learn: Each client connects to /ws/{user_id}?token=JWT. The handler:
1. Authenticates via JWT query param (required outside development)
2. Opens the user's session subscriptions (change feed → cache + notices)
3. Forwards everything on this socket's own Redis channel to it
   (cache.invalidated hints, notice.shown toasts)
4. Closes the session subscriptions when the client goes away

The socket's lifetime IS the session: connect = session start,
disconnect = session end.
"""

import asyncio
import json
import uuid

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from redis.exceptions import RedisError
from starlette.websockets import WebSocketState

from taskpulse.config import settings
from taskpulse.db.engine import async_session_factory
from taskpulse.events.types import CACHE_INVALIDATED, PONG, SESSION_READY
from taskpulse.realtime.cache import QueryCache
from taskpulse.realtime.notices import RedisNoticeSink
from taskpulse.realtime.notifications import NoticeDurations
from taskpulse.realtime.overdue import sql_overdue_lookup
from taskpulse.realtime.pubsub import get_redis, publish_soon, session_channel
from taskpulse.realtime.subscriptions import open_user_session
from taskpulse.services.notification_log import SqlNotificationLog

logger = structlog.get_logger()
router = APIRouter()


@router.websocket("/ws/{user_id}")
async def session_websocket(websocket: WebSocket, user_id: str):
    """WebSocket endpoint for one user's realtime session.

    Learn: Two concurrent tasks run:
    1. Redis listener — reads from pub/sub, sends to WebSocket
    2. Client listener — answers pings, notices disconnects

    When either side finishes, both tasks are cancelled and the
    session's subscriptions are released.
    """
    # ── Authentication ──────────────────────────────────────
    token = websocket.query_params.get("token")

    if not token and settings.environment != "development":
        await websocket.close(code=4001, reason="Authentication required")
        return

    if token:
        from taskpulse.auth.jwt import TokenError, session_user_id

        try:
            token_user = session_user_id(token)
        except TokenError:
            await websocket.close(code=4001, reason="Invalid or expired token")
            return
        if token_user != user_id:
            await websocket.close(code=4003, reason="Token does not match user")
            return

    try:
        r = get_redis()
    except RuntimeError:
        await websocket.close(code=1011, reason="Realtime unavailable")
        return

    # ── Connection accepted ─────────────────────────────────
    await websocket.accept()

    channel = session_channel(user_id, uuid.uuid4().hex)
    pubsub = r.pubsub()

    cache = QueryCache()
    cache.add_listener(
        lambda key: publish_soon(channel, CACHE_INVALIDATED, {"key": list(key)})
    )

    async def redis_listener():
        """Forward Redis messages to the WebSocket client."""
        try:
            async for message in pubsub.listen():
                if message["type"] == "message":
                    await websocket.send_text(message["data"])
        except asyncio.CancelledError:
            pass

    async def client_listener():
        try:
            while True:
                data = await websocket.receive_text()
                try:
                    msg = json.loads(data)
                    if msg.get("type") == "ping":
                        await websocket.send_text(json.dumps({"type": PONG}))
                except json.JSONDecodeError:
                    pass
        except (WebSocketDisconnect, asyncio.CancelledError):
            pass

    log = SqlNotificationLog(async_session_factory) if settings.persist_notices else None
    close_code = 1000

    try:
        await pubsub.subscribe(channel)

        async with open_user_session(
            user_id,
            websocket.app.state.change_source,
            RedisNoticeSink(channel),
            cache=cache,
            log=log,
            durations=NoticeDurations.from_settings(settings),
            claims=websocket.app.state.write_claims,
            overdue_lookup=sql_overdue_lookup(async_session_factory),
            overdue_interval=settings.overdue_check_interval_seconds,
        ) as subs:
            await websocket.send_text(json.dumps({
                "type": SESSION_READY,
                "tables": [t.value for t in subs.open_tables],
            }))

            redis_task = asyncio.create_task(redis_listener())
            client_task = asyncio.create_task(client_listener())

            # Wait for either to finish (usually client disconnect)
            done, pending = await asyncio.wait(
                [redis_task, client_task],
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

            logger.info("realtime.session_ended", **subs.get_stats())
    except RedisError as e:
        logger.warning("realtime.session_redis_failed", user_id=user_id, error=str(e))
        close_code = 1011
    finally:
        await pubsub.aclose()
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close(code=close_code)
