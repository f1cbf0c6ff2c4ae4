"""Session subscriptions — one watch per table for one live user session.

Learn: A SessionSubscriptions owns every change-feed registration of one
session. It is the only thing that opens or closes them:

  activate(user)  → close whatever is open, then open one subscription
                    per watched table scoped to `user`
  activate(None)  → same as close()
  close()         → stop dispatch now, then unregister everything

Stopping dispatch is synchronous: each handler carries the generation it
was opened in, and close()/activate() bump the generation before their
first await. A stale handler still fires if the source already had it
queued, but it drops the event instead of dispatching it.

A table that fails to open is logged and skipped; the others still open.
There is no retry loop, the next session start tries again.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import structlog

from taskpulse.realtime.cache import QueryCache
from taskpulse.realtime.events import ChangeEvent, TableName
from taskpulse.realtime.invalidation import InvalidationRouter
from taskpulse.realtime.notices import NoticeSink
from taskpulse.realtime.notifications import (
    NoticeDurations,
    NotificationDispatcher,
    WriteClaims,
)
from taskpulse.realtime.overdue import OverdueLookup, OverdueTaskMonitor
from taskpulse.realtime.source import ChangeSource, SubscriptionHandle, UserScope
from taskpulse.services.notification_log import NotificationLog

logger = structlog.get_logger()

WATCHED_TABLES: tuple[TableName, ...] = (
    TableName.PROJECTS,
    TableName.TASKS,
    TableName.GOALS,
    TableName.PROJECT_MEMBERS,
    TableName.PROJECT_INVITES,
    TableName.CHECKLIST_ITEMS,
    TableName.NOTIFICATIONS,
)


@dataclass
class SessionStats:
    dispatched: int = 0
    dropped: int = 0  # arrived after teardown began
    handler_errors: int = 0
    open_failures: int = 0


class SessionSubscriptions:
    def __init__(
        self,
        source: ChangeSource,
        router: InvalidationRouter,
        notifier: NotificationDispatcher,
        tables: tuple[TableName, ...] = WATCHED_TABLES,
    ):
        self.source = source
        self.router = router
        self.notifier = notifier
        self.tables = tables
        self.stats = SessionStats()
        self._user_id: Optional[str] = None
        self._handles: list[SubscriptionHandle] = []
        self._generation = 0
        self._lock = asyncio.Lock()

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def open_tables(self) -> list[TableName]:
        return [h.table for h in self._handles]

    async def activate(self, user_id: Optional[str]) -> None:
        self._generation += 1
        generation = self._generation

        async with self._lock:
            await self._release()
            if not user_id or generation != self._generation:
                return

            self._user_id = user_id
            scope = UserScope(user_id)
            for table in self.tables:
                try:
                    handle = await self.source.subscribe(
                        table, scope, self._handler_for(generation, user_id)
                    )
                except Exception as e:
                    self.stats.open_failures += 1
                    logger.warning(
                        "realtime.subscription_open_failed",
                        table=table.value,
                        user_id=user_id,
                        error=str(e),
                    )
                    continue
                self._handles.append(handle)
                if generation != self._generation:
                    # Superseded mid-open; the newer call releases what we hold.
                    break

            logger.info(
                "realtime.session_subscribed",
                user_id=user_id,
                tables=[t.value for t in self.open_tables],
                failed=len(self.tables) - len(self._handles),
            )

    async def close(self) -> None:
        self._generation += 1
        async with self._lock:
            await self._release()
        await self.notifier.drain()

    async def __aenter__(self) -> "SessionSubscriptions":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def get_stats(self) -> dict:
        return {
            "user_id": self._user_id,
            "tables": [t.value for t in self.open_tables],
            "dispatched": self.stats.dispatched,
            "dropped": self.stats.dropped,
            "handler_errors": self.stats.handler_errors,
            "open_failures": self.stats.open_failures,
        }

    # ─── Internals ────────────────────────────────────────

    def _handler_for(self, generation: int, user_id: str):
        def on_event(event: ChangeEvent) -> None:
            if generation != self._generation:
                self.stats.dropped += 1
                return
            self._dispatch(event, user_id)

        return on_event

    def _dispatch(self, event: ChangeEvent, user_id: str) -> None:
        """Route one event. Failures stay inside this event."""
        try:
            self.router.route(event, user_id)
            self.notifier.dispatch(event, user_id)
            self.stats.dispatched += 1
        except Exception:
            self.stats.handler_errors += 1
            logger.exception(
                "realtime.event_handler_failed",
                table=event.table,
                operation=event.operation.value,
                user_id=user_id,
            )

    async def _release(self) -> None:
        handles, self._handles = self._handles, []
        user_id, self._user_id = self._user_id, None
        for handle in handles:
            try:
                await self.source.unsubscribe(handle)
            except Exception as e:
                logger.warning(
                    "realtime.unsubscribe_failed",
                    table=handle.table.value,
                    error=str(e),
                )
        if handles:
            logger.info("realtime.session_released", user_id=user_id, count=len(handles))


@asynccontextmanager
async def open_user_session(
    user_id: str,
    source: ChangeSource,
    notices: NoticeSink,
    *,
    cache: Optional[QueryCache] = None,
    log: Optional[NotificationLog] = None,
    durations: NoticeDurations = NoticeDurations(),
    claims: Optional[WriteClaims] = None,
    overdue_lookup: Optional[OverdueLookup] = None,
    overdue_interval: float = 300.0,
):
    """Wire up and run everything one user session needs.

    Learn: Scoped acquisition — subscriptions open on enter and are
    guaranteed to close on exit, even if the body raises.
    """
    cache = cache or QueryCache()
    notifier = NotificationDispatcher(notices, log, durations, claims)
    subs = SessionSubscriptions(source, InvalidationRouter(cache), notifier)
    monitor = None
    if overdue_lookup is not None:
        monitor = OverdueTaskMonitor(
            user_id, notifier, overdue_lookup, interval=overdue_interval
        )

    await subs.activate(user_id)
    if monitor:
        monitor.start()
    try:
        yield subs
    finally:
        if monitor:
            await monitor.stop()
        await subs.close()
        await cache.close()
