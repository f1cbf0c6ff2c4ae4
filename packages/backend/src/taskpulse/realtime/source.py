"""Change-event source — PG LISTEN/NOTIFY feed of row changes.

Learn: The table triggers (see db/migrations) fire
pg_notify('table_changes', {table, operation, before, after, audience})
for every INSERT/UPDATE/DELETE on a watched table. `audience` is the list
of user ids allowed to see the row: the owner plus, for shared entities,
every member of the owning project. Scoping is done by the trigger, so a
subscription only has to check "is my user in the audience?".

One asyncpg connection LISTENs for the whole process. Subscriptions are
cheap in-memory registrations on top of it, which gives us:
- per-table FIFO (one connection, callbacks run in arrival order)
- O(subscribers of that table) fan-out per notification
- no Postgres round trip for subscribe/unsubscribe once connected
"""

import itertools
import json
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol

import asyncpg
import structlog

from taskpulse.realtime.events import ChangeDecodeError, ChangeEvent, TableName, decode_change

logger = structlog.get_logger()

EventHandler = Callable[[ChangeEvent], None]


class SubscriptionOpenError(Exception):
    """Raised when a table watch can't be registered with the change feed."""


@dataclass(frozen=True)
class UserScope:
    """Restricts a subscription to rows visible to one user."""

    user_id: str

    def matches(self, audience: Iterable[str]) -> bool:
        return self.user_id in audience


@dataclass(eq=False)
class SubscriptionHandle:
    """Opaque token returned by subscribe(); pass it back to unsubscribe()."""

    id: int
    table: TableName
    scope: UserScope
    handler: EventHandler


class ChangeSource(Protocol):
    """What the subscription manager needs from a change feed."""

    async def subscribe(
        self, table: TableName, scope: UserScope, on_event: EventHandler
    ) -> SubscriptionHandle: ...

    async def unsubscribe(self, handle: SubscriptionHandle) -> None: ...


@dataclass
class SourceStats:
    """Runtime statistics for monitoring."""
    received: int = 0
    delivered: int = 0
    malformed: int = 0
    handler_errors: int = 0


class PostgresChangeSource:
    """Change feed backed by a single asyncpg LISTEN connection."""

    def __init__(self, database_url: str, channel: str = "table_changes"):
        self.database_url = database_url
        self.channel = channel
        self.stats = SourceStats()
        self._conn: Optional[asyncpg.Connection] = None
        self._handles: dict[TableName, dict[int, SubscriptionHandle]] = {}
        self._ids = itertools.count(1)

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._conn.is_closed()

    async def start(self) -> None:
        """Connect and start LISTENing on the change channel."""
        self._conn = await asyncpg.connect(self.database_url)
        await self._conn.add_listener(self.channel, self._on_notification)
        logger.info("realtime.source_listening", channel=self.channel)

    async def stop(self) -> None:
        """Stop listening. Registered handlers receive nothing afterwards."""
        self._handles.clear()
        if self._conn is not None:
            try:
                if not self._conn.is_closed():
                    await self._conn.remove_listener(self.channel, self._on_notification)
            finally:
                await self._conn.close()
                self._conn = None
        logger.info("realtime.source_stopped", **self.get_stats())

    async def subscribe(
        self, table: TableName, scope: UserScope, on_event: EventHandler
    ) -> SubscriptionHandle:
        if not self.connected:
            raise SubscriptionOpenError(
                f"change feed not connected, cannot watch {table.value}"
            )
        handle = SubscriptionHandle(
            id=next(self._ids), table=table, scope=scope, handler=on_event
        )
        self._handles.setdefault(table, {})[handle.id] = handle
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        self._handles.get(handle.table, {}).pop(handle.id, None)

    def subscriber_count(self, table: Optional[TableName] = None) -> int:
        if table is not None:
            return len(self._handles.get(table, {}))
        return sum(len(h) for h in self._handles.values())

    # ─── PG LISTEN handler ────────────────────────────────

    def _on_notification(self, conn, pid, channel, payload):
        """Called by asyncpg for every NOTIFY on the change channel.

        Learn: This is a synchronous callback. Every matching handler runs
        to completion here, in arrival order, before asyncpg hands us the
        next notification.
        """
        self.stats.received += 1
        try:
            raw = json.loads(payload)
            table = TableName(raw["table"])
            audience = raw.get("audience") or []
            if not isinstance(audience, list):
                raise TypeError(f"audience must be a list, got {type(audience).__name__}")
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("realtime.malformed_notification", error=str(e))
            self.stats.malformed += 1
            return

        targets = [
            h for h in self._handles.get(table, {}).values()
            if h.scope.matches(audience)
        ]
        if not targets:
            return

        try:
            event = decode_change(raw)
        except ChangeDecodeError as e:
            logger.warning(
                "realtime.undecodable_change", table=table.value, error=str(e)
            )
            self.stats.malformed += 1
            return

        for handle in targets:
            # A handler may have torn down other subscriptions.
            if handle.id not in self._handles.get(table, {}):
                continue
            try:
                handle.handler(event)
                self.stats.delivered += 1
            except Exception:
                logger.exception(
                    "realtime.handler_failed",
                    table=table.value,
                    user_id=handle.scope.user_id,
                )
                self.stats.handler_errors += 1

    def get_stats(self) -> dict:
        return {
            "received": self.stats.received,
            "delivered": self.stats.delivered,
            "malformed": self.stats.malformed,
            "handler_errors": self.stats.handler_errors,
            "subscribers": self.subscriber_count(),
        }
