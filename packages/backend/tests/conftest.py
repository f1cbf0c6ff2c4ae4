"""Test fixtures — in-memory stand-ins for the realtime collaborators.

Learn: The realtime core only talks to four things: a change source, a
query cache, a notice sink and a notification log. Each gets a small fake
here that records what it was asked to do, so tests assert on behavior
without Postgres or Redis running.

The HTTP `client` fixture drives the real FastAPI app through httpx's
ASGITransport. Lifespan doesn't run under ASGITransport, so the app sees
Redis and the change feed as "not connected".
"""

import asyncio
import itertools
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from taskpulse.realtime.events import TableName, decode_change
from taskpulse.realtime.source import SubscriptionHandle, SubscriptionOpenError
from taskpulse.services.notification_log import NotificationRecord, NotificationWriteError

USER = "11111111-1111-1111-1111-111111111111"
OTHER_USER = "22222222-2222-2222-2222-222222222222"


# ─── Fakes ────────────────────────────────────────────────


class FakeChangeSource:
    """Change source that delivers whatever the test emits."""

    def __init__(self, fail_tables=()):
        self.fail_tables = set(fail_tables)
        self.open: dict[int, SubscriptionHandle] = {}
        self.ever_opened: list[SubscriptionHandle] = []
        self.unsubscribed: list[SubscriptionHandle] = []
        self._ids = itertools.count(1)

    async def subscribe(self, table, scope, on_event):
        if table in self.fail_tables:
            raise SubscriptionOpenError(f"transport unavailable for {table.value}")
        handle = SubscriptionHandle(
            id=next(self._ids), table=table, scope=scope, handler=on_event
        )
        self.open[handle.id] = handle
        self.ever_opened.append(handle)
        return handle

    async def unsubscribe(self, handle):
        self.unsubscribed.append(handle)
        self.open.pop(handle.id, None)

    def open_tables(self) -> list[TableName]:
        return [h.table for h in self.open.values()]

    def emit(self, payload: dict, *, include_closed: bool = False) -> None:
        """Deliver one change. include_closed also hits released handlers,
        like a feed that keeps firing after unsubscribe."""
        event = decode_change(payload)
        targets = self.ever_opened if include_closed else list(self.open.values())
        for handle in targets:
            if handle.table.value == event.table:
                handle.handler(event)


class RecordingCache:
    def __init__(self):
        self.invalidated: list[tuple[str, str]] = []

    def invalidate(self, key):
        self.invalidated.append(key)


class FakeNoticeSink:
    def __init__(self):
        self.shown = []

    def show(self, user_id, notice):
        self.shown.append((user_id, notice))

    @property
    def titles(self) -> list[str]:
        return [n.title for _, n in self.shown]


class FakeNotificationLog:
    def __init__(self, fail: bool = False, gate: Optional[asyncio.Event] = None):
        self.fail = fail
        self.gate = gate
        self.records: list[NotificationRecord] = []

    async def append(self, record: NotificationRecord) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise NotificationWriteError("database is read-only")
        self.records.append(record)


# ─── Change payload builders ──────────────────────────────


def change(table: str, operation: str, before=None, after=None) -> dict:
    return {
        "table": table,
        "operation": operation,
        "before": before,
        "after": after,
        "audience": [USER],
    }


def goal_update(before_progress, after_progress, goal_id="g-1", name="Run a marathon"):
    return change(
        "goals",
        "UPDATE",
        before={"id": goal_id, "name": name, "progress": before_progress},
        after={"id": goal_id, "name": name, "progress": after_progress},
    )


def task_update(before_status, after_status, task_id="t-1", title="Write report"):
    return change(
        "tasks",
        "UPDATE",
        before={"id": task_id, "title": title, "status": before_status},
        after={"id": task_id, "title": title, "status": after_status},
    )


def checklist_insert(item_id="c-1", task_id="t-1"):
    return change(
        "checklist_items",
        "INSERT",
        after={"id": item_id, "task_id": task_id, "text": "Outline", "completed": False},
    )


async def settle(rounds: int = 10) -> None:
    """Let scheduled background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ─── Fixtures ─────────────────────────────────────────────


@pytest.fixture()
def source():
    return FakeChangeSource()


@pytest.fixture()
def cache():
    return RecordingCache()


@pytest.fixture()
def notices():
    return FakeNoticeSink()


@pytest.fixture()
def notification_log():
    return FakeNotificationLog()


@pytest_asyncio.fixture()
async def client():
    """HTTP client against the real app (no lifespan, so nothing connected)."""
    from taskpulse.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
