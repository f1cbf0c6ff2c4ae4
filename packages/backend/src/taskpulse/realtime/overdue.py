"""Overdue task monitor — periodic "you're late" notices per session.

Learn: The change feed only tells us about writes. A task becoming
overdue is not a write, it's the calendar moving, so this one runs on a
timer instead: check right away, then every N seconds (5 min default).
Each task is announced at most once per session.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from taskpulse.db.models import ProjectMember, Task
from taskpulse.realtime.notices import Severity
from taskpulse.realtime.notifications import (
    DONE,
    NotificationDispatcher,
    NotificationIntent,
    NotificationKind,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class OverdueTask:
    id: str
    title: str
    due_date: date


OverdueLookup = Callable[[str, date], Awaitable[list[OverdueTask]]]


def sql_overdue_lookup(session_factory: Callable[[], AsyncSession]) -> OverdueLookup:
    """Build a lookup that reads overdue tasks visible to the user."""

    async def lookup(user_id: str, today: date) -> list[OverdueTask]:
        uid = uuid.UUID(user_id)
        member_projects = select(ProjectMember.project_id).where(
            ProjectMember.user_id == uid
        )
        q = (
            select(Task.id, Task.title, Task.due_date)
            .where(
                Task.status != DONE,
                Task.due_date.is_not(None),
                Task.due_date < today,
                or_(Task.created_by == uid, Task.project_id.in_(member_projects)),
            )
            .order_by(Task.due_date)
        )
        async with session_factory() as db:
            result = await db.execute(q)
            return [
                OverdueTask(id=str(row.id), title=row.title, due_date=row.due_date)
                for row in result
            ]

    return lookup


class OverdueTaskMonitor:
    def __init__(
        self,
        user_id: str,
        notifier: NotificationDispatcher,
        lookup: OverdueLookup,
        *,
        interval: float = 300.0,
        today: Callable[[], date] = date.today,
    ):
        self.user_id = user_id
        self.notifier = notifier
        self.lookup = lookup
        self.interval = interval
        self.today = today
        self._notified: set[str] = set()
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def check_once(self) -> list[NotificationIntent]:
        """Announce overdue tasks not yet announced this session."""
        intents = []
        for task in await self.lookup(self.user_id, self.today()):
            if task.id in self._notified:
                continue
            self._notified.add(task.id)
            intent = NotificationIntent(
                kind=NotificationKind.TASK_OVERDUE,
                subject_id=task.id,
                title="Task overdue",
                message=f'"{task.title}" was due on {task.due_date.isoformat()}.',
                severity=Severity.WARNING,
                duration_ms=self.notifier.durations.task_overdue_ms,
            )
            self.notifier.notify(self.user_id, intent, persist=False)
            intents.append(intent)
        return intents

    async def run_loop(self) -> None:
        self._running = True
        while self._running:
            try:
                await self.check_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("overdue.check_failed", user_id=self.user_id)
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self.run_loop())

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
