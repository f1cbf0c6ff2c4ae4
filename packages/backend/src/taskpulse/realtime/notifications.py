"""Notification dispatcher — turns interesting changes into toasts.

Learn: Only two kinds of change are "interesting":
- goals UPDATE where progress moved   → GoalProgress (+ GoalCompleted
  when it crossed 100; both fire, completion doesn't hide the progress toast)
- tasks UPDATE that moved into `done` → TaskCompleted

derive_intents() is the pure part: event in, intents out. The dispatcher
does the side effects:
1. show the notice (fire-and-forget, never awaited)
2. persist it to the notification log as a detached task whose failure
   only reaches the log, never the caller

Persisted rows come back to us through the change feed as INSERTs on
`notifications`. Each write remembers its (type, message) so that exactly
one matching echo is swallowed instead of toasting twice. With several
tabs open, WriteClaims lets only one of them write.

send_notification() is the persist-first path for notices that don't come
from a change (`taskpulse send` on the CLI).
"""

import asyncio
import time
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import structlog

from taskpulse.realtime.events import (
    ChangeEvent,
    GoalChange,
    NotificationChange,
    Operation,
    TaskChange,
)
from taskpulse.realtime.notices import Notice, NoticeSink, Severity
from taskpulse.services.notification_log import (
    NotificationLog,
    NotificationRecord,
    NotificationWriteError,
)

logger = structlog.get_logger()

DONE = "done"
GOAL_COMPLETE_AT = 100


class NotificationKind(str, Enum):
    TASK_COMPLETED = "task_completed"
    GOAL_PROGRESS = "goal_progress"
    GOAL_COMPLETED = "goal_completed"
    TASK_OVERDUE = "task_overdue"
    INBOX = "inbox"


# notifications.type values written to the log
_LOG_TYPES = {
    NotificationKind.TASK_COMPLETED: "task_update",
    NotificationKind.GOAL_PROGRESS: "goal_progress",
    NotificationKind.GOAL_COMPLETED: "goal_progress",
    NotificationKind.TASK_OVERDUE: "task_due",
    NotificationKind.INBOX: "info",
}


@dataclass(frozen=True)
class NoticeDurations:
    goal_progress_ms: int = 4000
    goal_completed_ms: int = 6000
    task_completed_ms: int = 4000
    task_overdue_ms: int = 6000
    inbox_ms: int = 5000

    @classmethod
    def from_settings(cls, settings) -> "NoticeDurations":
        return cls(
            goal_progress_ms=settings.goal_progress_notice_ms,
            goal_completed_ms=settings.goal_completed_notice_ms,
            task_completed_ms=settings.task_completed_notice_ms,
            task_overdue_ms=settings.task_overdue_notice_ms,
            inbox_ms=settings.inbox_notice_ms,
        )


@dataclass(frozen=True)
class NotificationIntent:
    kind: NotificationKind
    subject_id: str
    title: str
    message: str
    severity: Severity
    duration_ms: int
    delta: Optional[float] = None

    @property
    def log_type(self) -> str:
        return _LOG_TYPES[self.kind]

    @property
    def summary(self) -> str:
        """Single-line text stored in the notification log."""
        return f"{self.title}: {self.message}" if self.message else self.title

    def to_notice(self) -> Notice:
        return Notice(
            title=self.title,
            message=self.message,
            severity=self.severity,
            duration_ms=self.duration_ms,
        )


def _pct(value: float) -> str:
    return f"{value:g}%"


def derive_intents(
    event: ChangeEvent, durations: NoticeDurations = NoticeDurations()
) -> list[NotificationIntent]:
    """Pure mapping from one change to the notices it deserves."""
    if event.operation is not Operation.UPDATE:
        return []
    if event.before is None or event.after is None:
        return []

    before, after = event.before, event.after
    intents: list[NotificationIntent] = []

    if isinstance(event, GoalChange):
        if after.progress != before.progress:
            delta = after.progress - before.progress
            intents.append(NotificationIntent(
                kind=NotificationKind.GOAL_PROGRESS,
                subject_id=after.id,
                title=f"Goal updated: {after.name}",
                message=f"Progress: {_pct(after.progress)} ({delta:+g})",
                severity=Severity.INFO,
                duration_ms=durations.goal_progress_ms,
                delta=delta,
            ))
            if before.progress < GOAL_COMPLETE_AT <= after.progress:
                intents.append(NotificationIntent(
                    kind=NotificationKind.GOAL_COMPLETED,
                    subject_id=after.id,
                    title=f"Goal completed: {after.name}!",
                    message="Congratulations on reaching your goal!",
                    severity=Severity.SUCCESS,
                    duration_ms=durations.goal_completed_ms,
                ))

    elif isinstance(event, TaskChange):
        if before.status != DONE and after.status == DONE:
            intents.append(NotificationIntent(
                kind=NotificationKind.TASK_COMPLETED,
                subject_id=after.id,
                title=f"Task completed: {after.title}",
                message="",
                severity=Severity.SUCCESS,
                duration_ms=durations.task_completed_ms,
            ))

    return intents


class WriteClaims:
    """Decides which of a user's sessions persists a notice.

    Learn: Every open tab derives the same intents from the same change.
    Only the first session to claim (user, type, message, subject) within
    `window` seconds writes the row; the others still expect its echo.
    Shared process-wide (see main.py).
    """

    def __init__(self, window: float = 5.0, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self.clock = clock
        self._claims: dict[tuple, float] = {}

    def claim(self, key: tuple) -> bool:
        now = self.clock()
        self._claims = {k: t for k, t in self._claims.items() if t > now}
        if key in self._claims:
            return False
        self._claims[key] = now + self.window
        return True


class NotificationDispatcher:
    def __init__(
        self,
        notices: NoticeSink,
        log: Optional[NotificationLog] = None,
        durations: NoticeDurations = NoticeDurations(),
        claims: Optional[WriteClaims] = None,
    ):
        self.notices = notices
        self.log = log
        self.durations = durations
        self.claims = claims
        self._writes: set[asyncio.Task] = set()
        self._echoes: Counter = Counter()

    def dispatch(self, event: ChangeEvent, user_id: str) -> list[NotificationIntent]:
        """Show (and log) every notice the event deserves. Returns the intents."""
        if isinstance(event, NotificationChange):
            return self._inbox(event, user_id)

        intents = derive_intents(event, self.durations)
        for intent in intents:
            self.notify(user_id, intent)
        return intents

    def notify(
        self, user_id: str, intent: NotificationIntent, *, persist: bool = True
    ) -> None:
        """Show one intent now; persist it in the background."""
        self.notices.show(user_id, intent.to_notice())
        if persist and self.log is not None:
            record = NotificationRecord(
                user_id=user_id, type=intent.log_type, message=intent.summary
            )
            # Whichever session writes, every session gets the INSERT echo.
            self._echoes[(record.type, record.message)] += 1
            claim = (user_id, record.type, record.message, intent.subject_id)
            if self.claims is not None and not self.claims.claim(claim):
                return
            task = asyncio.get_running_loop().create_task(self._write(record))
            self._writes.add(task)
            task.add_done_callback(self._write_finished)

    async def send_notification(
        self, user_id: str, type: str, title: str, message: str
    ) -> bool:
        """Persist a notification, then show it. Returns False if the write failed."""
        if self.log is None:
            raise RuntimeError("send_notification needs a notification log")

        record = NotificationRecord(user_id=user_id, type=type, message=message)
        key = (record.type, record.message)
        # The INSERT echo can arrive before append() returns.
        self._echoes[key] += 1
        try:
            await self.log.append(record)
        except NotificationWriteError as e:
            self._drop_echo(key)
            logger.warning(
                "notification.send_failed", user_id=user_id, type=type, error=str(e)
            )
            return False

        self.notices.show(
            user_id,
            Notice(
                title=title,
                message=message,
                severity=Severity.INFO,
                duration_ms=self.durations.inbox_ms,
            ),
        )
        return True

    async def drain(self) -> None:
        """Wait for in-flight log writes (used on session teardown)."""
        if self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    # ─── Internals ────────────────────────────────────────

    def _inbox(self, event: NotificationChange, user_id: str) -> list[NotificationIntent]:
        row = event.after
        if event.operation is not Operation.INSERT or row is None:
            return []
        if row.user_id != user_id or not row.message:
            return []

        key = (row.type, row.message)
        if self._echoes[key] > 0:
            self._drop_echo(key)
            return []

        intent = NotificationIntent(
            kind=NotificationKind.INBOX,
            subject_id=row.id,
            title=row.message,
            message="Reminder" if row.type == "reminder" else "New notification",
            severity=Severity.INFO,
            duration_ms=self.durations.inbox_ms,
        )
        # Already persisted, show only.
        self.notices.show(user_id, intent.to_notice())
        return [intent]

    def _drop_echo(self, key: tuple[str, str]) -> None:
        self._echoes[key] -= 1
        if self._echoes[key] <= 0:
            del self._echoes[key]

    async def _write(self, record: NotificationRecord) -> None:
        try:
            await self.log.append(record)
        except NotificationWriteError as e:
            self._drop_echo((record.type, record.message))
            logger.warning(
                "notification.write_failed",
                user_id=record.user_id,
                type=record.type,
                error=str(e),
            )

    def _write_finished(self, task: asyncio.Task) -> None:
        self._writes.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("notification.write_crashed", exc_info=exc)
