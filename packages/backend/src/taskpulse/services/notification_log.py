"""Notification log — one-way persistence of shown notices.

Learn: The log is write-only from this service's point of view. The
dispatcher never reads it back and never waits on it before showing a
toast. A failed write surfaces as NotificationWriteError so the caller
can log it and move on.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from taskpulse.db.models import Notification


class NotificationWriteError(Exception):
    pass


@dataclass(frozen=True)
class NotificationRecord:
    user_id: str
    type: str
    message: str
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationLog(Protocol):
    async def append(self, record: NotificationRecord) -> None: ...


class SqlNotificationLog:
    """Appends records to the `notifications` table."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def append(self, record: NotificationRecord) -> None:
        try:
            user_id = uuid.UUID(record.user_id)
        except ValueError as e:
            raise NotificationWriteError(f"Invalid user id {record.user_id!r}") from e

        try:
            async with self.session_factory() as db:
                db.add(
                    Notification(
                        user_id=user_id,
                        type=record.type,
                        message=record.message,
                        scheduled_for=record.sent_at,
                        sent=True,
                    )
                )
                await db.commit()
        except (SQLAlchemyError, OSError) as e:
            raise NotificationWriteError(str(e)) from e
