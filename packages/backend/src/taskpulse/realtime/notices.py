"""UI notice sinks — where toasts go.

Learn: show() is fire-and-forget by contract. The dispatcher calls it
from inside a change-feed callback and never waits for delivery.

- RedisNoticeSink  → publishes notice.shown on the session's channel; the
  WebSocket forwards it and the frontend renders the toast.
- ConsoleNoticeSink → prints to the terminal (used by `taskpulse listen`).
"""

from enum import Enum
from typing import Protocol

import click
from pydantic import BaseModel, Field

from taskpulse.events.types import NOTICE_SHOWN
from taskpulse.realtime.pubsub import publish_soon


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Notice(BaseModel):
    title: str
    message: str = ""
    severity: Severity = Severity.INFO
    duration_ms: int = Field(default=5000, ge=0)


class NoticeSink(Protocol):
    def show(self, user_id: str, notice: Notice) -> None: ...


class RedisNoticeSink:
    """Publishes notices to one session's Redis channel in the background."""

    def __init__(self, channel: str):
        self.channel = channel

    def show(self, user_id: str, notice: Notice) -> None:
        publish_soon(self.channel, NOTICE_SHOWN, notice.model_dump(mode="json"))


_COLORS = {
    Severity.INFO: "blue",
    Severity.SUCCESS: "green",
    Severity.WARNING: "yellow",
    Severity.ERROR: "red",
}


class ConsoleNoticeSink:
    def show(self, user_id: str, notice: Notice) -> None:
        click.secho(f"● {notice.title}", fg=_COLORS[notice.severity], bold=True)
        if notice.message:
            click.echo(f"  {notice.message}")
