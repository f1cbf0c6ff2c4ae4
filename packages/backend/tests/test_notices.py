"""Notice sink and notification log tests."""

import pytest
from sqlalchemy.exc import OperationalError
from structlog.testing import capture_logs

from conftest import USER, settle
from taskpulse.realtime import pubsub
from taskpulse.realtime.notices import ConsoleNoticeSink, Notice, RedisNoticeSink, Severity
from taskpulse.realtime.pubsub import session_channel
from taskpulse.services.notification_log import (
    NotificationRecord,
    NotificationWriteError,
    SqlNotificationLog,
)


def test_notice_rejects_negative_duration():
    with pytest.raises(ValueError):
        Notice(title="x", duration_ms=-1)


def test_console_sink_prints(capsys):
    ConsoleNoticeSink().show(USER, Notice(title="Task completed: Ship it", message="nice"))
    out = capsys.readouterr().out
    assert "Task completed: Ship it" in out
    assert "nice" in out


@pytest.mark.asyncio
async def test_redis_sink_never_raises_when_redis_down():
    """show() returns at once; the failed publish only reaches the log."""
    with capture_logs() as logs:
        sink = RedisNoticeSink(session_channel(USER, "tab-1"))
        sink.show(USER, Notice(title="Hi", severity=Severity.SUCCESS))
        await settle()
    assert any(e["event"] == "realtime.publish_failed" for e in logs)


@pytest.mark.asyncio
async def test_redis_sink_publishes_on_its_session_channel(monkeypatch):
    published = []

    async def record(channel, event_type, data):
        published.append((channel, event_type, data))

    monkeypatch.setattr(pubsub, "publish_event", record)
    RedisNoticeSink(session_channel(USER, "tab-1")).show(USER, Notice(title="Hi"))
    await settle()

    [(channel, event_type, data)] = published
    assert channel == f"taskpulse:events:{USER}:tab-1"
    assert event_type == "notice.shown"
    assert data["title"] == "Hi"


@pytest.mark.asyncio
async def test_sql_log_rejects_bad_user_id():
    log = SqlNotificationLog(lambda: None)
    with pytest.raises(NotificationWriteError):
        await log.append(NotificationRecord(user_id="not-a-uuid", type="info", message="x"))


@pytest.mark.asyncio
async def test_sql_log_wraps_database_errors():
    class BrokenSession:
        async def __aenter__(self):
            raise OperationalError("INSERT", {}, ConnectionError("refused"))

        async def __aexit__(self, *exc):
            return False

    log = SqlNotificationLog(BrokenSession)
    with pytest.raises(NotificationWriteError):
        await log.append(NotificationRecord(user_id=USER, type="info", message="x"))
