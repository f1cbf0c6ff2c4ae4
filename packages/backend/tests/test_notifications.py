"""Notification dispatcher tests — which changes toast, and what gets logged.

Learn: derive_intents() is pure, so most rules are tested without any
sink at all. Dispatcher tests then check the side effects: the toast is
shown right away, the log write happens later, and write failures never
reach the caller.
"""

import asyncio

import pytest
from structlog.testing import capture_logs

from conftest import (
    OTHER_USER,
    USER,
    FakeNoticeSink,
    FakeNotificationLog,
    change,
    checklist_insert,
    goal_update,
    settle,
    task_update,
)
from taskpulse.realtime.events import decode_change
from taskpulse.realtime.notices import Severity
from taskpulse.realtime.notifications import (
    NoticeDurations,
    NotificationDispatcher,
    NotificationKind,
    WriteClaims,
    derive_intents,
)


def intents_for(payload, durations=NoticeDurations()):
    return derive_intents(decode_change(payload), durations)


def inbox_insert(message="Standup in 10 minutes", type="reminder", user_id=USER):
    return change(
        "notifications", "INSERT",
        after={"id": "n-1", "user_id": user_id, "type": type, "message": message},
    )


# ─── derive_intents ───────────────────────────────────────


def test_goal_progress_notice():
    [intent] = intents_for(goal_update(40, 55))
    assert intent.kind is NotificationKind.GOAL_PROGRESS
    assert intent.title == "Goal updated: Run a marathon"
    assert intent.message == "Progress: 55% (+15)"
    assert intent.severity is Severity.INFO
    assert intent.duration_ms == 4000
    assert intent.delta == 15


def test_goal_regression_reports_negative_delta():
    [intent] = intents_for(goal_update(60, 45))
    assert intent.kind is NotificationKind.GOAL_PROGRESS
    assert intent.delta == -15
    assert "(-15)" in intent.message


def test_goal_unchanged_progress_is_silent():
    assert intents_for(goal_update(30, 30)) == []


def test_goal_reaching_100_fires_progress_and_completion():
    progress, completed = intents_for(goal_update(90, 100))
    assert progress.kind is NotificationKind.GOAL_PROGRESS
    assert completed.kind is NotificationKind.GOAL_COMPLETED
    assert completed.title == "Goal completed: Run a marathon!"
    assert completed.severity is Severity.SUCCESS
    assert completed.duration_ms == 6000


def test_goal_already_complete_does_not_complete_again():
    intents = intents_for(goal_update(100, 110))
    assert [i.kind for i in intents] == [NotificationKind.GOAL_PROGRESS]


def test_task_moving_to_done():
    [intent] = intents_for(task_update("in_progress", "done"))
    assert intent.kind is NotificationKind.TASK_COMPLETED
    assert intent.title == "Task completed: Write report"
    assert intent.severity is Severity.SUCCESS
    assert intent.summary == "Task completed: Write report"


def test_task_already_done_is_silent():
    assert intents_for(task_update("done", "done")) == []


def test_task_reopened_is_silent():
    assert intents_for(task_update("done", "todo")) == []


def test_inserts_and_deletes_are_silent():
    assert intents_for(checklist_insert()) == []
    assert intents_for(change(
        "goals", "DELETE", before={"id": "g-1", "name": "x", "progress": 100},
    )) == []
    assert intents_for(change(
        "tasks", "INSERT", after={"id": "t-9", "title": "New", "status": "done"},
    )) == []


def test_custom_durations():
    durations = NoticeDurations(goal_progress_ms=1000, goal_completed_ms=2000)
    progress, completed = intents_for(goal_update(0, 100), durations)
    assert progress.duration_ms == 1000
    assert completed.duration_ms == 2000


# ─── Dispatcher ───────────────────────────────────────────


@pytest.mark.asyncio
async def test_dispatch_shows_then_logs(notices, notification_log):
    dispatcher = NotificationDispatcher(notices, notification_log)
    dispatcher.dispatch(decode_change(task_update("todo", "done")), USER)

    # Shown synchronously, logged in the background
    assert notices.titles == ["Task completed: Write report"]
    assert notification_log.records == []

    await dispatcher.drain()
    [record] = notification_log.records
    assert record.user_id == USER
    assert record.type == "task_update"
    assert record.message == "Task completed: Write report"


@pytest.mark.asyncio
async def test_dispatch_without_log_only_shows(notices):
    dispatcher = NotificationDispatcher(notices)
    intents = dispatcher.dispatch(decode_change(goal_update(0, 100)), USER)
    assert len(intents) == 2
    assert len(notices.shown) == 2


@pytest.mark.asyncio
async def test_toast_not_blocked_by_slow_log(notices):
    gate = asyncio.Event()
    log = FakeNotificationLog(gate=gate)
    dispatcher = NotificationDispatcher(notices, log)

    dispatcher.dispatch(decode_change(goal_update(10, 20)), USER)
    await settle()
    assert len(notices.shown) == 1
    assert log.records == []

    gate.set()
    await dispatcher.drain()
    assert len(log.records) == 1


@pytest.mark.asyncio
async def test_write_failure_is_logged_not_raised(notices):
    log = FakeNotificationLog(fail=True)
    dispatcher = NotificationDispatcher(notices, log)

    with capture_logs() as logs:
        dispatcher.dispatch(decode_change(task_update("todo", "done")), USER)
        await dispatcher.drain()

    assert len(notices.shown) == 1
    failures = [e for e in logs if e["event"] == "notification.write_failed"]
    assert len(failures) == 1
    assert failures[0]["user_id"] == USER


@pytest.mark.asyncio
async def test_own_write_echo_is_swallowed_once(notices, notification_log):
    dispatcher = NotificationDispatcher(notices, notification_log)
    dispatcher.dispatch(decode_change(task_update("todo", "done")), USER)
    await dispatcher.drain()

    echo = inbox_insert(message="Task completed: Write report", type="task_update")
    assert dispatcher.dispatch(decode_change(echo), USER) == []
    assert len(notices.shown) == 1

    # A second identical row is somebody else's write
    dispatcher.dispatch(decode_change(echo), USER)
    assert len(notices.shown) == 2


@pytest.mark.asyncio
async def test_failed_write_leaves_no_echo(notices):
    dispatcher = NotificationDispatcher(notices, FakeNotificationLog(fail=True))
    dispatcher.dispatch(decode_change(task_update("todo", "done")), USER)
    await dispatcher.drain()

    echo = inbox_insert(message="Task completed: Write report", type="task_update")
    dispatcher.dispatch(decode_change(echo), USER)
    assert len(notices.shown) == 2


def test_inbox_row_shown(notices):
    dispatcher = NotificationDispatcher(notices)
    [intent] = dispatcher.dispatch(decode_change(inbox_insert()), USER)

    assert intent.kind is NotificationKind.INBOX
    _, notice = notices.shown[0]
    assert notice.title == "Standup in 10 minutes"
    assert notice.message == "Reminder"
    assert notice.duration_ms == 5000


def test_inbox_generic_type(notices):
    dispatcher = NotificationDispatcher(notices)
    dispatcher.dispatch(decode_change(inbox_insert(type="info")), USER)
    assert notices.shown[0][1].message == "New notification"


def test_inbox_ignores_other_users_and_empty_rows(notices):
    dispatcher = NotificationDispatcher(notices)
    dispatcher.dispatch(decode_change(inbox_insert(user_id=OTHER_USER)), USER)
    dispatcher.dispatch(decode_change(inbox_insert(message="")), USER)
    dispatcher.dispatch(decode_change(change(
        "notifications", "UPDATE",
        before={"id": "n-1", "user_id": USER, "type": "info", "message": "a"},
        after={"id": "n-1", "user_id": USER, "type": "info", "message": "a", "sent": True},
    )), USER)
    assert notices.shown == []


@pytest.mark.asyncio
async def test_send_notification_persists_then_shows(notices, notification_log):
    dispatcher = NotificationDispatcher(notices, notification_log)
    ok = await dispatcher.send_notification(USER, "reminder", "Heads up", "Review due")

    assert ok is True
    assert notification_log.records[0].message == "Review due"
    assert notices.titles == ["Heads up"]

    # Its own INSERT echo doesn't toast a second time
    dispatcher.dispatch(decode_change(inbox_insert(message="Review due")), USER)
    assert len(notices.shown) == 1


@pytest.mark.asyncio
async def test_send_notification_failure(notices):
    dispatcher = NotificationDispatcher(notices, FakeNotificationLog(fail=True))
    with capture_logs() as logs:
        ok = await dispatcher.send_notification(USER, "info", "Heads up", "Review due")

    assert ok is False
    assert notices.shown == []
    assert any(e["event"] == "notification.send_failed" for e in logs)


@pytest.mark.asyncio
async def test_send_notification_requires_log(notices):
    with pytest.raises(RuntimeError):
        await NotificationDispatcher(notices).send_notification(USER, "info", "a", "b")


# ─── Write claims (several tabs, one user) ────────────────


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_claims_first_wins_until_window_passes():
    clock = FakeClock()
    claims = WriteClaims(window=5.0, clock=clock)
    key = (USER, "task_update", "Task completed: Write report", "t-1")

    assert claims.claim(key) is True
    assert claims.claim(key) is False
    assert claims.claim((OTHER_USER,) + key[1:]) is True

    clock.now += 6
    assert claims.claim(key) is True


@pytest.mark.asyncio
async def test_second_session_shows_but_does_not_write(notification_log):
    claims = WriteClaims()
    tab_a, tab_b = FakeNoticeSink(), FakeNoticeSink()
    first = NotificationDispatcher(tab_a, notification_log, claims=claims)
    second = NotificationDispatcher(tab_b, notification_log, claims=claims)

    event = decode_change(task_update("todo", "done"))
    first.dispatch(event, USER)
    second.dispatch(event, USER)
    await first.drain()
    await second.drain()

    assert len(tab_a.shown) == 1
    assert len(tab_b.shown) == 1
    assert len(notification_log.records) == 1

    # Both sessions swallow the single echo
    echo = decode_change(inbox_insert(message="Task completed: Write report", type="task_update"))
    first.dispatch(echo, USER)
    second.dispatch(echo, USER)
    assert len(tab_a.shown) == 1
    assert len(tab_b.shown) == 1
