"""CLI tests — commands that don't need a running server."""

from click.testing import CliRunner

from conftest import USER, FakeNotificationLog
from taskpulse.cli.main import main
from taskpulse.services import notification_log


def test_send_persists_and_prints(monkeypatch):
    log = FakeNotificationLog()
    monkeypatch.setattr(notification_log, "SqlNotificationLog", lambda factory: log)

    result = CliRunner().invoke(
        main, ["send", USER, "Review the roadmap", "--type", "reminder", "--title", "Heads up"]
    )

    assert result.exit_code == 0, result.output
    [record] = log.records
    assert record.user_id == USER
    assert record.type == "reminder"
    assert record.message == "Review the roadmap"
    assert "Heads up" in result.output


def test_send_failure_exits_nonzero(monkeypatch):
    monkeypatch.setattr(
        notification_log, "SqlNotificationLog", lambda factory: FakeNotificationLog(fail=True)
    )
    result = CliRunner().invoke(main, ["send", USER, "Review the roadmap"])
    assert result.exit_code == 1


def test_token_prints_a_valid_token():
    from taskpulse.auth.jwt import session_user_id

    result = CliRunner().invoke(main, ["token", USER])
    assert result.exit_code == 0
    assert session_user_id(result.output.strip()) == USER
