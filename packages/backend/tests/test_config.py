"""Settings tests — change channel and production guard."""

import importlib.util
from pathlib import Path

import pytest
from pydantic import ValidationError

from taskpulse.config import Settings, settings

MIGRATION = next(
    (Path(__file__).parents[1] / "src/taskpulse/db/migrations/versions").glob(
        "*_table_change_notify_triggers.py"
    )
)


def test_change_channel_must_be_an_identifier():
    with pytest.raises(ValidationError):
        Settings(change_channel="table-changes; DROP TABLE tasks")


def test_default_secret_rejected_outside_development():
    with pytest.raises(ValidationError):
        Settings(environment="production")


def test_triggers_notify_the_configured_channel():
    spec = importlib.util.spec_from_file_location("notify_triggers", MIGRATION)
    migration = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(migration)

    assert migration.CHANNEL == settings.change_channel
    source = MIGRATION.read_text()
    assert "pg_notify(TG_ARGV[0]" in source
    assert "pg_notify('table_changes'" not in source
