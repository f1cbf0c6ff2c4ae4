"""TaskPulse CLI — run the realtime server, or watch one session in a terminal.

Usage:
    taskpulse serve                        # Run the API + WebSocket server
    taskpulse token <user-id>              # Mint a dev access token
    taskpulse listen <user-id>             # Print one user's live updates
    taskpulse send <user-id> <message>     # Write an inbox notification
    taskpulse health                       # Query a running server's health
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from typing import Optional

import click
import httpx

from taskpulse import __version__

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("TASKPULSE_API_URL", DEFAULT_API_URL).rstrip("/")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="taskpulse")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def main(verbose: bool):
    """TaskPulse — realtime cache invalidation and notices for the task tracker."""
    _configure_logging(verbose)


# ---------------------------------------------------------------------------
# taskpulse serve
# ---------------------------------------------------------------------------


@main.command()
@click.option("--host", default=None, help="Bind address (default: TASKPULSE_HOST)")
@click.option("--port", default=None, type=int, help="Port (default: TASKPULSE_PORT)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: Optional[str], port: Optional[int], reload: bool):
    """Run the realtime API server."""
    import uvicorn

    from taskpulse.config import settings

    uvicorn.run(
        "taskpulse.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )


# ---------------------------------------------------------------------------
# taskpulse token
# ---------------------------------------------------------------------------


@main.command()
@click.argument("user_id")
@click.option("--minutes", default=None, type=int, help="Lifetime in minutes")
def token(user_id: str, minutes: Optional[int]):
    """Mint an access token for USER_ID (development only)."""
    from taskpulse.auth.jwt import create_access_token
    from taskpulse.config import settings

    if settings.environment != "development":
        click.secho("Refusing to mint tokens outside development.", fg="red", err=True)
        sys.exit(1)
    click.echo(create_access_token(user_id, expires_minutes=minutes))


# ---------------------------------------------------------------------------
# taskpulse listen
# ---------------------------------------------------------------------------


@main.command()
@click.argument("user_id")
@click.option("--persist/--no-persist", default=False,
              help="Also write shown notices to the notification log")
@click.option("--overdue/--no-overdue", default=True,
              help="Periodically announce overdue tasks")
def listen(user_id: str, persist: bool, overdue: bool):
    """Open a realtime session for USER_ID and print what it receives."""
    asyncio.run(_listen_impl(user_id, persist, overdue))


async def _listen_impl(user_id: str, persist: bool, overdue: bool):
    import asyncpg

    from taskpulse.config import settings
    from taskpulse.db.engine import async_session_factory, engine, listen_dsn
    from taskpulse.realtime.cache import QueryCache
    from taskpulse.realtime.notices import ConsoleNoticeSink
    from taskpulse.realtime.notifications import NoticeDurations
    from taskpulse.realtime.overdue import sql_overdue_lookup
    from taskpulse.realtime.source import PostgresChangeSource
    from taskpulse.realtime.subscriptions import open_user_session
    from taskpulse.services.notification_log import SqlNotificationLog

    source = PostgresChangeSource(
        listen_dsn(settings.database_url), channel=settings.change_channel
    )
    try:
        await source.start()
    except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as e:
        click.secho(f"Cannot reach the change feed: {e}", fg="red", err=True)
        sys.exit(1)

    cache = QueryCache()
    cache.add_listener(
        lambda key: click.secho(f"  stale: {key[0]}", fg="cyan", dim=True)
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        async with open_user_session(
            user_id,
            source,
            ConsoleNoticeSink(),
            cache=cache,
            log=SqlNotificationLog(async_session_factory) if persist else None,
            durations=NoticeDurations.from_settings(settings),
            overdue_lookup=sql_overdue_lookup(async_session_factory) if overdue else None,
            overdue_interval=settings.overdue_check_interval_seconds,
        ) as subs:
            tables = ", ".join(t.value for t in subs.open_tables)
            click.secho(f"Listening for {user_id} on: {tables}", bold=True)
            click.echo("Ctrl-C to stop.")
            await stop.wait()
            click.echo()
            click.echo(json.dumps(subs.get_stats(), indent=2))
    finally:
        await source.stop()
        await engine.dispose()


# ---------------------------------------------------------------------------
# taskpulse send
# ---------------------------------------------------------------------------


@main.command()
@click.argument("user_id")
@click.argument("message")
@click.option("--title", default=None, help="Toast title (default: the message)")
@click.option("--type", "type_", default="info",
              type=click.Choice(["info", "reminder", "task_due", "task_update", "goal_progress"]),
              help="notifications.type of the row")
def send(user_id: str, message: str, title: Optional[str], type_: str):
    """Write a notification for USER_ID. Open sessions toast it from the feed."""
    asyncio.run(_send_impl(user_id, message, title or message, type_))


async def _send_impl(user_id: str, message: str, title: str, type_: str):
    from taskpulse.config import settings
    from taskpulse.db.engine import async_session_factory, engine
    from taskpulse.realtime.notices import ConsoleNoticeSink
    from taskpulse.realtime.notifications import NoticeDurations, NotificationDispatcher
    from taskpulse.services.notification_log import SqlNotificationLog

    dispatcher = NotificationDispatcher(
        ConsoleNoticeSink(),
        SqlNotificationLog(async_session_factory),
        NoticeDurations.from_settings(settings),
    )
    try:
        ok = await dispatcher.send_notification(user_id, type_, title, message)
    finally:
        await engine.dispose()
    if not ok:
        click.secho("Notification was not saved (see log).", fg="red", err=True)
        sys.exit(1)


# ---------------------------------------------------------------------------
# taskpulse health
# ---------------------------------------------------------------------------


@main.command()
def health():
    """Show a running server's health."""
    try:
        r = httpx.get(f"{_api_url()}/api/v1/health", timeout=10.0)
        r.raise_for_status()
    except httpx.HTTPError as e:
        click.secho(f"Server unreachable: {e}", fg="red", err=True)
        sys.exit(1)

    data = r.json()
    color = "green" if data["status"] == "healthy" else "yellow"
    click.secho(f"{data['status']} (v{data['version']})", fg=color, bold=True)
    for key in ("change_feed", "redis"):
        ok = data.get(key) == "ok"
        click.echo(f"  {key:12s} " + click.style(data.get(key, "?"), fg="green" if ok else "red"))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    main()
