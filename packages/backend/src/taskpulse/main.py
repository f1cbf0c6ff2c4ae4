"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown of the two long-lived
connections: the Redis pool (fan-out to sockets) and the Postgres LISTEN
connection (change feed).
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskpulse import __version__
from taskpulse.api import api_router
from taskpulse.config import settings
from taskpulse.db.engine import listen_dsn
from taskpulse.realtime.notifications import WriteClaims
from taskpulse.realtime.source import PostgresChangeSource

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` at shutdown.
    Neither Redis nor the change feed is fatal when missing: sessions then
    degrade to "no live updates" and the frontend keeps polling as usual.
    """
    logger.info(
        "taskpulse.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    from taskpulse.realtime.pubsub import close_redis, init_redis
    try:
        await init_redis()
        logger.info("taskpulse.redis_connected", url=settings.redis_url)
    except Exception as e:
        logger.warning("taskpulse.redis_unavailable", error=str(e))

    source: PostgresChangeSource = app.state.change_source
    try:
        await source.start()
    except Exception as e:
        logger.warning("taskpulse.change_feed_unavailable", error=str(e))

    yield

    logger.info("taskpulse.shutdown")

    await source.stop()
    await close_redis()

    from taskpulse.db.engine import engine
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="TaskPulse Realtime",
        description="Realtime cache invalidation and notices for the task tracker",
        version=__version__,
        lifespan=lifespan,
    )

    # Shared by every socket so a user's open tabs persist each notice once.
    app.state.write_claims = WriteClaims()
    app.state.change_source = PostgresChangeSource(
        listen_dsn(settings.database_url), channel=settings.change_channel
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    from taskpulse.realtime.websocket import router as ws_router
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: taskpulse.main:app)
app = create_app()
