"""Async SQLAlchemy engine and session factory.

Learn: SQLAlchemy 2.0 async mode — create_async_engine for connection pooling,
AsyncSession for short-lived units of work (a notification insert, an
overdue-task lookup). The LISTEN connection is separate (raw asyncpg in
realtime/source.py) because it must stay open for the process lifetime.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from taskpulse.config import settings

# Small pool: the realtime layer only writes notifications and runs
# the periodic overdue scan.
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=5,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def listen_dsn(database_url: str) -> str:
    """asyncpg wants a plain postgresql:// DSN, not the SQLAlchemy one."""
    return database_url.replace("postgresql+asyncpg://", "postgresql://")
