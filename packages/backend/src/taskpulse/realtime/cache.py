"""Query cache — per-session query results with stale markers.

Learn: Same contract as a frontend query client (TanStack-style):
- get(key)        → cached value, or fetch it if missing/stale
- invalidate(key) → mark stale + schedule a background refetch
The refetch is scheduled, never awaited by invalidate(), so the caller
(the invalidation router, inside a change-feed callback) stays synchronous.

Keys are (entity_kind, user_id) tuples, e.g. ("tasks", "u-1"). Values are
swapped in one assignment, so readers see either the old result or the
new one, never a half-built one.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger()

CacheKey = tuple[str, str]
Fetcher = Callable[[str], Awaitable[Any]]
InvalidationListener = Callable[[CacheKey], None]


@dataclass
class CacheEntry:
    value: Any = None
    loaded: bool = False
    stale: bool = True
    version: int = 0  # bumped on every invalidate()
    refetch: Optional[asyncio.Task] = None


class QueryCache:
    def __init__(self):
        self._fetchers: dict[str, Fetcher] = {}
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._listeners: list[InvalidationListener] = []

    def register(self, kind: str, fetcher: Fetcher) -> None:
        """Register how to (re)load every key of one entity kind."""
        self._fetchers[kind] = fetcher

    def add_listener(self, listener: InvalidationListener) -> None:
        """Call `listener(key)` every time a key is invalidated."""
        self._listeners.append(listener)

    def is_stale(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        return entry is None or entry.stale

    def peek(self, key: CacheKey) -> Any:
        """Current value without triggering a fetch (None if never loaded)."""
        entry = self._entries.get(key)
        return entry.value if entry else None

    async def get(self, key: CacheKey) -> Any:
        entry = self._entries.setdefault(key, CacheEntry())
        if entry.loaded and not entry.stale:
            return entry.value
        if key[0] not in self._fetchers:
            raise KeyError(f"No fetcher registered for {key[0]!r}")
        return await asyncio.shield(self._schedule(key, entry))

    def invalidate(self, key: CacheKey) -> None:
        """Mark `key` stale and schedule a refetch if it was ever loaded.

        Marking an already-stale key again leaves it stale; an in-flight
        refetch is reused rather than duplicated.
        """
        entry = self._entries.setdefault(key, CacheEntry())
        entry.stale = True
        entry.version += 1

        for listener in self._listeners:
            listener(key)

        if entry.loaded and key[0] in self._fetchers:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                # No loop: the next get() refetches.
                return
            self._schedule(key, entry)

    async def close(self) -> None:
        """Cancel in-flight refetches and drop every entry."""
        pending = [e.refetch for e in self._entries.values() if e.refetch]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._entries.clear()

    # ─── Internals ────────────────────────────────────────

    def _schedule(self, key: CacheKey, entry: CacheEntry) -> asyncio.Task:
        if entry.refetch is None:
            task = asyncio.get_running_loop().create_task(self._load(key, entry))
            task.add_done_callback(self._log_failure)
            entry.refetch = task
        return entry.refetch

    async def _load(self, key: CacheKey, entry: CacheEntry) -> Any:
        started = entry.version
        try:
            value = await self._fetchers[key[0]](key[1])
        finally:
            entry.refetch = None

        entry.value = value
        entry.loaded = True
        entry.stale = entry.version != started
        if entry.stale:
            # Invalidated while we were fetching, go again.
            self._schedule(key, entry)
        return value

    @staticmethod
    def _log_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("cache.refetch_failed", error=str(exc))
