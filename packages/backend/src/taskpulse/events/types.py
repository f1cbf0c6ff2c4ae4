"""Event type constants for messages pushed to browser sessions.

Learn: Centralizing event types as constants prevents typos and
makes it easy to discover everything a frontend may receive on
its WebSocket.
"""

# ─── Session lifecycle ───────────────────────────────────

SESSION_READY = "session.ready"
PONG = "pong"

# ─── Cache freshness ─────────────────────────────────────

CACHE_INVALIDATED = "cache.invalidated"

# ─── User-facing notices ─────────────────────────────────

NOTICE_SHOWN = "notice.shown"
