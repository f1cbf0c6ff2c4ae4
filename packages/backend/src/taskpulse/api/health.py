"""Health check endpoint.

Learn: Reports whether the two things realtime depends on are up: the
change feed (LISTEN connection) and Redis (socket fan-out). Either one
down means sessions still connect but stop receiving live updates.
"""

from fastapi import APIRouter, Request

from taskpulse import __version__
from taskpulse.realtime.pubsub import get_redis

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Check server health and realtime dependency status."""
    checks = {"server": "ok", "version": __version__}

    source = request.app.state.change_source
    checks["change_feed"] = "ok" if source.connected else "error: not listening"

    try:
        await get_redis().ping()
        checks["redis"] = "ok"
    except Exception as e:
        checks["redis"] = f"error: {e}"

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k != "version"
    ) else "degraded"

    return {"status": status, "feed": source.get_stats(), **checks}
