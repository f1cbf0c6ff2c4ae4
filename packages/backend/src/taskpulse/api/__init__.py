"""API route aggregation.

All routers registered here get mounted in main.py. The realtime
WebSocket is mounted separately (it lives outside /api/v1).
"""

from fastapi import APIRouter

from taskpulse.api.health import router as health_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
