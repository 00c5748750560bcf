"""
API v1 Router.

Aggregates all v1 endpoint routers.
"""

from fastapi import APIRouter

from backend.api.v1.endpoints import cache, sessions

api_router = APIRouter()

# Include endpoint routers
api_router.include_router(
    cache.router,
    prefix="/cache",
    tags=["Cache"],
)

api_router.include_router(
    sessions.router,
    prefix="/sessions",
    tags=["Sessions"],
)
