"""API route aggregation.

All routers registered here get mounted in main.py. Authentication is
resolved per route rather than per router: browsing broadcasts is public,
while publishing, joining and deciding need a token.
"""

from fastapi import APIRouter

from spontaneous.api.auth import router as auth_router
from spontaneous.api.broadcasts import router as broadcasts_router
from spontaneous.api.health import router as health_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router, tags=["auth"])
api_router.include_router(broadcasts_router, tags=["broadcasts", "join-requests"])
