"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from checkin_engine.api.routes import checkins, rewards, venues

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(checkins.router)
api_router.include_router(rewards.router)
api_router.include_router(venues.router)
