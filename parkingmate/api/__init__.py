"""API routes package."""

from fastapi import APIRouter

from parkingmate.api.routes import detections, guests, notifications, registration, sessions

# Main API router
api_router = APIRouter(prefix="/api/v1")

# Include route modules
api_router.include_router(detections.router)
api_router.include_router(sessions.router)
api_router.include_router(guests.router)
api_router.include_router(registration.router)
api_router.include_router(notifications.router)
