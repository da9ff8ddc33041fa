"""
API router aggregation.
"""

from fastapi import APIRouter

from brdsync.api.routes import auth, field_mappings, health, sync, webhooks

# Create main API router
api_router = APIRouter()

api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(
    field_mappings.router, prefix="/field-mappings", tags=["field-mappings"]
)

__all__ = ["api_router"]
