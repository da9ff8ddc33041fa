"""
Health check endpoints.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.api.schemas import HealthResponse
from brdsync.core.config import Settings, get_settings
from brdsync.core.dependencies import get_db, get_services
from brdsync.services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter()


async def _check_database(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
        return "ready"
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return "not ready"


@router.get("", response_model=HealthResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
    settings: Settings = Depends(get_settings),
) -> HealthResponse:
    """Database reachability, OAuth configuration and dispatcher state."""
    database = await _check_database(db)
    return HealthResponse(
        status="healthy" if database == "ready" else "degraded",
        version=settings.app.version,
        database=database,
        oauth_enabled=services.credentials.enabled,
        queue_running=services.queue.is_running,
    )
