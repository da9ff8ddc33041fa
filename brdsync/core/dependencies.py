"""
Dependency injection functions for FastAPI.
"""

from collections.abc import AsyncGenerator
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.core.config import Settings, get_settings
from brdsync.core.database import AsyncSessionLocal
from brdsync.core.security import decode_access_token
from brdsync.services.container import ServiceContainer
from brdsync.services.credential_manager import CredentialManager
from brdsync.services.jira import JiraClient
from brdsync.services.sync import SyncEventChannel, SyncJobQueue, SyncOrchestrator
from brdsync.services.webhook_service import WebhookService

__all__ = [
    "get_db",
    "get_settings",
    "get_services",
    "get_optional_services",
    "get_current_user_id",
    "get_orchestrator",
    "get_queue",
    "get_credentials",
    "get_jira_client",
    "get_webhook_service",
    "get_event_channel",
    "PaginationParams",
    "Settings",
]

# Security scheme
security = HTTPBearer(auto_error=False)

ANONYMOUS_USER = "system"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Get database session.

    Yields:
        AsyncSession: Database session
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_services(request: Request) -> ServiceContainer:
    """
    Services built at startup.

    Raises:
        HTTPException: If the application has not finished starting
    """
    services: Optional[ServiceContainer] = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting",
        )
    return services


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Identity of the caller, taken from the ``sub`` claim of a bearer JWT.

    Authentication itself belongs to the platform in front of this service,
    so requests without a token act as ``system``.

    Raises:
        HTTPException: If a token is supplied but cannot be decoded
    """
    if credentials is None:
        return ANONYMOUS_USER
    payload = decode_access_token(credentials.credentials)
    if payload is None or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return str(payload["sub"])


def get_optional_services(request: Request) -> Optional[ServiceContainer]:
    """Services built at startup, or None while the application is starting."""
    return getattr(request.app.state, "services", None)


def get_orchestrator(services: ServiceContainer = Depends(get_services)) -> SyncOrchestrator:
    return services.orchestrator


def get_queue(services: ServiceContainer = Depends(get_services)) -> SyncJobQueue:
    return services.queue


def get_credentials(services: ServiceContainer = Depends(get_services)) -> CredentialManager:
    return services.credentials


def get_jira_client(services: ServiceContainer = Depends(get_services)) -> JiraClient:
    return services.jira


def get_webhook_service(services: ServiceContainer = Depends(get_services)) -> WebhookService:
    return services.webhooks


def get_event_channel(services: ServiceContainer = Depends(get_services)) -> SyncEventChannel:
    return services.events


class PaginationParams:
    """Common limit/offset parameters."""

    def __init__(self, limit: int = 50, offset: int = 0):
        """
        Initialize pagination parameters.

        Args:
            limit: Page size (1-500)
            offset: Rows to skip
        """
        self.limit = min(500, max(1, limit))
        self.offset = max(0, offset)
