"""
Jira OAuth endpoints.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.api.schemas import (
    AuthorizationUrlResponse,
    ConnectionResponse,
    ConnectionTestResponse,
)
from brdsync.core.dependencies import (
    get_credentials,
    get_current_user_id,
    get_db,
    get_jira_client,
)
from brdsync.core.exceptions import OAuthError, ValidationError
from brdsync.repositories.connection_repository import connection_repository
from brdsync.services.credential_manager import CredentialManager
from brdsync.services.jira import JiraClient

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=AuthorizationUrlResponse)
async def start_authorization(
    credentials: CredentialManager = Depends(get_credentials),
    user_id: str = Depends(get_current_user_id),
) -> AuthorizationUrlResponse:
    """
    Begin the Atlassian OAuth 2.0 (3LO) flow.

    Returns the consent URL the user must visit; the embedded state is
    single-use and expires after the configured TTL.
    """
    url, state = await credentials.build_authorization_url(user_id)
    return AuthorizationUrlResponse(authorization_url=url, state=state)


@router.get("/callback", response_model=ConnectionResponse)
async def authorization_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    credentials: CredentialManager = Depends(get_credentials),
) -> ConnectionResponse:
    """Redirect target of the consent screen."""
    if error:
        logger.warning(f"OAuth authorization denied: {error} {error_description or ''}")
        raise OAuthError(
            OAuthError.OAUTH_DENIED,
            "Authorization was denied",
            upstream={"error": error, "error_description": error_description},
        )
    if not code or not state:
        raise ValidationError("code and state are required", field="code")
    connection = await credentials.exchange_code(code, state)
    return ConnectionResponse.model_validate(connection.to_dict())


@router.get("/connections", response_model=List[ConnectionResponse])
async def list_connections(
    active_only: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> List[ConnectionResponse]:
    """Connections owned by the caller."""
    connections = await connection_repository.list_connections(
        db, user_id=user_id, active_only=active_only
    )
    return [ConnectionResponse.model_validate(c.to_dict()) for c in connections]


@router.delete("/connections/{connection_id}", response_model=ConnectionResponse)
async def revoke_connection(
    connection_id: str,
    credentials: CredentialManager = Depends(get_credentials),
) -> ConnectionResponse:
    connection = await credentials.revoke(connection_id)
    return ConnectionResponse.model_validate(connection.to_dict())


@router.post("/connections/{connection_id}/test", response_model=ConnectionTestResponse)
async def test_connection(
    connection_id: str,
    client: JiraClient = Depends(get_jira_client),
) -> ConnectionTestResponse:
    """Call Jira with the stored credentials and list visible projects."""
    me = await client.get_myself(connection_id)
    projects = await client.list_projects(connection_id)
    return ConnectionTestResponse(
        connection_id=connection_id,
        ok=True,
        account_id=me.get("accountId"),
        display_name=me.get("displayName"),
        projects=projects,
    )
