"""
Webhook registration endpoints.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from brdsync.api.schemas import WebhookRegisterRequest, WebhookRegistrationResponse
from brdsync.core.dependencies import get_orchestrator, get_webhook_service
from brdsync.services.sync import SyncOrchestrator
from brdsync.services.webhook_service import WebhookService

router = APIRouter()


@router.post(
    "",
    response_model=WebhookRegistrationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_webhook(
    body: WebhookRegisterRequest,
    webhooks: WebhookService = Depends(get_webhook_service),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> WebhookRegistrationResponse:
    """Register a Jira webhook that delivers issue events to this service."""
    connection_id = await orchestrator.resolve_connection_id(body.connection_id)
    registration = await webhooks.register(
        connection_id, url=body.url, events=body.events, jql=body.jql, name=body.name
    )
    return WebhookRegistrationResponse.model_validate(webhooks.describe(registration))


@router.get("", response_model=List[WebhookRegistrationResponse])
async def list_webhooks(
    connection_id: Optional[str] = Query(None),
    active_only: bool = Query(False),
    webhooks: WebhookService = Depends(get_webhook_service),
) -> List[WebhookRegistrationResponse]:
    registrations = await webhooks.list_registrations(connection_id, active_only)
    return [
        WebhookRegistrationResponse.model_validate(webhooks.describe(r))
        for r in registrations
    ]


@router.delete("/{registration_id}", response_model=WebhookRegistrationResponse)
async def deregister_webhook(
    registration_id: str,
    webhooks: WebhookService = Depends(get_webhook_service),
) -> WebhookRegistrationResponse:
    registration = await webhooks.deregister(registration_id)
    return WebhookRegistrationResponse.model_validate(webhooks.describe(registration))
