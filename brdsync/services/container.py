"""Wiring of the long-lived services shared by the API and the scheduler."""

import logging
from typing import Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.core.config import Settings, get_settings
from brdsync.core.database import AsyncSessionLocal
from brdsync.repositories.oauth_state_store import (
    DatabaseOAuthStateStore,
    InMemoryOAuthStateStore,
    OAuthStateStore,
)
from brdsync.services.credential_manager import CredentialManager
from brdsync.services.jira import JiraClient
from brdsync.services.sync import (
    DatabaseBRDStore,
    JiraRemoteStore,
    LocalRecordStore,
    RemoteRecordStore,
    SyncEventChannel,
    SyncJobQueue,
    SyncOrchestrator,
    SyncScheduler,
)
from brdsync.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)


class ServiceContainer:
    """Builds the services once per application and owns their lifecycle."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        state_store: Optional[OAuthStateStore] = None,
        local_store: Optional[LocalRecordStore] = None,
        remote_store: Optional[RemoteRecordStore] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory

        if state_store is None:
            if self.settings.sync.state_backend == "memory":
                state_store = InMemoryOAuthStateStore()
            else:
                state_store = DatabaseOAuthStateStore(session_factory)
        self.state_store = state_store

        self.credentials = CredentialManager(
            state_store, session_factory, settings=self.settings, transport=transport
        )
        self.jira = JiraClient(self.credentials, settings=self.settings, transport=transport)
        self.events = SyncEventChannel()
        self.queue = SyncJobQueue(session_factory, events=self.events, settings=self.settings)
        self.orchestrator = SyncOrchestrator(
            self.queue,
            local_store or DatabaseBRDStore(session_factory),
            remote_store or JiraRemoteStore(self.jira),
            session_factory=session_factory,
            settings=self.settings,
        )
        self.webhooks = WebhookService(self.jira, session_factory, settings=self.settings)
        self.scheduler = SyncScheduler(
            self.orchestrator,
            self.queue,
            state_store=state_store,
            session_factory=session_factory,
            settings=self.settings,
        )

    async def start(self, run_scheduler: bool = True) -> None:
        if not self.credentials.enabled:
            logger.warning(
                "Jira OAuth is disabled until these settings are provided: "
                f"{', '.join(self.credentials.missing_settings)}"
            )
        await self.queue.start()
        if run_scheduler:
            self.scheduler.start()

    async def close(self) -> None:
        self.scheduler.shutdown()
        await self.queue.stop()
        await self.jira.close()
