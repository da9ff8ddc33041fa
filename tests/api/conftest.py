"""Fixtures for API route tests."""

import pytest
from httpx import ASGITransport, AsyncClient

from brdsync.core.dependencies import get_db
from brdsync.main import app
from brdsync.models import SyncMapping, WebhookRegistration
from brdsync.services.container import ServiceContainer

WEBHOOK_SECRET = "webhook-secret"


@pytest.fixture
async def services(test_settings, session_factory, local_store, remote_store, seeded_rules):
    """Service container wired to the test database and in-memory stores."""
    container = ServiceContainer(
        settings=test_settings,
        session_factory=session_factory,
        local_store=local_store,
        remote_store=remote_store,
    )
    yield container
    await container.queue.stop()
    await container.jira.close()


@pytest.fixture
async def api_client(services, session_factory):
    """Async client talking to the app in-process."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.services = services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
    app.state.services = None


@pytest.fixture
async def webhook_registration(session_factory, connection, cipher):
    async with session_factory() as db:
        registration = WebhookRegistration(
            connection_id=connection.id,
            remote_webhook_id="42",
            url=f"https://sync.example.com/api/sync/webhook/{connection.id}",
            events=["jira:issue_updated"],
            secret_enc=cipher.encrypt(WEBHOOK_SECRET),
            is_active=True,
        )
        db.add(registration)
        await db.commit()
        await db.refresh(registration)
        return registration


@pytest.fixture
async def auto_synced_mapping(session_factory, connection):
    async with session_factory() as db:
        mapping = SyncMapping(
            connection_id=connection.id,
            local_id="brd-1",
            remote_key="PROJ-1",
            base_snapshot={"title": "Checkout"},
            auto_sync=True,
        )
        db.add(mapping)
        await db.commit()
        await db.refresh(mapping)
        return mapping
