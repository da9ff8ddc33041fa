"""Tests for webhook registration and delivery verification."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from brdsync.core.exceptions import FeatureDisabledError, NotFoundError, ValidationError
from brdsync.core.security import compute_signature
from brdsync.models import WebhookRegistration
from brdsync.services.webhook_service import DEFAULT_EVENTS, WebhookService

PAYLOAD = {"webhookEvent": "jira:issue_updated", "issue": {"key": "PROJ-1"}}


@pytest.fixture
def jira_client(connection):
    client = MagicMock()
    client.credentials.get_connection = AsyncMock(return_value=connection)
    client.register_webhook = AsyncMock(return_value="42")
    client.delete_webhook = AsyncMock(return_value=None)
    return client


@pytest.fixture
def webhook_service(jira_client, session_factory, test_settings):
    return WebhookService(jira_client, session_factory, settings=test_settings)


@pytest.fixture
async def registration(webhook_service, connection):
    return await webhook_service.register(connection.id)


def _body(payload=None):
    return json.dumps(payload or PAYLOAD).encode("utf-8")


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_stores_registration(
        self, webhook_service, jira_client, connection
    ):
        registration = await webhook_service.register(connection.id, jql="project = PROJ")

        expected_url = f"https://sync.example.com/api/sync/webhook/{connection.id}"
        jira_client.register_webhook.assert_awaited_once_with(
            connection.id, expected_url, DEFAULT_EVENTS, "project = PROJ"
        )
        assert registration.remote_webhook_id == "42"
        assert registration.url == expected_url
        assert registration.is_active is True
        secret = webhook_service.secret_for(registration)
        assert len(secret) == 64
        assert secret not in registration.secret_enc

    @pytest.mark.asyncio
    async def test_register_without_base_url(self, jira_client, session_factory, test_settings):
        test_settings.sync.webhook_base_url = None
        service = WebhookService(jira_client, session_factory, settings=test_settings)

        with pytest.raises(ValidationError):
            await service.register("conn-1")
        jira_client.register_webhook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_register_with_explicit_url_and_events(self, webhook_service, connection):
        registration = await webhook_service.register(
            connection.id,
            url="https://hooks.example.com/in",
            events=["jira:issue_updated"],
            name="Updates only",
        )

        assert registration.url == "https://hooks.example.com/in"
        assert registration.events == ["jira:issue_updated"]
        assert registration.name == "Updates only"

    @pytest.mark.asyncio
    async def test_register_without_encryption_key(
        self, jira_client, session_factory, test_settings, connection
    ):
        test_settings.encryption.key = None
        service = WebhookService(jira_client, session_factory, settings=test_settings)

        with pytest.raises(FeatureDisabledError):
            await service.register(connection.id)
        jira_client.register_webhook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_describe_hides_secret(self, webhook_service, registration):
        data = webhook_service.describe(registration)

        assert "secret_enc" not in data
        assert "secret" not in data
        assert data["remote_webhook_id"] == "42"

    @pytest.mark.asyncio
    async def test_deregister(self, webhook_service, jira_client, registration, connection):
        result = await webhook_service.deregister(registration.id)

        assert result.is_active is False
        jira_client.delete_webhook.assert_awaited_once_with(connection.id, "42")
        assert await webhook_service.list_registrations(connection.id, active_only=True) == []
        assert len(await webhook_service.list_registrations(connection.id)) == 1

    @pytest.mark.asyncio
    async def test_deregister_unknown(self, webhook_service):
        with pytest.raises(NotFoundError):
            await webhook_service.deregister("missing")


class TestVerifyDelivery:
    @pytest.mark.asyncio
    async def test_valid_signature(self, webhook_service, registration, connection):
        body = _body()

        delivery = await webhook_service.verify_delivery(
            connection.id, body, compute_signature(body, webhook_service.secret_for(registration))
        )

        assert delivery.connection_id == connection.id
        assert delivery.registration_id == registration.id
        assert delivery.payload == PAYLOAD

    @pytest.mark.asyncio
    async def test_invalid_signature_is_logged(self, webhook_service, registration, connection):
        body = _body()

        with patch("brdsync.services.webhook_service.security_logger") as security_logger:
            delivery = await webhook_service.verify_delivery(
                connection.id, body, compute_signature(body, "wrong-secret"), "10.0.0.9"
            )

        assert delivery is None
        security_logger.warning.assert_called_once()
        message = security_logger.warning.call_args[0][0]
        assert "invalid signature" in message
        assert security_logger.warning.call_args[1]["extra"]["source"] == "10.0.0.9"

    @pytest.mark.asyncio
    async def test_missing_signature(self, webhook_service, registration, connection):
        assert await webhook_service.verify_delivery(connection.id, _body(), None) is None

    @pytest.mark.asyncio
    async def test_unregistered_connection(self, webhook_service, connection):
        body = _body()
        signature = compute_signature(body, "anything")

        assert await webhook_service.verify_delivery(connection.id, body, signature) is None

    @pytest.mark.asyncio
    async def test_signed_but_malformed_body(self, webhook_service, registration, connection):
        body = b"not json"
        signature = compute_signature(body, webhook_service.secret_for(registration))

        assert await webhook_service.verify_delivery(connection.id, body, signature) is None

    @pytest.mark.asyncio
    async def test_deactivated_registration_rejects(
        self, webhook_service, registration, connection
    ):
        await webhook_service.deregister(registration.id)
        body = _body()

        delivery = await webhook_service.verify_delivery(
            connection.id, body, compute_signature(body, webhook_service.secret_for(registration))
        )

        assert delivery is None

    @pytest.mark.asyncio
    async def test_undecryptable_secret_is_logged(
        self, webhook_service, registration, connection, session_factory
    ):
        async with session_factory() as db:
            stored = await db.get(WebhookRegistration, registration.id)
            stored.secret_enc = "00:00:00"
            await db.commit()
        body = _body()

        with patch("brdsync.services.webhook_service.security_logger") as security_logger:
            delivery = await webhook_service.verify_delivery(
                connection.id, body, compute_signature(body, "anything")
            )

        assert delivery is None
        security_logger.error.assert_called_once()
        assert "Cannot decrypt" in security_logger.error.call_args[0][0]

    @pytest.mark.asyncio
    async def test_touch_records_delivery_time(self, webhook_service, registration, connection):
        await webhook_service.touch(registration.id)

        stored = await webhook_service.list_registrations(connection.id)
        assert stored[0].last_triggered_at is not None
