"""Tests for the OAuth credential lifecycle."""

import json
from datetime import timedelta
from typing import Any, Dict, List
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from brdsync.core.config import EncryptionSettings, JiraSettings, Settings
from brdsync.core.exceptions import (
    ConnectionNotFoundError,
    FeatureDisabledError,
    OAuthError,
    TokenDecryptionError,
)
from brdsync.repositories.connection_repository import connection_repository
from brdsync.repositories.oauth_state_store import InMemoryOAuthStateStore
from brdsync.services.credential_manager import CredentialManager
from brdsync.utils.timeutils import utcnow

SITE = {
    "id": "cloud-1",
    "url": "https://acme.atlassian.net",
    "name": "acme",
    "scopes": ["read:jira-work"],
}


class FakeAtlassian:
    """Token and resource endpoints served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.token_requests: List[Dict[str, Any]] = []
        self.token_status = 200
        self.rotate_refresh = True
        self.resources: List[Dict[str, Any]] = [SITE]
        self._issued = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token":
            body = json.loads(request.content)
            self.token_requests.append(body)
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            self._issued += 1
            payload = {
                "access_token": f"access-{self._issued}",
                "expires_in": 3600,
                "scope": "read:jira-work write:jira-work offline_access",
            }
            if self.rotate_refresh:
                payload["refresh_token"] = f"refresh-{self._issued}"
            return httpx.Response(200, json=payload)
        if request.url.path == "/oauth/token/accessible-resources":
            return httpx.Response(200, json=self.resources)
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def atlassian() -> FakeAtlassian:
    return FakeAtlassian()


@pytest.fixture
def credentials(session_factory, test_settings, atlassian) -> CredentialManager:
    return CredentialManager(
        InMemoryOAuthStateStore(),
        session_factory,
        settings=test_settings,
        transport=atlassian.transport,
    )


async def _authorize(credentials: CredentialManager, user_id: str = "user-1"):
    url, state = await credentials.build_authorization_url(user_id)
    return await credentials.exchange_code("auth-code", state)


class TestAuthorization:
    """Test the authorization code flow."""

    @pytest.mark.asyncio
    async def test_authorization_url(self, credentials, test_settings):
        url, state = await credentials.build_authorization_url("user-1")

        query = parse_qs(urlparse(url).query)
        assert url.startswith(test_settings.jira.auth_url)
        assert query["state"] == [state]
        assert query["client_id"] == ["client-id"]
        assert query["audience"] == ["api.atlassian.com"]
        assert query["response_type"] == ["code"]
        assert "offline_access" in query["scope"][0].split()
        assert len(state) == 64

    @pytest.mark.asyncio
    async def test_exchange_creates_connection(self, credentials, session_factory, atlassian):
        connection = await _authorize(credentials)

        assert connection.user_id == "user-1"
        assert connection.remote_site_id == "cloud-1"
        assert connection.site_url == "https://acme.atlassian.net"
        assert connection.is_active is True
        assert "offline_access" in connection.scopes
        # tokens are only stored encrypted
        assert "access-1" not in connection.access_token_enc
        assert credentials.decrypt_token(connection.access_token_enc) == "access-1"
        assert atlassian.token_requests[0]["grant_type"] == "authorization_code"
        assert atlassian.token_requests[0]["code"] == "auth-code"

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, credentials):
        url, state = await credentials.build_authorization_url("user-1")
        await credentials.exchange_code("auth-code", state)

        with pytest.raises(OAuthError) as exc_info:
            await credentials.exchange_code("auth-code", state)
        assert exc_info.value.error_code == OAuthError.INVALID_STATE

    @pytest.mark.asyncio
    async def test_unknown_state(self, credentials):
        with pytest.raises(OAuthError) as exc_info:
            await credentials.exchange_code("auth-code", "forged")
        assert exc_info.value.error_code == OAuthError.INVALID_STATE

    @pytest.mark.asyncio
    async def test_reauthorize_updates_existing_connection(self, credentials):
        first = await _authorize(credentials)
        second = await _authorize(credentials)

        assert first.id == second.id
        assert credentials.decrypt_token(second.access_token_enc) == "access-2"

    @pytest.mark.asyncio
    async def test_exchange_failure(self, credentials, atlassian):
        atlassian.token_status = 400

        with pytest.raises(OAuthError) as exc_info:
            await _authorize(credentials)
        assert exc_info.value.error_code == OAuthError.TOKEN_EXCHANGE_FAILED
        assert exc_info.value.upstream == {"error": "invalid_grant"}

    @pytest.mark.asyncio
    async def test_no_accessible_sites(self, credentials, atlassian):
        atlassian.resources = []

        with pytest.raises(OAuthError) as exc_info:
            await _authorize(credentials)
        assert exc_info.value.error_code == OAuthError.NO_ACCESSIBLE_RESOURCES

    @pytest.mark.asyncio
    async def test_disabled_without_configuration(self, session_factory):
        settings = Settings(
            jira=JiraSettings(client_id=None, client_secret="secret"),
            encryption=EncryptionSettings(key="key"),
        )
        manager = CredentialManager(InMemoryOAuthStateStore(), session_factory, settings=settings)

        assert manager.enabled is False
        assert "JIRA_CLIENT_ID" in manager.missing_settings
        with pytest.raises(FeatureDisabledError):
            await manager.build_authorization_url("user-1")


class TestTokenUse:
    """Test access token retrieval and refresh."""

    @pytest.mark.asyncio
    async def test_valid_token_not_refreshed(self, credentials, atlassian):
        await _authorize(credentials)
        connection = (await _connections(credentials))[0]

        token = await credentials.get_valid_access_token(connection.id)

        assert token == "access-1"
        assert len(atlassian.token_requests) == 1

    @pytest.mark.asyncio
    async def test_refresh_near_expiry(self, credentials, atlassian, session_factory):
        connection = await _authorize(credentials)
        await _expire(session_factory, connection.id)

        token = await credentials.get_valid_access_token(connection.id)

        assert token == "access-2"
        refresh_request = atlassian.token_requests[-1]
        assert refresh_request["grant_type"] == "refresh_token"
        assert refresh_request["refresh_token"] == "refresh-1"

    @pytest.mark.asyncio
    async def test_refresh_keeps_unrotated_refresh_token(
        self, credentials, atlassian, session_factory
    ):
        connection = await _authorize(credentials)
        atlassian.rotate_refresh = False
        await _expire(session_factory, connection.id)

        await credentials.get_valid_access_token(connection.id)

        async with session_factory() as db:
            stored = await connection_repository.get(connection.id, db)
        assert credentials.decrypt_token(stored.refresh_token_enc) == "refresh-1"

    @pytest.mark.asyncio
    async def test_refresh_failure_requires_reauth(
        self, credentials, atlassian, session_factory
    ):
        connection = await _authorize(credentials)
        await _expire(session_factory, connection.id)
        atlassian.token_status = 400

        with pytest.raises(OAuthError) as exc_info:
            await credentials.get_valid_access_token(connection.id)
        assert exc_info.value.error_code == OAuthError.TOKEN_REFRESH_FAILED

        async with session_factory() as db:
            stored = await connection_repository.get(connection.id, db)
        assert stored.requires_reauth is True

        with pytest.raises(OAuthError) as exc_info:
            await credentials.get_valid_access_token(connection.id)
        assert exc_info.value.error_code == OAuthError.CONNECTION_INACTIVE

    @pytest.mark.asyncio
    async def test_corrupt_ciphertext(self, credentials, session_factory):
        connection = await _authorize(credentials)
        async with session_factory() as db:
            stored = await connection_repository.get(connection.id, db)
            await connection_repository.update(
                stored, db, access_token_enc="00" * 12 + ":" + "00" * 16 + ":00"
            )

        with pytest.raises(TokenDecryptionError):
            await credentials.get_valid_access_token(connection.id)

        async with session_factory() as db:
            stored = await connection_repository.get(connection.id, db)
        assert stored.requires_reauth is True

    @pytest.mark.asyncio
    async def test_unknown_connection(self, credentials):
        with pytest.raises(ConnectionNotFoundError):
            await credentials.get_valid_access_token("missing")

    @pytest.mark.asyncio
    async def test_revoke(self, credentials):
        connection = await _authorize(credentials)

        revoked = await credentials.revoke(connection.id)

        assert revoked.is_active is False
        with pytest.raises(OAuthError):
            await credentials.get_connection(connection.id)


async def _connections(credentials: CredentialManager):
    async with credentials.session_factory() as db:
        return await connection_repository.list_connections(db)


async def _expire(session_factory, connection_id: str) -> None:
    async with session_factory() as db:
        stored = await connection_repository.get(connection_id, db)
        await connection_repository.update(
            stored, db, token_expires_at=utcnow() + timedelta(seconds=30)
        )
