"""OAuth 2.0 (3LO) lifecycle of Jira Cloud connections."""

import asyncio
import logging
import secrets
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.core.config import Settings, get_settings
from brdsync.core.exceptions import (
    ConnectionNotFoundError,
    FeatureDisabledError,
    OAuthError,
    TokenDecryptionError,
)
from brdsync.models import Connection
from brdsync.repositories.connection_repository import connection_repository
from brdsync.repositories.oauth_state_store import OAuthStateStore
from brdsync.services.token_cipher import TokenCipher, TokenCipherError
from brdsync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

FEATURE_NAME = "Jira OAuth"


class CredentialManager:
    """
    Acquire, store, refresh and revoke Jira OAuth credentials.

    Tokens never leave this class unencrypted except as the return value of
    :meth:`get_valid_access_token`.
    """

    def __init__(
        self,
        state_store: OAuthStateStore,
        session_factory: Callable[[], AsyncSession],
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the credential manager.

        Args:
            state_store: Where issued OAuth states are kept
            session_factory: Factory for database sessions
            settings: Application settings (defaults to the cached settings)
            transport: Optional httpx transport, used to stub the token endpoint
        """
        self.settings = settings or get_settings()
        self.state_store = state_store
        self.session_factory = session_factory
        self._transport = transport
        self._refresh_locks: Dict[str, asyncio.Lock] = {}
        self._cipher: Optional[TokenCipher] = None
        if self.settings.encryption.key:
            self._cipher = TokenCipher(
                self.settings.encryption.key, self.settings.encryption.salt
            )

    @property
    def missing_settings(self) -> List[str]:
        """Names of settings that must be provided before OAuth can work."""
        missing = []
        if not self.settings.jira.client_id:
            missing.append("JIRA_CLIENT_ID")
        if not self.settings.jira.client_secret:
            missing.append("JIRA_CLIENT_SECRET")
        if not self.settings.encryption.key:
            missing.append("ENCRYPTION_KEY")
        return missing

    @property
    def enabled(self) -> bool:
        return not self.missing_settings

    def _require_enabled(self) -> None:
        if not self.enabled:
            raise FeatureDisabledError(FEATURE_NAME, self.missing_settings)

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.jira.request_timeout),
            transport=self._transport,
        )

    # Encryption contract

    def encrypt_token(self, token: str) -> str:
        """Encrypt a token for storage."""
        self._require_enabled()
        assert self._cipher is not None
        return self._cipher.encrypt(token)

    def decrypt_token(self, value: Optional[str]) -> str:
        """
        Decrypt a stored token.

        Raises:
            TokenDecryptionError: If the ciphertext cannot be authenticated
        """
        self._require_enabled()
        assert self._cipher is not None
        try:
            return self._cipher.decrypt(value)
        except TokenCipherError as e:
            logger.error(f"Token decryption failed: {e}")
            raise TokenDecryptionError() from e

    # Authorization

    async def build_authorization_url(self, user_id: str) -> Tuple[str, str]:
        """
        Build the Atlassian consent URL for a user.

        Returns:
            Tuple of (authorization URL, state)
        """
        self._require_enabled()
        jira = self.settings.jira
        state = secrets.token_hex(32)
        expires_at = utcnow() + timedelta(seconds=jira.oauth_state_ttl_seconds)
        await self.state_store.save(state, user_id, expires_at)

        params = {
            "audience": "api.atlassian.com",
            "client_id": jira.client_id,
            "scope": " ".join(jira.scopes),
            "redirect_uri": jira.redirect_uri,
            "state": state,
            "response_type": "code",
            "prompt": "consent",
        }
        logger.info(f"Issued OAuth state for user {user_id}")
        return f"{jira.auth_url}?{urlencode(params)}", state

    async def exchange_code(self, code: str, state: str) -> Connection:
        """
        Complete the authorization code flow and persist the connection.

        Raises:
            OAuthError: INVALID_STATE, TOKEN_EXCHANGE_FAILED or
                NO_ACCESSIBLE_RESOURCES
        """
        self._require_enabled()
        user_id = await self.state_store.consume(state)
        if user_id is None:
            raise OAuthError(
                OAuthError.INVALID_STATE, "OAuth state is unknown, used or expired"
            )

        jira = self.settings.jira
        tokens = await self._post_token(
            {
                "grant_type": "authorization_code",
                "client_id": jira.client_id,
                "client_secret": jira.client_secret,
                "code": code,
                "redirect_uri": jira.redirect_uri,
            },
            OAuthError.TOKEN_EXCHANGE_FAILED,
        )
        resources = await self._get_accessible_resources(tokens["access_token"])
        if not resources:
            raise OAuthError(
                OAuthError.NO_ACCESSIBLE_RESOURCES,
                "The authorised account has no accessible Jira sites",
            )
        site = resources[0]

        async with self.session_factory() as db:
            connection = await connection_repository.get_by_user_and_site(
                user_id, site["id"], db
            )
            if connection is None:
                connection = Connection(user_id=user_id, remote_site_id=site["id"])
            self._apply_tokens(connection, tokens)
            connection.site_url = site.get("url")
            connection.site_name = site.get("name")
            connection.scopes = self._parse_scopes(tokens, site)  # type: ignore[assignment]
            connection.is_active = True  # type: ignore[assignment]
            connection.requires_reauth = False  # type: ignore[assignment]
            connection.last_error = None  # type: ignore[assignment]
            connection = await connection_repository.save(connection, db)

        logger.info(
            f"Connected user {user_id} to Jira site {site.get('url')} "
            f"(connection {connection.id})"
        )
        return connection

    # Token use

    async def get_connection(self, connection_id: str) -> Connection:
        """
        Load an active connection.

        Raises:
            ConnectionNotFoundError: Unknown connection
            OAuthError: CONNECTION_INACTIVE when revoked or awaiting re-auth
        """
        async with self.session_factory() as db:
            connection = await connection_repository.get(connection_id, db)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        if not connection.is_active or connection.requires_reauth:
            raise OAuthError(
                OAuthError.CONNECTION_INACTIVE,
                "Connection is inactive or requires re-authorization",
                connection_id=connection_id,
            )
        return connection

    async def get_valid_access_token(
        self, connection_id: str, force_refresh: bool = False
    ) -> str:
        """
        Return a usable access token, refreshing it when close to expiry.

        Raises:
            OAuthError: TOKEN_REFRESH_FAILED or CONNECTION_INACTIVE
            TokenDecryptionError: Stored ciphertext is corrupt
        """
        self._require_enabled()
        lock = self._refresh_locks.setdefault(connection_id, asyncio.Lock())
        async with lock:
            connection = await self.get_connection(connection_id)
            buffer = self.settings.jira.token_refresh_buffer_seconds
            if force_refresh or connection.expires_within(utcnow(), buffer):
                connection = await self._refresh(connection)
            return await self._decrypt_for(connection, connection.access_token_enc)  # type: ignore[arg-type]

    async def _refresh(self, connection: Connection) -> Connection:
        refresh_token = await self._decrypt_for(connection, connection.refresh_token_enc)  # type: ignore[arg-type]
        jira = self.settings.jira
        logger.info(f"Refreshing access token for connection {connection.id}")
        try:
            tokens = await self._post_token(
                {
                    "grant_type": "refresh_token",
                    "client_id": jira.client_id,
                    "client_secret": jira.client_secret,
                    "refresh_token": refresh_token,
                },
                OAuthError.TOKEN_REFRESH_FAILED,
            )
        except OAuthError as e:
            await self._mark_requires_reauth(connection.id, e.message)  # type: ignore[arg-type]
            e.details["connection_id"] = connection.id
            raise

        async with self.session_factory() as db:
            stored = await connection_repository.get(connection.id, db)  # type: ignore[arg-type]
            if stored is None:
                raise ConnectionNotFoundError(connection.id)  # type: ignore[arg-type]
            self._apply_tokens(stored, tokens)
            stored.last_error = None  # type: ignore[assignment]
            return await connection_repository.save(stored, db)

    async def _decrypt_for(self, connection: Connection, value: str) -> str:
        try:
            return self.decrypt_token(value)
        except TokenDecryptionError as e:
            e.details["connection_id"] = connection.id
            await self._mark_requires_reauth(connection.id, e.message)  # type: ignore[arg-type]
            raise

    async def revoke(self, connection_id: str) -> Connection:
        """Deactivate a connection. History rows keep pointing at it."""
        async with self.session_factory() as db:
            connection = await connection_repository.get(connection_id, db)
            if connection is None:
                raise ConnectionNotFoundError(connection_id)
            connection = await connection_repository.update(
                connection, db, is_active=False
            )
        logger.info(f"Revoked connection {connection_id}")
        return connection

    async def _mark_requires_reauth(self, connection_id: str, reason: str) -> None:
        async with self.session_factory() as db:
            connection = await connection_repository.get(connection_id, db)
            if connection is not None:
                await connection_repository.update(
                    connection, db, requires_reauth=True, last_error=reason
                )
        logger.warning(f"Connection {connection_id} requires re-authorization: {reason}")

    # HTTP

    async def _post_token(self, data: Dict[str, Any], error_code: str) -> Dict[str, Any]:
        try:
            async with self._http_client() as client:
                response = await client.post(self.settings.jira.token_url, json=data)
        except httpx.HTTPError as e:
            logger.error(f"Token endpoint unreachable: {e}")
            raise OAuthError(error_code, f"Token endpoint unreachable: {e}") from e

        payload = self._json_or_text(response)
        if response.status_code >= 400 or not isinstance(payload, dict):
            logger.error(
                f"Token endpoint returned {response.status_code}: {payload}"
            )
            raise OAuthError(
                error_code,
                f"Token endpoint returned {response.status_code}",
                upstream=payload,
            )
        if "access_token" not in payload:
            raise OAuthError(
                error_code, "Token response has no access_token", upstream=payload
            )
        return payload

    async def _get_accessible_resources(self, access_token: str) -> List[Dict[str, Any]]:
        try:
            async with self._http_client() as client:
                response = await client.get(
                    self.settings.jira.resources_url,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                )
        except httpx.HTTPError as e:
            raise OAuthError(
                OAuthError.TOKEN_EXCHANGE_FAILED, f"Resource listing failed: {e}"
            ) from e
        payload = self._json_or_text(response)
        if response.status_code >= 400:
            raise OAuthError(
                OAuthError.TOKEN_EXCHANGE_FAILED,
                f"Resource listing returned {response.status_code}",
                upstream=payload,
            )
        return payload if isinstance(payload, list) else []

    @staticmethod
    def _json_or_text(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    def _apply_tokens(self, connection: Connection, tokens: Dict[str, Any]) -> None:
        connection.access_token_enc = self.encrypt_token(tokens["access_token"])  # type: ignore[assignment]
        # keep the old refresh token when the issuer did not rotate it
        if tokens.get("refresh_token"):
            connection.refresh_token_enc = self.encrypt_token(tokens["refresh_token"])  # type: ignore[assignment]
        expires_in = int(tokens.get("expires_in") or 3600)
        connection.token_expires_at = utcnow() + timedelta(seconds=expires_in)  # type: ignore[assignment]

    def _parse_scopes(self, tokens: Dict[str, Any], site: Dict[str, Any]) -> List[str]:
        if tokens.get("scope"):
            return str(tokens["scope"]).split()
        return list(site.get("scopes") or self.settings.jira.scopes)
