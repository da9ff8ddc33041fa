"""Jira webhook registration and inbound delivery verification."""

import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.core.config import Settings, get_settings
from brdsync.core.database import AsyncSessionLocal
from brdsync.core.exceptions import FeatureDisabledError, NotFoundError, ValidationError
from brdsync.core.logging import get_security_logger
from brdsync.core.security import verify_signature
from brdsync.models import WebhookRegistration
from brdsync.repositories.connection_repository import connection_repository
from brdsync.services.jira.client import JiraClient
from brdsync.services.token_cipher import TokenCipher, TokenCipherError
from brdsync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)
security_logger = get_security_logger()

DEFAULT_EVENTS = ["jira:issue_created", "jira:issue_updated", "jira:issue_deleted"]


@dataclass
class VerifiedDelivery:
    connection_id: str
    registration_id: str
    payload: Dict[str, Any]


class WebhookService:
    """
    Register webhooks on Jira and authenticate what they deliver.

    Verification never raises: a delivery that cannot be authenticated is
    logged as a security event and reported as ``None`` so the caller can
    acknowledge it exactly like a valid one.
    """

    def __init__(
        self,
        client: JiraClient,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        settings: Optional[Settings] = None,
    ):
        self.client = client
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self._cipher: Optional[TokenCipher] = None

    @property
    def cipher(self) -> TokenCipher:
        """Cipher for the stored signing secrets, built on first use."""
        if self._cipher is None:
            if not self.settings.encryption.key:
                raise FeatureDisabledError("Webhooks", ["ENCRYPTION_KEY"])
            self._cipher = TokenCipher(
                self.settings.encryption.key, self.settings.encryption.salt
            )
        return self._cipher

    def secret_for(self, registration: WebhookRegistration) -> str:
        """
        Plaintext signing secret of a registration.

        Raises:
            TokenCipherError: The stored ciphertext does not decrypt
        """
        return self.cipher.decrypt(str(registration.secret_enc))

    def default_url(self, connection_id: str) -> str:
        base = self.settings.sync.webhook_base_url
        if not base:
            raise ValidationError(
                "No webhook url given and SYNC_WEBHOOK_BASE_URL is not configured",
                field="url",
            )
        return f"{base.rstrip('/')}/api/sync/webhook/{connection_id}"

    async def verify_delivery(
        self,
        connection_id: str,
        body: bytes,
        signature: Optional[str],
        source: Optional[str] = None,
    ) -> Optional[VerifiedDelivery]:
        """
        Authenticate one delivery against the connection's active secret.

        Args:
            connection_id: Connection named in the delivery URL
            body: Raw request body
            signature: ``X-Hub-Signature`` header value
            source: Client address, for the security log

        Returns:
            The parsed delivery, or None if it must be discarded
        """
        async with self.session_factory() as db:
            registration = await connection_repository.get_active_webhook(connection_id, db)

        if registration is None:
            security_logger.warning(
                f"Webhook delivery for unknown or unregistered connection {connection_id}",
                extra={"connection_id": connection_id, "source": source},
            )
            return None
        try:
            secret = self.secret_for(registration)
        except (TokenCipherError, FeatureDisabledError) as e:
            security_logger.error(
                f"Cannot decrypt webhook secret for connection {connection_id}: {e}",
                extra={"connection_id": connection_id, "source": source},
            )
            return None
        if not verify_signature(body, signature, secret):
            security_logger.warning(
                f"Rejected webhook delivery with "
                f"{'missing' if not signature else 'invalid'} signature "
                f"for connection {connection_id}",
                extra={"connection_id": connection_id, "source": source},
            )
            return None

        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.warning(f"Discarding signed webhook with malformed body for {connection_id}")
            return None
        if not isinstance(payload, dict):
            logger.warning(f"Discarding signed webhook with non-object body for {connection_id}")
            return None

        return VerifiedDelivery(connection_id, str(registration.id), payload)

    async def touch(self, registration_id: str) -> None:
        """Record that a registration just delivered an event."""
        async with self.session_factory() as db:
            registration = await connection_repository.get_webhook(registration_id, db)
            if registration is not None:
                registration.last_triggered_at = utcnow()  # type: ignore[assignment]
                await db.commit()

    async def register(
        self,
        connection_id: str,
        url: Optional[str] = None,
        events: Optional[List[str]] = None,
        jql: Optional[str] = None,
        name: Optional[str] = None,
    ) -> WebhookRegistration:
        """
        Register a dynamic webhook on Jira and store it with a fresh secret.

        Args:
            connection_id: Connection to register for
            url: Delivery URL (defaults to this service's webhook route)
            events: Jira event names
            jql: Optional JQL filter
            name: Display name

        Returns:
            The stored registration
        """
        await self.client.credentials.get_connection(connection_id)
        url = url or self.default_url(connection_id)
        events = list(events or DEFAULT_EVENTS)
        secret = secrets.token_hex(32)
        secret_enc = self.cipher.encrypt(secret)

        remote_id = await self.client.register_webhook(connection_id, url, events, jql)
        registration = WebhookRegistration(
            connection_id=connection_id,
            remote_webhook_id=remote_id,
            name=name or "BRD sync",
            url=url,
            events=events,
            jql=jql,
            secret_enc=secret_enc,
            is_active=True,
        )
        async with self.session_factory() as db:
            registration = await connection_repository.create_webhook(registration, db)
        logger.info(
            f"Registered webhook {registration.id} (Jira id {remote_id}) "
            f"for connection {connection_id}"
        )
        return registration

    async def deregister(self, registration_id: str) -> WebhookRegistration:
        """Delete the webhook on Jira (a missing one is fine) and deactivate it."""
        async with self.session_factory() as db:
            registration = await connection_repository.get_webhook(registration_id, db)
            if registration is None:
                raise NotFoundError("WebhookRegistration", registration_id)

            if registration.remote_webhook_id:
                await self.client.delete_webhook(
                    str(registration.connection_id), str(registration.remote_webhook_id)
                )
            registration.is_active = False  # type: ignore[assignment]
            await db.commit()
            await db.refresh(registration)
        logger.info(f"Deregistered webhook {registration_id}")
        return registration

    async def list_registrations(
        self, connection_id: Optional[str] = None, active_only: bool = False
    ) -> List[WebhookRegistration]:
        async with self.session_factory() as db:
            return await connection_repository.list_webhooks(
                db, connection_id=connection_id, active_only=active_only
            )

    @staticmethod
    def describe(registration: WebhookRegistration) -> Dict[str, Any]:
        """Public view of a registration; the encrypted secret is left out."""
        return registration.to_dict()
