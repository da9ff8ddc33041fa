"""Jira Cloud REST API v3 client."""

import logging
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from brdsync.core.config import Settings, get_settings
from brdsync.core.exceptions import (
    RemoteAPIError,
    RemoteRateLimitError,
    RemoteServerError,
)
from brdsync.services.credential_manager import CredentialManager
from brdsync.utils.timeutils import ensure_utc, utcnow

from .rate_limiter import RateLimiter
from .transformers import record_to_fields, transform_issue

logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Seconds to wait according to a ``Retry-After`` header.

    The header is either a number of seconds or an HTTP-date. Unparseable
    values give None so the regular backoff applies.
    """
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = ensure_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError):
        logger.warning(f"Ignoring unparseable Retry-After header: {value!r}")
        return None
    if when is None:
        return None
    return max((when - utcnow()).total_seconds(), 0.0)


class JiraClient:
    """Service for interacting with the Jira Cloud REST API."""

    def __init__(
        self,
        credentials: CredentialManager,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        """
        Initialize Jira client.

        Args:
            credentials: Source of access tokens and connection details
            settings: Application settings
            transport: Optional httpx transport, used to stub Jira in tests
            rate_limiter: Shared limiter; one is created from settings if omitted
        """
        self.credentials = credentials
        self.settings = settings or get_settings()
        self.rate_limiter = rate_limiter or RateLimiter(
            max_requests=self.settings.jira.rate_limit_per_minute, window_seconds=60
        )
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.jira.request_timeout),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=transport,
        )

    async def __aenter__(self) -> "JiraClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        """Close HTTP client."""
        await self._client.aclose()

    def _api_url(self, cloud_id: str, path: str) -> str:
        return f"{self.settings.jira.api_base_url}/{cloud_id}/rest/api/3{path}"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _send(
        self,
        method: str,
        url: str,
        token: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send one request, retrying transport-level failures."""
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        return await self._client.request(
            method, url, json=json, params=params, headers=headers
        )

    async def request(
        self,
        connection_id: str,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        allow_404: bool = False,
    ) -> Any:
        """
        Execute an authenticated API request.

        Args:
            connection_id: Connection whose credentials are used
            method: HTTP method
            path: Path below ``/rest/api/3``
            json: Optional JSON body
            params: Optional query parameters
            allow_404: Return None instead of raising on 404

        Returns:
            Decoded JSON body, or None for empty responses

        Raises:
            RemoteRateLimitError: Rate limited locally or by Jira
            RemoteServerError: Jira unavailable or timed out
            RemoteAPIError: Any other error response
        """
        connection = await self.credentials.get_connection(connection_id)
        cloud_id = str(connection.remote_site_id)

        if not self.rate_limiter.is_allowed(cloud_id):
            retry_after = self.rate_limiter.retry_after(cloud_id)
            logger.warning(f"Client-side rate limit reached for site {cloud_id}")
            raise RemoteRateLimitError(retry_after=retry_after)

        url = self._api_url(cloud_id, path)
        logger.debug(f"Jira {method} {url}")
        token = await self.credentials.get_valid_access_token(connection_id)
        try:
            response = await self._send(method, url, token, json=json, params=params)
            if response.status_code == 401:
                logger.info(
                    f"Jira rejected token for connection {connection_id}, refreshing"
                )
                token = await self.credentials.get_valid_access_token(
                    connection_id, force_refresh=True
                )
                response = await self._send(method, url, token, json=json, params=params)
        except httpx.TimeoutException as e:
            logger.error(f"Jira request timed out: {e}")
            raise RemoteServerError(f"Jira request timed out: {e}")
        except httpx.TransportError as e:
            logger.error(f"Connection error to Jira: {e}")
            raise RemoteServerError(f"Failed to reach Jira: {e}")

        return self._handle_response(response, allow_404)

    def _handle_response(self, response: httpx.Response, allow_404: bool) -> Any:
        status = response.status_code
        if status == 404 and allow_404:
            return None
        if status < 400:
            if status == 204 or not response.content:
                return None
            try:
                return response.json()
            except ValueError:
                return response.text

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text

        if status == 429:
            raise RemoteRateLimitError(
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                response_body=body,
            )
        if status >= 500:
            logger.error(f"Jira server error {status}: {body}")
            raise RemoteServerError(f"Jira returned {status}", status, body)

        message = f"Jira returned {status}"
        if isinstance(body, dict):
            messages = list(body.get("errorMessages") or [])
            messages.extend(f"{k}: {v}" for k, v in (body.get("errors") or {}).items())
            if messages:
                message = f"{message}: {'; '.join(messages)}"
        logger.error(message)
        raise RemoteAPIError(message, status, body)

    # Issue operations

    async def get_issue(self, connection_id: str, key: str) -> Optional[Dict[str, Any]]:
        """
        Fetch an issue as a flat record.

        Returns:
            The record, or None if the issue does not exist
        """
        issue = await self.request(
            connection_id, "GET", f"/issue/{key}", allow_404=True
        )
        if issue is None:
            return None
        return transform_issue(issue)

    async def create_issue(
        self,
        connection_id: str,
        project_key: str,
        record: Dict[str, Any],
        issue_type: str = "Epic",
    ) -> Dict[str, Any]:
        """
        Create an issue from a flat record.

        Status is applied afterwards through a transition.

        Returns:
            The created issue as a flat record
        """
        fields = record_to_fields(record)
        fields["project"] = {"key": project_key}
        fields["issuetype"] = {"name": issue_type}
        created = await self.request(
            connection_id, "POST", "/issue", json={"fields": fields}
        )
        key = created["key"]
        logger.info(f"Created Jira issue {key} in project {project_key}")

        if record.get("status"):
            await self.transition_issue(connection_id, key, record["status"])
        issue = await self.get_issue(connection_id, key)
        return issue or {"id": created.get("id"), "key": key}

    async def update_issue(
        self, connection_id: str, key: str, record: Dict[str, Any]
    ) -> None:
        """Apply a partial flat record to an issue."""
        fields = record_to_fields(record)
        if fields:
            await self.request(
                connection_id, "PUT", f"/issue/{key}", json={"fields": fields}
            )
        if record.get("status"):
            await self.transition_issue(connection_id, key, record["status"])
        logger.info(f"Updated Jira issue {key}: {sorted(record)}")

    async def transition_issue(
        self, connection_id: str, key: str, status_name: str
    ) -> None:
        """
        Move an issue to the status called ``status_name``.

        Raises:
            RemoteAPIError: If no available transition leads to that status
        """
        data = await self.request(connection_id, "GET", f"/issue/{key}/transitions")
        wanted = status_name.strip().casefold()
        for transition in (data or {}).get("transitions", []):
            target = ((transition.get("to") or {}).get("name") or "").casefold()
            if target == wanted or (transition.get("name") or "").casefold() == wanted:
                await self.request(
                    connection_id,
                    "POST",
                    f"/issue/{key}/transitions",
                    json={"transition": {"id": transition["id"]}},
                )
                return
        raise RemoteAPIError(
            f"No transition to status '{status_name}' available for {key}",
            response_code=400,
            status_code=422,
        )

    # Account and project operations

    async def get_myself(self, connection_id: str) -> Dict[str, Any]:
        """Current Jira user, used to test a connection."""
        return await self.request(connection_id, "GET", "/myself")  # type: ignore[no-any-return]

    async def list_projects(self, connection_id: str) -> List[Dict[str, Any]]:
        """Projects visible to the connection."""
        projects = await self.request(connection_id, "GET", "/project")
        return [
            {"id": p.get("id"), "key": p.get("key"), "name": p.get("name")}
            for p in projects or []
        ]

    # Webhook operations

    async def register_webhook(
        self,
        connection_id: str,
        url: str,
        events: List[str],
        jql: Optional[str] = None,
    ) -> Optional[str]:
        """
        Register a dynamic webhook.

        Returns:
            Jira's webhook id, if one was returned
        """
        webhook: Dict[str, Any] = {"events": events}
        if jql:
            webhook["jqlFilter"] = jql
        result = await self.request(
            connection_id, "POST", "/webhook", json={"url": url, "webhooks": [webhook]}
        )
        for entry in (result or {}).get("webhookRegistrationResult", []):
            if entry.get("createdWebhookId") is not None:
                return str(entry["createdWebhookId"])
            if entry.get("errors"):
                raise RemoteAPIError(
                    f"Webhook registration rejected: {entry['errors']}",
                    response_code=400,
                    response_body=entry,
                )
        return None

    async def delete_webhook(self, connection_id: str, webhook_id: str) -> None:
        """Delete a dynamic webhook; a missing webhook is not an error."""
        await self.request(
            connection_id,
            "DELETE",
            "/webhook",
            json={"webhookIds": [int(webhook_id) if webhook_id.isdigit() else webhook_id]},
            allow_404=True,
        )
