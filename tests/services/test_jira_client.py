"""Tests for the Jira REST client."""

import json
from types import SimpleNamespace
from typing import Any, Callable, Dict, List
from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from freezegun import freeze_time

from brdsync.core.exceptions import (
    RemoteAPIError,
    RemoteRateLimitError,
    RemoteServerError,
)
from brdsync.services.jira import JiraClient
from brdsync.services.jira.client import parse_retry_after
from brdsync.services.jira.adf import adf_to_text, text_to_adf
from brdsync.services.jira.rate_limiter import RateLimiter
from brdsync.services.jira.transformers import record_to_fields, transform_issue

BASE = "https://api.atlassian.com/ex/jira/cloud-1/rest/api/3"

ISSUE = {
    "id": "10001",
    "key": "PROJ-1",
    "fields": {
        "summary": "Payments revamp",
        "description": text_to_adf("Checkout is slow"),
        "status": {"name": "To Do"},
        "priority": {"name": "High"},
        "labels": ["payments"],
        "issuetype": {"name": "Epic"},
        "project": {"key": "PROJ"},
        "created": "2024-01-02T10:00:00.000+0000",
        "updated": "2024-01-03T10:00:00.000+0000",
        "customfield_10011": "Payments revamp",
    },
}


def _credentials() -> Mock:
    credentials = Mock()
    credentials.get_connection = AsyncMock(
        return_value=SimpleNamespace(id="conn-1", remote_site_id="cloud-1")
    )
    credentials.get_valid_access_token = AsyncMock(return_value="token-1")
    return credentials


def _client(
    handler: Callable[[httpx.Request], httpx.Response], test_settings, **kwargs: Any
) -> JiraClient:
    return JiraClient(
        _credentials(),
        settings=test_settings,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestTransformers:
    """Test issue payload conversion."""

    def test_transform_issue(self):
        record = transform_issue(ISSUE)

        assert record["key"] == "PROJ-1"
        assert record["summary"] == "Payments revamp"
        assert record["description"] == "Checkout is slow"
        assert record["status"] == "To Do"
        assert record["priority"] == "High"
        assert record["project"] == "PROJ"
        assert record["customfield_10011"] == "Payments revamp"

    def test_record_to_fields_skips_read_only(self):
        fields = record_to_fields(
            {"summary": "S", "status": "Done", "key": "PROJ-1", "priority": "Low"}
        )

        assert fields == {"summary": "S", "priority": {"name": "Low"}}

    def test_adf_paragraphs_and_breaks(self):
        text = "First line\nsecond line\n\nNext paragraph"

        assert adf_to_text(text_to_adf(text)) == text

    def test_adf_lists(self):
        doc = {
            "type": "doc",
            "version": 1,
            "content": [
                {
                    "type": "bulletList",
                    "content": [
                        {
                            "type": "listItem",
                            "content": [
                                {"type": "paragraph", "content": [{"type": "text", "text": "a"}]}
                            ],
                        },
                        {
                            "type": "listItem",
                            "content": [
                                {"type": "paragraph", "content": [{"type": "text", "text": "b"}]}
                            ],
                        },
                    ],
                }
            ],
        }

        assert adf_to_text(doc) == "- a\n- b"


class TestRateLimiter:
    """Test the sliding-window limiter."""

    def test_limit_per_key(self):
        limiter = RateLimiter(max_requests=2, window_seconds=60)

        assert limiter.is_allowed("site") is True
        assert limiter.is_allowed("site") is True
        assert limiter.is_allowed("site") is False
        assert limiter.is_allowed("other") is True
        assert 0 < limiter.retry_after("site") <= 60


class TestJiraClient:
    """Test requests against a stubbed Jira."""

    @pytest.mark.asyncio
    async def test_get_issue(self, test_settings):
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=ISSUE)

        client = _client(handler, test_settings)
        record = await client.get_issue("conn-1", "PROJ-1")
        await client.close()

        assert record["key"] == "PROJ-1"
        assert str(seen[0].url) == f"{BASE}/issue/PROJ-1"
        assert seen[0].headers["Authorization"] == "Bearer token-1"

    @pytest.mark.asyncio
    async def test_get_missing_issue(self, test_settings):
        client = _client(lambda request: httpx.Response(404, json={}), test_settings)

        assert await client.get_issue("conn-1", "PROJ-404") is None

    @pytest.mark.asyncio
    async def test_401_refreshes_once(self, test_settings):
        responses = [httpx.Response(401), httpx.Response(200, json=ISSUE)]
        client = _client(lambda request: responses.pop(0), test_settings)

        record = await client.get_issue("conn-1", "PROJ-1")

        assert record["key"] == "PROJ-1"
        client.credentials.get_valid_access_token.assert_awaited_with(
            "conn-1", force_refresh=True
        )

    @pytest.mark.asyncio
    async def test_rate_limited_by_jira(self, test_settings):
        client = _client(
            lambda request: httpx.Response(429, headers={"Retry-After": "7"}, json={}),
            test_settings,
        )

        with pytest.raises(RemoteRateLimitError) as exc_info:
            await client.get_issue("conn-1", "PROJ-1")
        assert exc_info.value.retry_after == 7.0

    @pytest.mark.asyncio
    async def test_rate_limited_with_http_date(self, test_settings):
        client = _client(
            lambda request: httpx.Response(
                429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}, json={}
            ),
            test_settings,
        )

        with pytest.raises(RemoteRateLimitError) as exc_info:
            await client.get_issue("conn-1", "PROJ-1")
        # the date is in the past, so there is nothing left to wait
        assert exc_info.value.retry_after == 0.0

    @pytest.mark.asyncio
    async def test_client_side_rate_limit(self, test_settings):
        client = _client(
            lambda request: httpx.Response(200, json=ISSUE),
            test_settings,
            rate_limiter=RateLimiter(max_requests=1, window_seconds=60),
        )
        await client.get_issue("conn-1", "PROJ-1")

        with pytest.raises(RemoteRateLimitError):
            await client.get_issue("conn-1", "PROJ-1")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, test_settings):
        client = _client(lambda request: httpx.Response(503, text="down"), test_settings)

        with pytest.raises(RemoteServerError) as exc_info:
            await client.get_issue("conn-1", "PROJ-1")
        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_client_error_messages(self, test_settings):
        body = {"errorMessages": ["Bad"], "errors": {"summary": "required"}}
        client = _client(lambda request: httpx.Response(400, json=body), test_settings)

        with pytest.raises(RemoteAPIError) as exc_info:
            await client.update_issue("conn-1", "PROJ-1", {"summary": ""})
        assert "summary: required" in exc_info.value.message
        assert exc_info.value.transient is False

    @pytest.mark.asyncio
    async def test_create_issue_transitions_status(self, test_settings):
        calls: List[Dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content) if request.content else None
            calls.append({"method": request.method, "path": request.url.path, "body": body})
            if request.method == "POST" and request.url.path.endswith("/issue"):
                return httpx.Response(201, json={"id": "10001", "key": "PROJ-1"})
            if request.url.path.endswith("/transitions") and request.method == "GET":
                return httpx.Response(
                    200,
                    json={"transitions": [{"id": "31", "name": "Review", "to": {"name": "In Review"}}]},
                )
            if request.url.path.endswith("/transitions"):
                return httpx.Response(204)
            return httpx.Response(200, json=ISSUE)

        client = _client(handler, test_settings)
        record = await client.create_issue(
            "conn-1", "PROJ", {"summary": "Payments revamp", "status": "In Review"}
        )

        created = calls[0]["body"]["fields"]
        assert created["project"] == {"key": "PROJ"}
        assert created["issuetype"] == {"name": "Epic"}
        assert "status" not in created
        assert calls[2]["body"] == {"transition": {"id": "31"}}
        assert record["key"] == "PROJ-1"

    @pytest.mark.asyncio
    async def test_missing_transition(self, test_settings):
        client = _client(
            lambda request: httpx.Response(200, json={"transitions": []}), test_settings
        )

        with pytest.raises(RemoteAPIError):
            await client.transition_issue("conn-1", "PROJ-1", "Done")

    @pytest.mark.asyncio
    async def test_register_webhook(self, test_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body["webhooks"][0]["jqlFilter"] == "project = PROJ"
            return httpx.Response(
                200, json={"webhookRegistrationResult": [{"createdWebhookId": 55}]}
            )

        client = _client(handler, test_settings)
        webhook_id = await client.register_webhook(
            "conn-1", "https://hook", ["jira:issue_updated"], jql="project = PROJ"
        )

        assert webhook_id == "55"


class TestParseRetryAfter:
    def test_seconds(self):
        assert parse_retry_after("12") == 12.0
        assert parse_retry_after("-3") == 0.0

    @freeze_time("2015-10-21 07:27:30")
    def test_http_date(self):
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 30.0

    def test_missing_or_garbage(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("") is None
        assert parse_retry_after("soon") is None
