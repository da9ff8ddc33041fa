"""
Request correlation and access logging for the sync API.
"""

import logging
import re
import time
import uuid
from typing import Awaitable, Callable, Optional
from urllib.parse import parse_qsl, urlencode

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Jira stamps every webhook delivery with this header
JIRA_DELIVERY_HEADER = "X-Atlassian-Webhook-Identifier"

# OAuth callback parameters that must not reach the logs
SENSITIVE_PARAMS = frozenset({"code", "state"})

QUIET_PATHS = frozenset({"/health", "/version", "/api/health"})

_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def resolve_request_id(request: Request) -> str:
    """
    Correlation id for a request.

    A well-formed caller-supplied ``X-Request-ID`` wins, then Jira's webhook
    delivery identifier, then a fresh UUID.
    """
    for header in ("X-Request-ID", JIRA_DELIVERY_HEADER):
        candidate = request.headers.get(header)
        if candidate and _REQUEST_ID.match(candidate):
            return candidate
    return str(uuid.uuid4())


def redact_query(query: str) -> str:
    if not query:
        return ""
    pairs = [
        (key, "***" if key in SENSITIVE_PARAMS else value)
        for key, value in parse_qsl(query, keep_blank_values=True)
    ]
    return urlencode(pairs)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a correlation id to ``request.state`` and the response."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = resolve_request_id(request)
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Access log for the API.

    Health checks log at DEBUG so monitoring does not drown out sync
    traffic. OAuth ``code`` and ``state`` values are masked.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        start_time = time.monotonic()
        path = request.url.path
        log = logger.debug if path in QUIET_PATHS else logger.info

        extra = {
            "request_id": getattr(request.state, "request_id", "unknown"),
            "method": request.method,
            "path": path,
            "query": redact_query(request.url.query),
            "client": request.client.host if request.client else "unknown",
        }
        delivery: Optional[str] = request.headers.get(JIRA_DELIVERY_HEADER)
        if delivery:
            extra["jira_delivery"] = delivery

        response = await call_next(request)

        elapsed = time.monotonic() - start_time
        response.headers["X-Process-Time"] = f"{elapsed:.3f}"
        log(
            f"{request.method} {path} -> {response.status_code} ({elapsed:.3f}s)",
            extra={**extra, "status_code": response.status_code},
        )
        return response
