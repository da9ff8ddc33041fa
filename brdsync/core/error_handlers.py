"""
Exception handlers for the sync API.

Every error leaves the service as ``{"error": {...}}`` carrying the
request id, so a failed job or webhook can be traced back through the logs.
"""

import logging
import math
from typing import TYPE_CHECKING, Any, Dict, Optional, Union

if TYPE_CHECKING:
    from fastapi import FastAPI

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from brdsync.core.exceptions import (
    BrdSyncException,
    OAuthError,
    RemoteAPIError,
    RemoteRateLimitError,
)

logger = logging.getLogger(__name__)

# HTTP status per sync error code. Codes not listed keep the status the
# exception was raised with.
ERROR_STATUS: Dict[str, int] = {
    "RESOURCE_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "VALIDATION_ERROR": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "FIELD_MAPPING_ERROR": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "DUPLICATE_MAPPING": status.HTTP_409_CONFLICT,
    "SYNC_DISABLED": status.HTTP_409_CONFLICT,
    "INVALID_JOB_STATE": status.HTTP_409_CONFLICT,
    "INVALID_CONFLICT_STATE": status.HTTP_409_CONFLICT,
    "RATE_LIMIT_ERROR": status.HTTP_429_TOO_MANY_REQUESTS,
    "REMOTE_API_ERROR": status.HTTP_502_BAD_GATEWAY,
    "REMOTE_UNAVAILABLE": status.HTTP_503_SERVICE_UNAVAILABLE,
    "FEATURE_DISABLED": status.HTTP_503_SERVICE_UNAVAILABLE,
    "TOKEN_DECRYPTION_FAILED": status.HTTP_401_UNAUTHORIZED,
}

# OAuth failures after which the user has to connect Jira again
REAUTHORIZE_CODES = frozenset(
    {
        OAuthError.TOKEN_REFRESH_FAILED,
        OAuthError.CONNECTION_INACTIVE,
        "TOKEN_DECRYPTION_FAILED",
    }
)

HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "UNPROCESSABLE_ENTITY",
    429: "TOO_MANY_REQUESTS",
    503: "SERVICE_UNAVAILABLE",
}


def status_for(exc: BrdSyncException) -> int:
    return ERROR_STATUS.get(exc.error_code, exc.status_code)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def error_response(
    request: Request,
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    request_id = _request_id(request)
    body: Dict[str, Any] = {
        "message": message,
        "error_code": error_code,
        "request_id": request_id,
    }
    if details is not None:
        body["details"] = details
    return JSONResponse(
        status_code=status_code,
        content={"error": body},
        headers={"X-Request-ID": request_id, **(headers or {})},
    )


async def brdsync_exception_handler(
    request: Request, exc: BrdSyncException
) -> JSONResponse:
    """
    Render a sync service exception.

    Rate limits carry ``Retry-After``; OAuth failures that need the user to
    reconnect are flagged with ``details.reauthorize``. Upstream Jira
    failures are logged with Jira's own status code.
    """
    status_code = status_for(exc)
    details = dict(exc.details)
    headers: Dict[str, str] = {}

    if isinstance(exc, RemoteRateLimitError) and exc.retry_after is not None:
        headers["Retry-After"] = str(max(math.ceil(exc.retry_after), 0))
    if exc.error_code in REAUTHORIZE_CODES:
        details["reauthorize"] = True

    extra = {
        "request_id": _request_id(request),
        "error_code": exc.error_code,
        "status_code": status_code,
    }
    if isinstance(exc, RemoteAPIError):
        logger.warning(
            f"Jira call failed ({exc.response_code}): {exc.message}", extra=extra
        )
    elif status_code >= 500:
        logger.error(f"Request failed: {exc.message}", extra=extra)
    else:
        logger.info(f"Request rejected: {exc.message}", extra=extra)

    return error_response(
        request, status_code, exc.error_code, exc.message, details, headers
    )


async def validation_exception_handler(
    request: Request, exc: Union[RequestValidationError, PydanticValidationError]
) -> JSONResponse:
    """
    Render request validation errors.

    ``details.field`` names the first offending field, matching the shape
    the service's own ``ValidationError`` uses.
    """
    errors = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ())]
        if loc and loc[0] in ("body", "query", "path", "header"):
            loc = loc[1:]
        errors.append(
            {
                "field": ".".join(loc),
                "message": error.get("msg", "Invalid value"),
                "type": error.get("type", "value_error"),
            }
        )

    details: Dict[str, Any] = {"errors": errors}
    if errors and errors[0]["field"]:
        details["field"] = errors[0]["field"]

    logger.info(
        f"Invalid request to {request.url.path}: {len(errors)} error(s)",
        extra={"request_id": _request_id(request), "errors": errors},
    )
    return error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "VALIDATION_ERROR",
        "Validation error",
        details,
    )


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Render framework HTTP errors such as unknown routes."""
    logger.info(
        f"HTTP {exc.status_code} for {request.url.path}: {exc.detail}",
        extra={"request_id": _request_id(request)},
    )
    return error_response(
        request,
        exc.status_code,
        HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
        str(exc.detail),
        headers=dict(exc.headers or {}),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort; the traceback goes to the log, never to the caller."""
    logger.exception(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}",
        extra={"request_id": _request_id(request)},
    )
    return error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_SERVER_ERROR",
        "An unexpected error occurred",
    )


def register_exception_handlers(app: "FastAPI") -> None:
    app.add_exception_handler(BrdSyncException, brdsync_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, general_exception_handler)
