"""
Custom exception classes for the BRD sync service.
"""

from typing import Any, Dict, Optional


class BrdSyncException(Exception):
    """Base exception for the sync service."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize the exception.

        Args:
            message: Error message
            status_code: HTTP status code
            error_code: Application-specific error code
            details: Additional error details
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}


class NotFoundError(BrdSyncException):
    """Resource not found error."""

    def __init__(self, resource: str, resource_id: Any):
        """
        Initialize not found error.

        Args:
            resource: Resource type (e.g., "SyncJob", "Connection")
            resource_id: Resource identifier
        """
        super().__init__(
            message=f"{resource} with id '{resource_id}' not found",
            status_code=404,
            error_code="RESOURCE_NOT_FOUND",
            details={"resource": resource, "resource_id": str(resource_id)},
        )


class JobNotFoundError(NotFoundError):
    """Sync job not found error."""

    def __init__(self, job_id: str):
        super().__init__(resource="SyncJob", resource_id=job_id)


class ConflictNotFoundError(NotFoundError):
    """Sync conflict not found error."""

    def __init__(self, conflict_id: str):
        super().__init__(resource="SyncConflict", resource_id=conflict_id)


class MappingNotFoundError(NotFoundError):
    """Sync mapping not found error."""

    def __init__(self, mapping_id: str):
        super().__init__(resource="SyncMapping", resource_id=mapping_id)


class ConnectionNotFoundError(NotFoundError):
    """Jira connection not found error."""

    def __init__(self, connection_id: str):
        super().__init__(resource="Connection", resource_id=connection_id)


class ValidationError(BrdSyncException):
    """Validation error."""

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        """
        Initialize validation error.

        Args:
            message: Error message
            field: Field that failed validation
            value: Invalid value
        """
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=details,
        )


class FieldMappingError(ValidationError):
    """A record could not be translated by the field mapping rules."""

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        super().__init__(message, field=field, value=value)
        self.error_code = "FIELD_MAPPING_ERROR"


class DuplicateMappingError(BrdSyncException):
    """A local record or remote issue is already mapped on this connection."""

    def __init__(self, field: str, value: str):
        super().__init__(
            message=f"A sync mapping already exists for {field} '{value}'",
            status_code=409,
            error_code="DUPLICATE_MAPPING",
            details={"field": field, "value": value},
        )


class SyncDisabledError(BrdSyncException):
    """Sync was requested for a mapping that has sync disabled."""

    def __init__(self, mapping_id: str):
        super().__init__(
            message=f"Sync is disabled for mapping '{mapping_id}'",
            status_code=409,
            error_code="SYNC_DISABLED",
            details={"mapping_id": mapping_id},
        )


class JobStateError(BrdSyncException):
    """The requested operation is not allowed in the job's current status."""

    def __init__(self, job_id: str, status: str, operation: str, reason: str = ""):
        message = f"Cannot {operation} job '{job_id}' in status '{status}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message=message,
            status_code=409,
            error_code="INVALID_JOB_STATE",
            details={"job_id": job_id, "status": status, "operation": operation},
        )


class ConflictStateError(BrdSyncException):
    """The conflict has already been resolved or ignored."""

    def __init__(self, conflict_id: str, status: str):
        super().__init__(
            message=f"Conflict '{conflict_id}' is already {status}",
            status_code=409,
            error_code="INVALID_CONFLICT_STATE",
            details={"conflict_id": conflict_id, "status": status},
        )


class OAuthError(BrdSyncException):
    """OAuth authorization, exchange or refresh failure."""

    INVALID_STATE = "INVALID_STATE"
    OAUTH_DENIED = "OAUTH_DENIED"
    TOKEN_EXCHANGE_FAILED = "TOKEN_EXCHANGE_FAILED"
    TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
    NO_ACCESSIBLE_RESOURCES = "NO_ACCESSIBLE_RESOURCES"
    CONNECTION_INACTIVE = "CONNECTION_INACTIVE"

    _STATUS_CODES = {
        INVALID_STATE: 400,
        OAUTH_DENIED: 400,
        TOKEN_EXCHANGE_FAILED: 502,
        TOKEN_REFRESH_FAILED: 401,
        NO_ACCESSIBLE_RESOURCES: 400,
        CONNECTION_INACTIVE: 401,
    }

    def __init__(
        self,
        code: str,
        message: str,
        upstream: Any = None,
        connection_id: Optional[str] = None,
    ):
        """
        Initialize OAuth error.

        Args:
            code: One of the OAuthError code constants
            message: Error message
            upstream: Error payload returned by the authorization server
            connection_id: Connection affected, if any
        """
        details: Dict[str, Any] = {}
        if upstream is not None:
            details["upstream"] = upstream
        if connection_id:
            details["connection_id"] = connection_id

        super().__init__(
            message=message,
            status_code=self._STATUS_CODES.get(code, 400),
            error_code=code,
            details=details,
        )
        self.upstream = upstream


class TokenDecryptionError(OAuthError):
    """Stored token ciphertext could not be authenticated or decrypted."""

    def __init__(self, connection_id: Optional[str] = None):
        super().__init__(
            code=OAuthError.CONNECTION_INACTIVE,
            message="Stored credentials could not be decrypted; re-authorization required",
            connection_id=connection_id,
        )
        self.error_code = "TOKEN_DECRYPTION_FAILED"


class RemoteAPIError(BrdSyncException):
    """Jira REST API error response."""

    transient = False

    def __init__(
        self,
        message: str,
        response_code: Optional[int] = None,
        response_body: Any = None,
        status_code: int = 502,
    ):
        """
        Initialize remote API error.

        Args:
            message: Error message
            response_code: HTTP response code from Jira
            response_body: Response body from Jira
            status_code: HTTP status exposed to our callers
        """
        details: Dict[str, Any] = {}
        if response_code is not None:
            details["response_code"] = response_code
        if response_body:
            details["response_body"] = response_body

        super().__init__(
            message=message,
            status_code=status_code,
            error_code="REMOTE_API_ERROR",
            details=details,
        )
        self.response_code = response_code


class RemoteServerError(RemoteAPIError):
    """Jira returned a 5xx or could not be reached in time."""

    transient = True

    def __init__(
        self,
        message: str,
        response_code: Optional[int] = None,
        response_body: Any = None,
    ):
        super().__init__(message, response_code, response_body, status_code=503)
        self.error_code = "REMOTE_UNAVAILABLE"


class RemoteRateLimitError(RemoteAPIError):
    """Jira (or the client-side limiter) rejected the request for rate limiting."""

    transient = True

    def __init__(self, retry_after: Optional[float] = None, response_body: Any = None):
        super().__init__(
            "Jira API rate limit exceeded", 429, response_body, status_code=429
        )
        self.error_code = "RATE_LIMIT_ERROR"
        self.retry_after = retry_after
        if retry_after is not None:
            self.details["retry_after"] = retry_after


class ConfigurationError(BrdSyncException):
    """Configuration error."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        """
        Initialize configuration error.

        Args:
            message: Error message
            config_key: Configuration key that has issue
        """
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(
            message=message,
            status_code=500,
            error_code="CONFIGURATION_ERROR",
            details=details,
        )


class FeatureDisabledError(BrdSyncException):
    """A feature is unavailable because its configuration is incomplete."""

    def __init__(self, feature: str, missing: Optional[list] = None):
        super().__init__(
            message=f"{feature} is disabled: configuration incomplete",
            status_code=503,
            error_code="FEATURE_DISABLED",
            details={"feature": feature, "missing": missing or []},
        )


def is_transient(exc: BaseException) -> bool:
    """Whether a failure is worth retrying on the job backoff schedule."""
    return bool(getattr(exc, "transient", False))
