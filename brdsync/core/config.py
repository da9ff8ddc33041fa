"""
Application configuration and settings management.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Application-specific settings."""

    name: str = Field("BRD Sync", description="Application name")
    version: str = Field("0.1.0", description="Application version")
    debug: bool = Field(False, description="Debug mode")
    environment: str = Field(
        "production", description="Environment (development, staging, production)"
    )

    model_config = SettingsConfigDict(env_prefix="APP_")


class DatabaseSettings(BaseSettings):
    """Database configuration settings."""

    url: str = Field("sqlite:///./brdsync.db", description="Database connection URL")
    echo: bool = Field(False, description="Echo SQL statements")
    pool_recycle: int = Field(
        3600, description="Connection pool recycle time in seconds"
    )

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    @field_validator("url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Ensure database URL is properly formatted."""
        if not v:
            raise ValueError("Database URL cannot be empty")
        return v


class JiraSettings(BaseSettings):
    """Jira Cloud OAuth and REST API settings."""

    client_id: Optional[str] = Field(None, description="OAuth 2.0 client id")
    client_secret: Optional[str] = Field(None, description="OAuth 2.0 client secret")
    redirect_uri: str = Field(
        "http://localhost:8000/api/auth/callback",
        description="OAuth callback URL registered with Atlassian",
    )
    scopes: list[str] = Field(
        [
            "read:jira-work",
            "write:jira-work",
            "read:jira-user",
            "manage:jira-webhook",
            "offline_access",
        ],
        description="Requested OAuth scopes",
    )
    auth_url: str = Field(
        "https://auth.atlassian.com/authorize", description="Authorization endpoint"
    )
    token_url: str = Field(
        "https://auth.atlassian.com/oauth/token", description="Token endpoint"
    )
    resources_url: str = Field(
        "https://api.atlassian.com/oauth/token/accessible-resources",
        description="Accessible resources endpoint",
    )
    api_base_url: str = Field(
        "https://api.atlassian.com/ex/jira", description="Jira Cloud API gateway"
    )
    request_timeout: int = Field(30, description="API request timeout in seconds")
    rate_limit_per_minute: int = Field(
        100, description="Maximum Jira API requests per minute"
    )
    token_refresh_buffer_seconds: int = Field(
        300, description="Refresh access tokens this long before they expire"
    )
    oauth_state_ttl_seconds: int = Field(
        600, description="Lifetime of an OAuth anti-CSRF state token"
    )

    model_config = SettingsConfigDict(env_prefix="JIRA_")

    @field_validator("api_base_url", "auth_url", "token_url", "resources_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Remove trailing slash for consistency."""
        return v.rstrip("/")

    @property
    def is_configured(self) -> bool:
        """Whether OAuth client credentials are present."""
        return bool(self.client_id and self.client_secret)


class EncryptionSettings(BaseSettings):
    """Token encryption settings."""

    key: Optional[str] = Field(None, description="Secret used to derive the AES key")
    salt: str = Field("brdsync-token-salt", description="Key derivation salt")

    model_config = SettingsConfigDict(env_prefix="ENCRYPTION_")


class SyncSettings(BaseSettings):
    """Sync engine settings."""

    concurrency: int = Field(3, ge=1, description="Maximum concurrent sync jobs")
    max_retries: int = Field(3, ge=0, description="Default retries per job")
    backoff_seconds: list[float] = Field(
        [1, 5, 15, 60], description="Retry delays indexed by retry count"
    )
    state_backend: str = Field(
        "database", description="OAuth state store backend (database, memory)"
    )
    scheduled_interval_minutes: int = Field(
        0, ge=0, description="Interval for scheduled syncs, 0 disables"
    )
    cleanup_days: int = Field(30, ge=1, description="Age of terminal jobs to purge")
    webhook_base_url: Optional[str] = Field(
        None, description="Public base URL Jira should deliver webhooks to"
    )
    default_project_key: Optional[str] = Field(
        None, description="Jira project used when an export gives none"
    )

    model_config = SettingsConfigDict(env_prefix="SYNC_")

    @field_validator("backoff_seconds")
    @classmethod
    def validate_backoff(cls, v: list[float]) -> list[float]:
        """Backoff schedule must be non-empty and non-negative."""
        if not v:
            raise ValueError("Backoff schedule cannot be empty")
        if any(delay < 0 for delay in v):
            raise ValueError("Backoff delays must be non-negative")
        return v

    @field_validator("state_backend")
    @classmethod
    def validate_state_backend(cls, v: str) -> str:
        """Only known state store backends are accepted."""
        if v not in ("database", "memory"):
            raise ValueError("state_backend must be 'database' or 'memory'")
        return v


class SecuritySettings(BaseSettings):
    """Security-related settings."""

    secret_key: str = Field(
        "change-this-in-production-to-a-random-string",
        description="Secret key for verifying bearer tokens",
    )
    algorithm: str = Field("HS256", description="JWT algorithm")

    model_config = SettingsConfigDict(env_prefix="SECURITY_")


class CORSSettings(BaseSettings):
    """CORS configuration settings."""

    origins: list[str] = Field(
        ["*"],
        description="Allowed origins",
    )
    credentials: bool = Field(True, description="Allow credentials")
    methods: list[str] = Field(["*"], description="Allowed methods")
    headers: list[str] = Field(["*"], description="Allowed headers")

    model_config = SettingsConfigDict(env_prefix="CORS_")


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    level: str = Field("INFO", description="Logging level")
    format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(job_context)s%(message)s",
        description="Log format",
    )
    json_logs: bool = Field(False, description="Use JSON logging format")

    model_config = SettingsConfigDict(env_prefix="LOGGING_")


class Settings(BaseSettings):
    """Main settings class combining all configuration sections."""

    # Sub-settings
    app: AppSettings = Field(default_factory=lambda: AppSettings())  # type: ignore[call-arg]
    database: DatabaseSettings = Field(default_factory=lambda: DatabaseSettings())  # type: ignore[call-arg]
    jira: JiraSettings = Field(default_factory=lambda: JiraSettings())  # type: ignore[call-arg]
    encryption: EncryptionSettings = Field(default_factory=lambda: EncryptionSettings())  # type: ignore[call-arg]
    sync: SyncSettings = Field(default_factory=lambda: SyncSettings())  # type: ignore[call-arg]
    security: SecuritySettings = Field(default_factory=lambda: SecuritySettings())  # type: ignore[call-arg]
    cors: CORSSettings = Field(default_factory=lambda: CORSSettings())  # type: ignore[call-arg]
    logging: LoggingSettings = Field(default_factory=lambda: LoggingSettings())  # type: ignore[call-arg]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings
    """
    return Settings()
