"""Jira connection and OAuth state models."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, String, Text

from brdsync.models.base import BaseModel, new_id
from brdsync.models.base_log import BaseLogModel
from brdsync.utils.timeutils import ensure_utc


class Connection(BaseModel):
    """
    An authorised link between a user and a Jira Cloud site.

    Tokens are stored encrypted; the credential manager is the only code
    that reads or writes the ``*_enc`` columns. Connections are deactivated,
    never deleted, so job history keeps pointing at a real row.
    """

    __tablename__ = "connections"
    __repr_attrs__ = ("site_name", "is_active")

    id = Column(String, primary_key=True, default=new_id, index=True)
    user_id = Column(String, nullable=False, index=True)

    remote_site_id = Column(String, nullable=False, index=True)
    site_url = Column(String, nullable=True)
    site_name = Column(String, nullable=True)

    access_token_enc = Column(Text, nullable=False)
    refresh_token_enc = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(JSON, nullable=False, default=list)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    requires_reauth = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text, nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_connection_user_site", "user_id", "remote_site_id"),
    )

    def expires_within(self, now: datetime, seconds: int) -> bool:
        """Whether the access token expires within ``seconds`` of ``now``."""
        expires_at = ensure_utc(self.token_expires_at)  # type: ignore[arg-type]
        if expires_at is None:
            return True
        return (expires_at - now).total_seconds() <= seconds


class OAuthState(BaseLogModel):
    """Single-use anti-CSRF state issued with an authorization URL."""

    __tablename__ = "oauth_states"

    state = Column(String(64), primary_key=True)
    user_id = Column(String, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
