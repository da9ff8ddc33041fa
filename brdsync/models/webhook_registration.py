"""Jira webhook registration model."""

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, String, Text

from brdsync.models.base import BaseModel, new_id


class WebhookRegistration(BaseModel):
    """A webhook registered on the Jira side for one connection.

    ``secret_enc`` holds the key inbound deliveries are signed with,
    encrypted with the same cipher as the OAuth tokens.
    """

    __tablename__ = "webhook_registrations"
    __repr_attrs__ = ("connection_id", "is_active")

    id = Column(String, primary_key=True, default=new_id, index=True)
    connection_id = Column(
        String, ForeignKey("connections.id"), nullable=False, index=True
    )
    remote_webhook_id = Column(String, nullable=True)
    name = Column(String, nullable=True)
    url = Column(String, nullable=False)
    events = Column(JSON, nullable=False, default=list)
    jql = Column(String, nullable=True)
    secret_enc = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    last_triggered_at = Column(DateTime(timezone=True), nullable=True)
