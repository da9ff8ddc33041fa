"""Link between a local BRD and a Jira issue."""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)

from brdsync.models.base import BaseModel, new_id


class SyncMapping(BaseModel):
    """
    One BRD paired with one Jira issue on a connection.

    ``base_snapshot`` holds, per local field, the value both sides agreed on
    at the last successful sync. It is the common ancestor for the three-way
    comparison.
    """

    __tablename__ = "sync_mappings"
    __repr_attrs__ = ("local_id", "remote_key")

    id = Column(String, primary_key=True, default=new_id, index=True)
    connection_id = Column(
        String, ForeignKey("connections.id"), nullable=False, index=True
    )
    local_id = Column(String, nullable=False, index=True)
    remote_key = Column(String, nullable=False, index=True)
    remote_id = Column(String, nullable=True)
    remote_project_key = Column(String, nullable=True)

    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    last_modified_local = Column(DateTime(timezone=True), nullable=True)
    last_modified_remote = Column(DateTime(timezone=True), nullable=True)
    base_snapshot = Column(JSON, nullable=False, default=dict)

    sync_enabled = Column(Boolean, nullable=False, default=True)
    auto_sync = Column(Boolean, nullable=False, default=False)
    conflict_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("connection_id", "local_id", name="uq_mapping_connection_local"),
        UniqueConstraint("connection_id", "remote_key", name="uq_mapping_connection_remote"),
    )
