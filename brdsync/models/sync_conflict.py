"""Sync conflict model."""

import enum

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, String

from brdsync.models.base import BaseModel, new_id


class ConflictType(str, enum.Enum):
    """Kind of divergence detected between the two sides."""

    FIELD_CHANGE = "field_change"
    STATUS_MISMATCH = "status_mismatch"
    DELETION = "deletion"
    CONCURRENT_MODIFICATION = "concurrent_modification"


class ResolutionStrategy(str, enum.Enum):
    """How a conflict is settled."""

    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    MERGE = "merge"
    MANUAL = "manual"


class ConflictStatus(str, enum.Enum):
    """Lifecycle of a conflict record."""

    PENDING = "pending"
    RESOLVED = "resolved"
    IGNORED = "ignored"


RECORD_FIELD = "__record__"


class SyncConflict(BaseModel):
    """
    A field whose local and remote values diverged from their common base.

    Rows are immutable once they leave ``pending``.
    """

    __tablename__ = "sync_conflicts"
    __repr_attrs__ = ("field", "status")

    id = Column(String, primary_key=True, default=new_id, index=True)
    sync_job_id = Column(String, ForeignKey("sync_jobs.id"), nullable=True, index=True)
    mapping_id = Column(
        String, ForeignKey("sync_mappings.id"), nullable=False, index=True
    )
    local_id = Column(String, nullable=True, index=True)
    remote_key = Column(String, nullable=True)

    conflict_type = Column(String(32), nullable=False)
    field = Column(String, nullable=False)
    base_value = Column(JSON, nullable=True)
    local_value = Column(JSON, nullable=True)
    remote_value = Column(JSON, nullable=True)

    resolution_strategy = Column(String(32), nullable=True)
    resolved_value = Column(JSON, nullable=True)
    resolved_by = Column(String, nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True, index=True)
    status = Column(
        String(32), nullable=False, default=ConflictStatus.PENDING.value, index=True
    )

    __table_args__ = (
        Index("idx_conflict_mapping_status", "mapping_id", "status"),
        Index("idx_conflict_field_type_status", "field", "conflict_type", "status"),
    )

    def is_pending(self) -> bool:
        return self.status == ConflictStatus.PENDING.value
