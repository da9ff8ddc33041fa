"""Sync job model for tracking reconciliation work."""

import enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text

from brdsync.models.base import BaseModel, new_id
from brdsync.utils.timeutils import ensure_utc, utcnow


class SyncDirection(str, enum.Enum):
    """Which side of a mapping a job writes to."""

    BRD_TO_JIRA = "brd_to_jira"
    JIRA_TO_BRD = "jira_to_brd"
    BIDIRECTIONAL = "bidirectional"


class SyncOperationType(str, enum.Enum):
    """What triggered a sync job."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    BULK_IMPORT = "bulk_import"
    BULK_EXPORT = "bulk_export"
    SCHEDULED_SYNC = "scheduled_sync"
    WEBHOOK_SYNC = "webhook_sync"


class SyncJobStatus(str, enum.Enum):
    """Status of a sync job."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (
    SyncJobStatus.COMPLETED.value,
    SyncJobStatus.FAILED.value,
    SyncJobStatus.CANCELLED.value,
)
CANCELLABLE_STATUSES = (
    SyncJobStatus.PENDING.value,
    SyncJobStatus.IN_PROGRESS.value,
    SyncJobStatus.RETRYING.value,
)


class SyncJob(BaseModel):
    """
    Model for tracking sync jobs and their progress.

    A job covers one or more items (local ids or remote keys). Per-item
    outcomes live in ``job_metadata["items"]`` so a retried job can skip
    what already succeeded.
    """

    __tablename__ = "sync_jobs"
    __repr_attrs__ = ("operation_type", "status")

    id = Column(String, primary_key=True, default=new_id, index=True)
    connection_id = Column(
        String, ForeignKey("connections.id"), nullable=True, index=True
    )

    direction = Column(String(32), nullable=False)
    operation_type = Column(String(32), nullable=False, index=True)
    status = Column(
        String(32), nullable=False, default=SyncJobStatus.PENDING.value, index=True
    )

    # Progress tracking
    progress = Column(Integer, default=0, nullable=False)  # 0-100
    total_items = Column(Integer, default=0, nullable=False)
    processed_items = Column(Integer, default=0, nullable=False)
    failed_items = Column(Integer, default=0, nullable=False)

    local_ids = Column(JSON, nullable=False, default=list)
    remote_keys = Column(JSON, nullable=False, default=list)

    error = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True, index=True)

    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_by = Column(String, nullable=False, default="system")
    job_metadata = Column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("idx_sync_job_status_created", "status", "created_at"),
        Index("idx_sync_job_connection_status", "connection_id", "status"),
    )

    @property
    def items(self) -> List[str]:
        """Item identifiers the job works through, in order."""
        return list(self.local_ids or []) + list(self.remote_keys or [])

    @property
    def metadata_dict(self) -> Dict[str, Any]:
        return dict(self.job_metadata or {})

    def update_progress(self) -> None:
        """Recompute the progress percentage from the item counters."""
        done = (self.processed_items or 0) + (self.failed_items or 0)
        if self.total_items and self.total_items > 0:
            progress = int(done * 100 // self.total_items)
        else:
            progress = 0
        # never move backwards
        self.progress = max(self.progress or 0, min(progress, 100))  # type: ignore[assignment]

    def is_finished(self) -> bool:
        """Check if job has finished (success, failure, or cancelled)."""
        return self.status in TERMINAL_STATUSES

    def can_be_cancelled(self) -> bool:
        """Check if job can be cancelled."""
        return self.status in CANCELLABLE_STATUSES

    def can_be_retried(self) -> bool:
        """Check if a failed job still has retries left."""
        return bool(
            self.status == SyncJobStatus.FAILED.value
            and (self.retry_count or 0) < (self.max_retries or 0)
        )

    def get_duration_seconds(self) -> Optional[float]:
        """Get job duration in seconds."""
        started = ensure_utc(self.started_at)  # type: ignore[arg-type]
        if not started:
            return None
        end_time = ensure_utc(self.completed_at) or utcnow()  # type: ignore[arg-type]
        return float((end_time - started).total_seconds())

    def to_dict(self, exclude: Optional[set] = None) -> Dict[str, Any]:
        """Convert to dictionary with computed fields."""
        data = super().to_dict(exclude)
        data["duration_seconds"] = self.get_duration_seconds()
        data["is_finished"] = self.is_finished()
        data["can_cancel"] = self.can_be_cancelled()
        data["can_retry"] = self.can_be_retried()
        return data
