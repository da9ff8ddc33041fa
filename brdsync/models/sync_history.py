"""Append-only audit trail of sync job transitions."""

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, func

from brdsync.models.base_log import BaseLogModel


class SyncHistoryEntry(BaseLogModel):
    """
    One transition or notable event in a job's life.

    The autoincrement id gives a strict order per job even when two entries
    share a timestamp.
    """

    __tablename__ = "sync_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, ForeignKey("sync_jobs.id"), nullable=False, index=True)
    timestamp = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    action = Column(String, nullable=False)
    details = Column(JSON, nullable=True)
    performed_by = Column(String, nullable=False, default="system")

    def to_dict(self) -> Dict[str, Any]:
        timestamp = self.timestamp
        return {
            "id": self.id,
            "job_id": self.job_id,
            "timestamp": (
                timestamp.isoformat() if isinstance(timestamp, datetime) else timestamp
            ),
            "action": self.action,
            "details": self.details or {},
            "performed_by": self.performed_by,
        }
