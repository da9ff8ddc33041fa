"""Business requirements document model."""

import enum
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import JSON, Boolean, Column, Numeric, String, Text

from brdsync.models.base import BaseModel, new_id


class BRDStatus(str, enum.Enum):
    """Lifecycle status of a BRD."""

    DRAFT = "draft"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class BRDPriority(str, enum.Enum):
    """Business priority of a BRD."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Brd(BaseModel):
    """
    A business requirements document, the local side of a sync mapping.

    The sync engine never touches columns directly; it works on the camelCase
    record produced by :meth:`to_record`.
    """

    __tablename__ = "brds"

    id = Column(String, primary_key=True, default=new_id, index=True)
    title = Column(String, nullable=False)
    problem_statement = Column(Text, nullable=True)
    business_impact = Column(Text, nullable=True)
    status = Column(String(32), nullable=False, default=BRDStatus.DRAFT.value, index=True)
    priority = Column(String(32), nullable=False, default=BRDPriority.MEDIUM.value)
    budget = Column(Numeric(14, 2), nullable=True)
    labels = Column(JSON, nullable=False, default=list)
    created_by = Column(String, nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False, index=True)

    # record key -> column
    RECORD_FIELDS = {
        "title": "title",
        "problemStatement": "problem_statement",
        "businessImpact": "business_impact",
        "status": "status",
        "priority": "priority",
        "budget": "budget",
        "labels": "labels",
        "createdBy": "created_by",
    }

    def to_record(self) -> Dict[str, Any]:
        """Camel-cased view of the BRD used by field mapping."""
        record: Dict[str, Any] = {"id": self.id}
        for key, column in self.RECORD_FIELDS.items():
            value = getattr(self, column)
            if column == "budget" and value is not None:
                value = float(value)
            record[key] = value
        for key, column in (("createdAt", "created_at"), ("updatedAt", "updated_at")):
            value = getattr(self, column)
            record[key] = value.isoformat() if isinstance(value, datetime) else value
        return record

    def apply_record(self, record: Dict[str, Any]) -> None:
        """Copy known record keys onto the columns."""
        for key, column in self.RECORD_FIELDS.items():
            if key in record:
                setattr(self, column, record[key])
