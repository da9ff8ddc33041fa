"""Base model for log/audit tables that are append-only."""

from sqlalchemy import Column, DateTime, func

from brdsync.core.database import Base
from brdsync.models.base import model_repr


class BaseLogModel(Base):
    """Base model for append-only log tables.

    Unlike BaseModel, this only includes created_at since log entries
    are immutable and never updated.
    """

    __abstract__ = True
    __allow_unmapped__ = True

    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    def __repr__(self) -> str:
        return model_repr(self)
