"""Base model for the sync tables."""

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import Column, DateTime, func

from brdsync.core.database import Base
from brdsync.utils.timeutils import ensure_utc

# Columns holding TokenCipher ciphertext end with this suffix
ENCRYPTED_SUFFIX = "_enc"

IMMUTABLE_COLUMNS = frozenset({"id", "created_at", "updated_at"})


def new_id() -> str:
    return str(uuid.uuid4())


def model_repr(model: Any, extra: Iterable[str] = ()) -> str:
    """``<Name(pk=..., extra=...)>`` without touching unloaded relationships."""
    attrs = [
        f"{column.name}={getattr(model, column.key)!r}"
        for column in model.__table__.columns
        if column.primary_key
    ]
    attrs.extend(f"{name}={getattr(model, name, None)!r}" for name in extra)
    return f"<{model.__class__.__name__}({', '.join(attrs)})>"


class BaseModel(Base):
    """
    Mutable sync table with creation and modification timestamps.

    ``to_dict`` never includes encrypted columns, so API responses built
    from it cannot leak OAuth tokens or webhook secrets. Subclasses list
    the attributes worth showing in ``repr`` in ``__repr_attrs__``.
    """

    __abstract__ = True
    __allow_unmapped__ = True
    __repr_attrs__: Tuple[str, ...] = ()

    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
        index=True,
    )

    @classmethod
    def encrypted_columns(cls) -> Set[str]:
        return {
            column.key
            for column in cls.__table__.columns
            if column.key.endswith(ENCRYPTED_SUFFIX)
        }

    def to_dict(self, exclude: Optional[Set[str]] = None) -> Dict[str, Any]:
        """
        Public view of the row.

        Timestamps come back as UTC ISO-8601 strings; SQLite hands them over
        naive.
        """
        hidden = (exclude or set()) | self.encrypted_columns()
        data: Dict[str, Any] = {}
        for column in self.__table__.columns:
            if column.key in hidden:
                continue
            value = getattr(self, column.key)
            if isinstance(value, datetime):
                value = ensure_utc(value).isoformat()  # type: ignore[union-attr]
            data[column.name] = value
        return data

    def apply_changes(self, data: Dict[str, Any]) -> List[str]:
        """
        Copy column values from ``data``; returns the keys that changed.

        Keys that are not columns, the primary key, the timestamps and the
        encrypted columns are left alone.
        """
        writable = {column.key for column in self.__table__.columns}
        writable -= IMMUTABLE_COLUMNS | self.encrypted_columns()

        changed = []
        for key, value in data.items():
            if key in writable and getattr(self, key) != value:
                setattr(self, key, value)
                changed.append(key)
        return changed

    def __repr__(self) -> str:
        return model_repr(self, self.__repr_attrs__)
