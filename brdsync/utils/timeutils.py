"""Timezone helpers.

SQLite hands back naive datetimes even for ``DateTime(timezone=True)``
columns, PostgreSQL hands back aware ones. Everything in the sync engine is
compared as aware UTC.
"""

from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings (including Jira's ``+0000`` offsets)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Jira sends offsets without a colon: 2024-01-02T10:00:00.000+0000
    if len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit():
        text = f"{text[:-2]}:{text[-2:]}"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None
