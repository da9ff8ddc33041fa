"""Storage for single-use OAuth ``state`` values."""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.models import OAuthState
from brdsync.utils.timeutils import ensure_utc, utcnow


class OAuthStateStore(ABC):
    """Bind a state token to a user until it is consumed or expires."""

    @abstractmethod
    async def save(self, state: str, user_id: str, expires_at: datetime) -> None:
        """Remember a freshly issued state."""

    @abstractmethod
    async def consume(self, state: str) -> Optional[str]:
        """
        Remove a state and return its user.

        Returns None when the state is unknown, already used or expired.
        """

    @abstractmethod
    async def purge_expired(self) -> int:
        """Drop expired states, returning how many were removed."""


class InMemoryOAuthStateStore(OAuthStateStore):
    """Process-local store, for tests and single-process deployments."""

    def __init__(self) -> None:
        self._states: Dict[str, Tuple[str, datetime]] = {}
        self._lock = asyncio.Lock()

    async def save(self, state: str, user_id: str, expires_at: datetime) -> None:
        async with self._lock:
            self._states[state] = (user_id, ensure_utc(expires_at))  # type: ignore[assignment]

    async def consume(self, state: str) -> Optional[str]:
        async with self._lock:
            entry = self._states.pop(state, None)
        if entry is None:
            return None
        user_id, expires_at = entry
        if utcnow() > expires_at:
            return None
        return user_id

    async def purge_expired(self) -> int:
        now = utcnow()
        async with self._lock:
            expired = [key for key, (_, exp) in self._states.items() if now > exp]
            for key in expired:
                del self._states[key]
        return len(expired)


class DatabaseOAuthStateStore(OAuthStateStore):
    """States kept in the ``oauth_states`` table."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory

    async def save(self, state: str, user_id: str, expires_at: datetime) -> None:
        async with self._session_factory() as db:
            db.add(
                OAuthState(
                    state=state,
                    user_id=user_id,
                    expires_at=expires_at,
                    created_at=utcnow(),
                )
            )
            await db.commit()

    async def consume(self, state: str) -> Optional[str]:
        async with self._session_factory() as db:
            result = await db.execute(select(OAuthState).filter(OAuthState.state == state))
            row = result.scalar_one_or_none()
            if row is None:
                return None
            user_id = row.user_id
            expires_at = ensure_utc(row.expires_at)  # type: ignore[arg-type]
            deleted = await db.execute(
                delete(OAuthState).where(OAuthState.state == state)
            )
            await db.commit()
        # a concurrent callback consumed it first
        if not deleted.rowcount:
            return None
        if expires_at is None or utcnow() > expires_at:
            return None
        return str(user_id)

    async def purge_expired(self) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                delete(OAuthState).where(OAuthState.expires_at < utcnow())
            )
            await db.commit()
            return int(result.rowcount or 0)
