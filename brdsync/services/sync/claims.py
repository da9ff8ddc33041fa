"""Claimed-job tracking and per-mapping locks for the sync queue."""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Set, Tuple


class ClaimStore(ABC):
    """
    Set of job ids currently owned by a worker.

    A multi-process deployment needs a shared implementation; only the
    in-memory one is provided.
    """

    @abstractmethod
    async def claim(self, job_id: str) -> bool:
        """Take ownership of a job; False if it is already claimed."""

    @abstractmethod
    async def release(self, job_id: str) -> None:
        """Give a job back. Releasing an unclaimed job is a no-op."""

    @abstractmethod
    async def claimed(self) -> Set[str]:
        """Snapshot of the claimed job ids."""

    async def count(self) -> int:
        return len(await self.claimed())

    async def is_claimed(self, job_id: str) -> bool:
        return job_id in await self.claimed()


class InMemoryClaimStore(ClaimStore):
    """Claim store for a single process."""

    def __init__(self) -> None:
        self._claimed: Set[str] = set()
        self._lock = asyncio.Lock()

    async def claim(self, job_id: str) -> bool:
        async with self._lock:
            if job_id in self._claimed:
                return False
            self._claimed.add(job_id)
            return True

    async def release(self, job_id: str) -> None:
        async with self._lock:
            self._claimed.discard(job_id)

    async def claimed(self) -> Set[str]:
        async with self._lock:
            return set(self._claimed)


LockKey = Tuple[str, str, str]


class MappingLockRegistry:
    """
    One lock per (connection, side, identifier).

    Keys are always acquired in sorted order, so two jobs asking for the
    same BRD and issue cannot deadlock. A lock is dropped once nobody holds
    or waits for it.
    """

    def __init__(self) -> None:
        self._locks: Dict[LockKey, asyncio.Lock] = {}
        self._users: Dict[LockKey, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _checkout(self, key: LockKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _checkin(self, key: LockKey) -> None:
        remaining = self._users[key] - 1
        if remaining:
            self._users[key] = remaining
        else:
            del self._users[key]
            del self._locks[key]

    @staticmethod
    def local_key(connection_id: str, local_id: str) -> LockKey:
        return (connection_id, "local", local_id)

    @staticmethod
    def remote_key(connection_id: str, remote_key: str) -> LockKey:
        return (connection_id, "remote", remote_key)

    def is_locked(self, key: LockKey) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, keys: Iterable[LockKey]) -> AsyncIterator[None]:
        ordered = sorted(set(keys))
        locks = [self._checkout(key) for key in ordered]
        acquired: List[asyncio.Lock] = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in ordered:
                self._checkin(key)
