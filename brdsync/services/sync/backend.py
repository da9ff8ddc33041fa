"""Eligible-job discovery for the sync queue."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Collection, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.repositories.job_repository import job_repository
from brdsync.utils.timeutils import ensure_utc


class JobBackend(ABC):
    """Where the dispatcher looks for the next job to run."""

    @abstractmethod
    async def next_eligible(self, exclude: Collection[str]) -> Optional[str]:
        """Id of the next job to run, skipping ``exclude``."""

    @abstractmethod
    async def pending_retries(self) -> List[Tuple[str, datetime]]:
        """Retrying jobs and the time their backoff ends."""


class DatabaseJobBackend(JobBackend):
    """Scan the ``sync_jobs`` table."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def next_eligible(self, exclude: Collection[str]) -> Optional[str]:
        async with self.session_factory() as db:
            job = await job_repository.next_eligible(db, exclude_ids=exclude)
            return str(job.id) if job else None

    async def pending_retries(self) -> List[Tuple[str, datetime]]:
        async with self.session_factory() as db:
            jobs = await job_repository.list_waiting_retries(db)
            return [(str(job.id), ensure_utc(job.next_attempt_at)) for job in jobs]  # type: ignore[misc]
