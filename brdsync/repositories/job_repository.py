from datetime import datetime
from typing import Any, Collection, Dict, List, Optional

from sqlalchemy import asc, delete, desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified

from brdsync.models import SyncConflict, SyncHistoryEntry, SyncJob, SyncJobStatus
from brdsync.models.sync_job import TERMINAL_STATUSES
from brdsync.utils.timeutils import utcnow


class JobRepository:
    """Repository for sync job persistence, transitions and history."""

    async def create_job(
        self,
        db: AsyncSession,
        direction: str,
        operation_type: str,
        connection_id: Optional[str] = None,
        local_ids: Optional[List[str]] = None,
        remote_keys: Optional[List[str]] = None,
        max_retries: int = 3,
        created_by: str = "system",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SyncJob:
        """Create a pending job and its ``job_created`` history entry."""
        local_ids = list(local_ids or [])
        remote_keys = list(remote_keys or [])
        now = utcnow()
        job = SyncJob(
            connection_id=connection_id,
            direction=direction,
            operation_type=operation_type,
            status=SyncJobStatus.PENDING.value,
            progress=0,
            total_items=len(local_ids) + len(remote_keys),
            processed_items=0,
            failed_items=0,
            local_ids=local_ids,
            remote_keys=remote_keys,
            retry_count=0,
            max_retries=max_retries,
            created_by=created_by,
            job_metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        db.add(job)
        await db.flush()
        self._add_history(
            db,
            job.id,
            "job_created",
            {
                "operation_type": operation_type,
                "direction": direction,
                "total_items": job.total_items,
            },
            created_by,
        )
        await db.commit()
        await db.refresh(job)
        return job

    async def get_job(self, job_id: str, db: AsyncSession) -> Optional[SyncJob]:
        """Get job by ID."""
        result = await db.execute(select(SyncJob).filter(SyncJob.id == job_id))
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        db: AsyncSession,
        status: Optional[str] = None,
        connection_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[SyncJob]:
        """List jobs with optional filters, newest first."""
        query = select(SyncJob)
        if status:
            query = query.filter(SyncJob.status == status)
        if connection_id:
            query = query.filter(SyncJob.connection_id == connection_id)
        query = query.order_by(desc(SyncJob.created_at)).offset(offset).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    async def count_jobs(
        self,
        db: AsyncSession,
        status: Optional[str] = None,
        connection_id: Optional[str] = None,
    ) -> int:
        query = select(func.count(SyncJob.id))
        if status:
            query = query.filter(SyncJob.status == status)
        if connection_id:
            query = query.filter(SyncJob.connection_id == connection_id)
        result = await db.execute(query)
        return int(result.scalar() or 0)

    async def count_by_status(self, db: AsyncSession) -> Dict[str, int]:
        """Number of jobs in each status, zero-filled."""
        counts = {status.value: 0 for status in SyncJobStatus}
        result = await db.execute(
            select(SyncJob.status, func.count(SyncJob.id)).group_by(SyncJob.status)
        )
        for status, count in result.all():
            counts[status] = count
        return counts

    async def next_eligible(
        self,
        db: AsyncSession,
        exclude_ids: Collection[str] = (),
        now: Optional[datetime] = None,
    ) -> Optional[SyncJob]:
        """
        Oldest job ready to run that is not already claimed.

        Retrying jobs whose backoff has elapsed are preferred over pending
        ones; within each group the oldest job wins.
        """
        now = now or utcnow()
        retry_query = select(SyncJob).filter(
            SyncJob.status == SyncJobStatus.RETRYING.value,
            (SyncJob.next_attempt_at.is_(None)) | (SyncJob.next_attempt_at <= now),
        )
        pending_query = select(SyncJob).filter(
            SyncJob.status == SyncJobStatus.PENDING.value
        )
        for query in (retry_query, pending_query):
            if exclude_ids:
                query = query.filter(SyncJob.id.notin_(list(exclude_ids)))
            query = query.order_by(asc(SyncJob.created_at)).limit(1)
            result = await db.execute(query)
            job = result.scalar_one_or_none()
            if job:
                return job
        return None

    async def list_waiting_retries(self, db: AsyncSession) -> List[SyncJob]:
        """Retrying jobs that still have a backoff timer to wait for."""
        result = await db.execute(
            select(SyncJob).filter(
                SyncJob.status == SyncJobStatus.RETRYING.value,
                SyncJob.next_attempt_at.isnot(None),
            )
        )
        return list(result.scalars().all())

    async def list_in_progress(self, db: AsyncSession) -> List[SyncJob]:
        """Jobs currently marked in progress."""
        result = await db.execute(
            select(SyncJob).filter(SyncJob.status == SyncJobStatus.IN_PROGRESS.value)
        )
        return list(result.scalars().all())

    def set_metadata(self, job: SyncJob, key: str, value: Any) -> None:
        """Set one metadata key in place and flag the JSON column dirty."""
        metadata = dict(job.job_metadata or {})
        metadata[key] = value
        job.job_metadata = metadata  # type: ignore[assignment]
        flag_modified(job, "job_metadata")

    async def transition(
        self,
        db: AsyncSession,
        job: SyncJob,
        status: str,
        action: str,
        performed_by: str = "system",
        details: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> SyncJob:
        """
        Move a job to ``status`` and append the matching history entry.

        Extra keyword arguments are assigned to job columns in the same
        commit.
        """
        now = utcnow()
        job.status = status  # type: ignore[assignment]
        if status == SyncJobStatus.IN_PROGRESS.value and not job.started_at:
            job.started_at = now  # type: ignore[assignment]
        if status in TERMINAL_STATUSES:
            job.completed_at = now  # type: ignore[assignment]
        for key, value in fields.items():
            setattr(job, key, value)
        job.updated_at = now  # type: ignore[assignment]
        self._add_history(db, job.id, action, details or {}, performed_by)
        await db.commit()
        await db.refresh(job)
        return job

    async def add_history(
        self,
        db: AsyncSession,
        job_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        performed_by: str = "system",
    ) -> None:
        """Append a history entry without changing the job."""
        self._add_history(db, job_id, action, details or {}, performed_by)
        await db.commit()

    def _add_history(
        self,
        db: AsyncSession,
        job_id: str,
        action: str,
        details: Dict[str, Any],
        performed_by: str,
    ) -> None:
        db.add(
            SyncHistoryEntry(
                job_id=job_id,
                timestamp=utcnow(),
                action=action,
                details=details,
                performed_by=performed_by,
                created_at=utcnow(),
            )
        )

    async def list_history(
        self, job_id: str, db: AsyncSession
    ) -> List[SyncHistoryEntry]:
        """History entries for a job in the order they were written."""
        result = await db.execute(
            select(SyncHistoryEntry)
            .filter(SyncHistoryEntry.job_id == job_id)
            .order_by(asc(SyncHistoryEntry.id))
        )
        return list(result.scalars().all())

    async def cleanup_old_jobs(self, db: AsyncSession, older_than: datetime) -> int:
        """Delete terminal jobs completed before ``older_than`` and their history."""
        result = await db.execute(
            select(SyncJob.id).filter(
                SyncJob.status.in_(TERMINAL_STATUSES),
                SyncJob.completed_at.isnot(None),
                SyncJob.completed_at < older_than,
            )
        )
        job_ids = [row[0] for row in result.all()]
        if not job_ids:
            return 0

        await db.execute(
            update(SyncConflict)
            .where(SyncConflict.sync_job_id.in_(job_ids))
            .values(sync_job_id=None)
        )
        await db.execute(
            delete(SyncHistoryEntry).where(SyncHistoryEntry.job_id.in_(job_ids))
        )
        await db.execute(delete(SyncJob).where(SyncJob.id.in_(job_ids)))
        await db.commit()
        return len(job_ids)


job_repository = JobRepository()
