from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import asc, delete, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.models import ConflictStatus, SyncConflict
from brdsync.utils.timeutils import utcnow


class ConflictRepository:
    """Repository for sync conflicts."""

    async def create(
        self,
        db: AsyncSession,
        mapping_id: str,
        conflict_type: str,
        field: str,
        base_value: Any = None,
        local_value: Any = None,
        remote_value: Any = None,
        sync_job_id: Optional[str] = None,
        local_id: Optional[str] = None,
        remote_key: Optional[str] = None,
        commit: bool = True,
    ) -> SyncConflict:
        """Record a pending conflict."""
        conflict = SyncConflict(
            sync_job_id=sync_job_id,
            mapping_id=mapping_id,
            local_id=local_id,
            remote_key=remote_key,
            conflict_type=conflict_type,
            field=field,
            base_value=base_value,
            local_value=local_value,
            remote_value=remote_value,
            status=ConflictStatus.PENDING.value,
            created_at=utcnow(),
        )
        db.add(conflict)
        if commit:
            await db.commit()
            await db.refresh(conflict)
        else:
            await db.flush()
        return conflict

    async def get(self, conflict_id: str, db: AsyncSession) -> Optional[SyncConflict]:
        """Get conflict by ID."""
        result = await db.execute(
            select(SyncConflict).filter(SyncConflict.id == conflict_id)
        )
        return result.scalar_one_or_none()

    async def list_conflicts(
        self,
        db: AsyncSession,
        local_id: Optional[str] = None,
        mapping_id: Optional[str] = None,
        job_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[SyncConflict]:
        """List conflicts with optional filters, newest first."""
        query = select(SyncConflict)
        if local_id:
            query = query.filter(SyncConflict.local_id == local_id)
        if mapping_id:
            query = query.filter(SyncConflict.mapping_id == mapping_id)
        if job_id:
            query = query.filter(SyncConflict.sync_job_id == job_id)
        if status:
            query = query.filter(SyncConflict.status == status)
        query = query.order_by(desc(SyncConflict.created_at)).offset(offset).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    async def list_similar_pending(
        self, conflict: SyncConflict, db: AsyncSession
    ) -> List[SyncConflict]:
        """Other pending conflicts on the same field with the same type."""
        result = await db.execute(
            select(SyncConflict).filter(
                SyncConflict.id != conflict.id,
                SyncConflict.field == conflict.field,
                SyncConflict.conflict_type == conflict.conflict_type,
                SyncConflict.status == ConflictStatus.PENDING.value,
            )
        )
        return list(result.scalars().all())

    async def get_pending_for_field(
        self, mapping_id: str, field: str, db: AsyncSession
    ) -> Optional[SyncConflict]:
        """The open conflict on one field of a mapping, if any."""
        result = await db.execute(
            select(SyncConflict)
            .filter(
                SyncConflict.mapping_id == mapping_id,
                SyncConflict.field == field,
                SyncConflict.status == ConflictStatus.PENDING.value,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_pending_for_mapping(
        self, mapping_id: str, db: AsyncSession
    ) -> Optional[SyncConflict]:
        result = await db.execute(
            select(SyncConflict)
            .filter(
                SyncConflict.mapping_id == mapping_id,
                SyncConflict.status == ConflictStatus.PENDING.value,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def count_pending(self, db: AsyncSession) -> int:
        result = await db.execute(
            select(func.count(SyncConflict.id)).filter(
                SyncConflict.status == ConflictStatus.PENDING.value
            )
        )
        return int(result.scalar() or 0)

    async def count_pending_for_job(self, job_id: str, db: AsyncSession) -> int:
        result = await db.execute(
            select(func.count(SyncConflict.id)).filter(
                SyncConflict.sync_job_id == job_id,
                SyncConflict.status == ConflictStatus.PENDING.value,
            )
        )
        return int(result.scalar() or 0)

    async def resolved_overrides(
        self, mapping_id: str, since: Optional[datetime], db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Resolved values that the next pass of a mapping must apply.

        Only resolutions newer than ``since`` count; for a field resolved
        more than once the latest resolution wins.
        """
        query = select(SyncConflict).filter(
            SyncConflict.mapping_id == mapping_id,
            SyncConflict.status == ConflictStatus.RESOLVED.value,
            SyncConflict.resolved_at.isnot(None),
        )
        if since is not None:
            query = query.filter(SyncConflict.resolved_at > since)
        query = query.order_by(asc(SyncConflict.resolved_at))
        result = await db.execute(query)
        overrides: Dict[str, Any] = {}
        for conflict in result.scalars().all():
            overrides[conflict.field] = conflict.resolved_value
        return overrides

    async def mark_resolved(
        self,
        conflict: SyncConflict,
        db: AsyncSession,
        strategy: str,
        resolved_value: Any,
        resolved_by: str,
        commit: bool = True,
    ) -> SyncConflict:
        """Settle a pending conflict."""
        conflict.status = ConflictStatus.RESOLVED.value  # type: ignore[assignment]
        conflict.resolution_strategy = strategy  # type: ignore[assignment]
        conflict.resolved_value = resolved_value
        conflict.resolved_by = resolved_by  # type: ignore[assignment]
        conflict.resolved_at = utcnow()  # type: ignore[assignment]
        if commit:
            await db.commit()
            await db.refresh(conflict)
        return conflict

    async def mark_ignored(
        self, conflict: SyncConflict, db: AsyncSession, resolved_by: str
    ) -> SyncConflict:
        """Close a pending conflict without touching either side."""
        conflict.status = ConflictStatus.IGNORED.value  # type: ignore[assignment]
        conflict.resolved_by = resolved_by  # type: ignore[assignment]
        conflict.resolved_at = utcnow()  # type: ignore[assignment]
        await db.commit()
        await db.refresh(conflict)
        return conflict

    async def cleanup_old_conflicts(self, db: AsyncSession, older_than: datetime) -> int:
        """Delete resolved and ignored conflicts settled before ``older_than``."""
        result = await db.execute(
            delete(SyncConflict).where(
                SyncConflict.status.in_(
                    [ConflictStatus.RESOLVED.value, ConflictStatus.IGNORED.value]
                ),
                SyncConflict.resolved_at < older_than,
            )
        )
        await db.commit()
        return int(result.rowcount or 0)


conflict_repository = ConflictRepository()
