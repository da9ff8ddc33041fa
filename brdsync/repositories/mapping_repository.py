from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified

from brdsync.core.exceptions import DuplicateMappingError
from brdsync.models import SyncMapping
from brdsync.utils.timeutils import utcnow


class MappingRepository:
    """Repository for BRD to Jira issue mappings."""

    async def get(self, mapping_id: str, db: AsyncSession) -> Optional[SyncMapping]:
        """Get mapping by ID."""
        result = await db.execute(
            select(SyncMapping).filter(SyncMapping.id == mapping_id)
        )
        return result.scalar_one_or_none()

    async def get_by_local(
        self, connection_id: str, local_id: str, db: AsyncSession
    ) -> Optional[SyncMapping]:
        """Mapping for a BRD on one connection."""
        result = await db.execute(
            select(SyncMapping).filter(
                SyncMapping.connection_id == connection_id,
                SyncMapping.local_id == local_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_by_remote(
        self, connection_id: str, remote_key: str, db: AsyncSession
    ) -> Optional[SyncMapping]:
        """Mapping for a Jira issue key on one connection."""
        result = await db.execute(
            select(SyncMapping).filter(
                SyncMapping.connection_id == connection_id,
                SyncMapping.remote_key == remote_key,
            )
        )
        return result.scalar_one_or_none()

    async def list_mappings(
        self,
        db: AsyncSession,
        connection_id: Optional[str] = None,
        local_id: Optional[str] = None,
        remote_key: Optional[str] = None,
        auto_sync: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[SyncMapping]:
        """List mappings with optional filters."""
        query = select(SyncMapping)
        if connection_id:
            query = query.filter(SyncMapping.connection_id == connection_id)
        if local_id:
            query = query.filter(SyncMapping.local_id == local_id)
        if remote_key:
            query = query.filter(SyncMapping.remote_key == remote_key)
        if auto_sync is not None:
            query = query.filter(
                SyncMapping.auto_sync == auto_sync, SyncMapping.sync_enabled.is_(True)
            )
        query = query.order_by(desc(SyncMapping.created_at)).offset(offset).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    async def create(
        self,
        db: AsyncSession,
        connection_id: str,
        local_id: str,
        remote_key: str,
        remote_id: Optional[str] = None,
        remote_project_key: Optional[str] = None,
        base_snapshot: Optional[Dict[str, Any]] = None,
        last_modified_local: Optional[datetime] = None,
        last_modified_remote: Optional[datetime] = None,
    ) -> SyncMapping:
        """
        Create a mapping after checking both uniqueness constraints.

        Raises:
            DuplicateMappingError: If the BRD or the issue is already mapped
        """
        if await self.get_by_local(connection_id, local_id, db):
            raise DuplicateMappingError("local_id", local_id)
        if await self.get_by_remote(connection_id, remote_key, db):
            raise DuplicateMappingError("remote_key", remote_key)

        mapping = SyncMapping(
            connection_id=connection_id,
            local_id=local_id,
            remote_key=remote_key,
            remote_id=remote_id,
            remote_project_key=remote_project_key,
            base_snapshot=base_snapshot or {},
            last_synced_at=utcnow(),
            last_modified_local=last_modified_local,
            last_modified_remote=last_modified_remote,
            sync_enabled=True,
            auto_sync=False,
            conflict_count=0,
        )
        db.add(mapping)
        await db.commit()
        await db.refresh(mapping)
        return mapping

    async def update(
        self, mapping: SyncMapping, db: AsyncSession, **fields: Any
    ) -> SyncMapping:
        """Assign fields and persist."""
        for key, value in fields.items():
            setattr(mapping, key, value)
        if "base_snapshot" in fields:
            flag_modified(mapping, "base_snapshot")
        await db.commit()
        await db.refresh(mapping)
        return mapping

    async def increment_conflicts(
        self, mapping: SyncMapping, db: AsyncSession, count: int = 1
    ) -> None:
        mapping.conflict_count = (mapping.conflict_count or 0) + count  # type: ignore[assignment]
        await db.commit()


mapping_repository = MappingRepository()
