from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.models import Brd


class BrdRepository:
    """Repository for BRD rows."""

    async def get(
        self, brd_id: str, db: AsyncSession, include_deleted: bool = False
    ) -> Optional[Brd]:
        query = select(Brd).filter(Brd.id == brd_id)
        if not include_deleted:
            query = query.filter(Brd.is_deleted.is_(False))
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def create(self, db: AsyncSession, record: Dict[str, Any]) -> Brd:
        """Create a BRD from a camelCase record."""
        brd = Brd(labels=[])
        brd.apply_record(record)
        db.add(brd)
        await db.commit()
        await db.refresh(brd)
        return brd

    async def update(self, brd: Brd, db: AsyncSession, record: Dict[str, Any]) -> Brd:
        """Apply a camelCase partial record."""
        brd.apply_record(record)
        await db.commit()
        await db.refresh(brd)
        return brd


brd_repository = BrdRepository()
