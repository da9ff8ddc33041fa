from typing import Any, Dict, List, Optional

from sqlalchemy import asc, select
from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.models import FieldMappingRule


class RuleRepository:
    """Repository for field mapping rules."""

    async def list_rules(
        self, db: AsyncSession, active_only: bool = False
    ) -> List[FieldMappingRule]:
        """Rules in evaluation order."""
        query = select(FieldMappingRule)
        if active_only:
            query = query.filter(FieldMappingRule.active.is_(True))
        result = await db.execute(
            query.order_by(asc(FieldMappingRule.position), asc(FieldMappingRule.created_at))
        )
        return list(result.scalars().all())

    async def get(self, rule_id: str, db: AsyncSession) -> Optional[FieldMappingRule]:
        result = await db.execute(
            select(FieldMappingRule).filter(FieldMappingRule.id == rule_id)
        )
        return result.scalar_one_or_none()

    async def create(self, db: AsyncSession, data: Dict[str, Any]) -> FieldMappingRule:
        rule = FieldMappingRule(**data)
        db.add(rule)
        await db.commit()
        await db.refresh(rule)
        return rule

    async def update(
        self, rule: FieldMappingRule, db: AsyncSession, data: Dict[str, Any]
    ) -> FieldMappingRule:
        rule.apply_changes(data)
        await db.commit()
        await db.refresh(rule)
        return rule

    async def seed_defaults(
        self, db: AsyncSession, rules: List[Dict[str, Any]]
    ) -> List[FieldMappingRule]:
        """Insert ``rules`` when the table is empty; returns what was inserted."""
        if await self.list_rules(db):
            return []
        created = [FieldMappingRule(**{"direction": "bidirectional", **rule}) for rule in rules]
        db.add_all(created)
        await db.commit()
        return created

    async def delete(self, rule: FieldMappingRule, db: AsyncSession) -> None:
        await db.delete(rule)
        await db.commit()


rule_repository = RuleRepository()
