"""
Field mapping rule endpoints.
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.api.schemas import (
    FieldMappingRuleInput,
    FieldMappingRuleResponse,
    FieldMappingRuleUpdate,
)
from brdsync.core.dependencies import get_db
from brdsync.core.exceptions import NotFoundError
from brdsync.repositories.rule_repository import rule_repository
from brdsync.services.sync import FieldMapper, default_registry

logger = logging.getLogger(__name__)

router = APIRouter()


def _check_transform(data: Dict[str, Any]) -> None:
    """Raise FieldMappingError when the rule names an unknown transform."""
    FieldMapper([data], registry=default_registry).validate()


@router.get("", response_model=List[FieldMappingRuleResponse])
async def list_rules(
    active_only: bool = Query(False),
    db: AsyncSession = Depends(get_db),
) -> List[FieldMappingRuleResponse]:
    """Rules in evaluation order."""
    rules = await rule_repository.list_rules(db, active_only=active_only)
    return [FieldMappingRuleResponse.model_validate(rule) for rule in rules]


@router.post(
    "", response_model=FieldMappingRuleResponse, status_code=status.HTTP_201_CREATED
)
async def create_rule(
    body: FieldMappingRuleInput, db: AsyncSession = Depends(get_db)
) -> FieldMappingRuleResponse:
    data = body.model_dump()
    if data.get("position") is None:
        data["position"] = len(await rule_repository.list_rules(db))
    data["is_custom"] = True
    _check_transform(data)
    rule = await rule_repository.create(db, data)
    logger.info(f"Created field mapping rule {rule.source_field} -> {rule.target_field}")
    return FieldMappingRuleResponse.model_validate(rule)


@router.patch("/{rule_id}", response_model=FieldMappingRuleResponse)
async def update_rule(
    rule_id: str,
    body: FieldMappingRuleUpdate,
    db: AsyncSession = Depends(get_db),
) -> FieldMappingRuleResponse:
    rule = await rule_repository.get(rule_id, db)
    if rule is None:
        raise NotFoundError("FieldMappingRule", rule_id)
    changes = body.model_dump(exclude_unset=True)
    _check_transform({**rule.as_rule_dict(), **changes})
    rule = await rule_repository.update(rule, db, changes)
    logger.info(f"Updated field mapping rule {rule_id}: {sorted(changes)}")
    return FieldMappingRuleResponse.model_validate(rule)


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(rule_id: str, db: AsyncSession = Depends(get_db)) -> None:
    rule = await rule_repository.get(rule_id, db)
    if rule is None:
        raise NotFoundError("FieldMappingRule", rule_id)
    await rule_repository.delete(rule, db)
    logger.info(f"Deleted field mapping rule {rule_id}")
