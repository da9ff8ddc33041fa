"""Declarative field mapping rule model."""

from typing import Any, Dict

from sqlalchemy import JSON, Boolean, Column, Integer, String

from brdsync.models.base import BaseModel, new_id


class FieldMappingRule(BaseModel):
    """
    Translate one BRD field to one Jira field.

    ``source_field`` is always the BRD side and ``target_field`` the Jira
    side; ``direction`` decides which way values flow.
    """

    __tablename__ = "field_mapping_rules"

    id = Column(String, primary_key=True, default=new_id, index=True)
    source_field = Column(String, nullable=False)
    target_field = Column(String, nullable=False)
    direction = Column(String(32), nullable=False, default="bidirectional")
    transform = Column(String, nullable=True)
    transform_options = Column(JSON, nullable=True)
    is_custom = Column(Boolean, nullable=False, default=False)
    default_value = Column(JSON, nullable=True)
    required = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True, index=True)
    position = Column(Integer, nullable=False, default=0)

    def as_rule_dict(self) -> Dict[str, Any]:
        """Plain-dict form consumed by the field mapping engine."""
        return {
            "id": self.id,
            "source_field": self.source_field,
            "target_field": self.target_field,
            "direction": self.direction,
            "transform": self.transform,
            "transform_options": self.transform_options or {},
            "is_custom": self.is_custom,
            "default_value": self.default_value,
            "required": self.required,
            "active": self.active,
            "position": self.position,
        }
