"""Declarative translation of records between the BRD and Jira schemas."""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from brdsync.core.exceptions import FieldMappingError
from brdsync.models import FieldMappingRule, SyncDirection

from .transforms import MAIN_SECTION, TransformRegistry, default_registry

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class MappingRule:
    """In-memory form of a field mapping rule."""

    source_field: str
    target_field: str
    direction: str = SyncDirection.BIDIRECTIONAL.value
    transform: Optional[str] = None
    transform_options: Dict[str, Any] = field(default_factory=dict)
    default_value: Any = None
    required: bool = False
    active: bool = True
    position: int = 0
    is_custom: bool = False
    id: Optional[str] = None

    @classmethod
    def from_any(cls, rule: Union["MappingRule", FieldMappingRule, Dict[str, Any]]) -> "MappingRule":
        if isinstance(rule, MappingRule):
            return rule
        if isinstance(rule, FieldMappingRule):
            rule = rule.as_rule_dict()
        known = {name for name in cls.__dataclass_fields__}
        data = {k: v for k, v in rule.items() if k in known}
        if data.get("transform_options") is None:
            data["transform_options"] = {}
        if data.get("direction") is None:
            data["direction"] = SyncDirection.BIDIRECTIONAL.value
        return cls(**data)

    def applies_to(self, direction: str) -> bool:
        return self.active and self.direction in (
            direction,
            SyncDirection.BIDIRECTIONAL.value,
        )

    @property
    def is_bidirectional(self) -> bool:
        return self.direction == SyncDirection.BIDIRECTIONAL.value


def get_path(record: Dict[str, Any], path: str, default: Any = _MISSING) -> Any:
    """Read a dotted path; returns ``default`` when any segment is absent."""
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def has_path(record: Dict[str, Any], path: str) -> bool:
    return get_path(record, path) is not _MISSING


def set_path(record: Dict[str, Any], path: str, value: Any) -> None:
    """Write a dotted path, creating intermediate dicts."""
    parts = path.split(".")
    current = record
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


class FieldMapper:
    """
    Apply an ordered rule set to a record.

    ``brd_to_jira`` reads ``source_field`` and writes ``target_field``;
    ``jira_to_brd`` does the reverse. The mapper holds no state besides
    its rules, so identical input always yields identical output.
    """

    def __init__(
        self,
        rules: Iterable[Union[MappingRule, FieldMappingRule, Dict[str, Any]]],
        registry: Optional[TransformRegistry] = None,
    ):
        self.registry = registry or default_registry
        self.rules: List[MappingRule] = sorted(
            (MappingRule.from_any(rule) for rule in rules), key=lambda r: r.position
        )

    def rules_for(self, direction: str) -> List[MappingRule]:
        return [rule for rule in self.rules if rule.applies_to(direction)]

    def local_fields(self, rule: MappingRule) -> List[str]:
        """Local fields a rule reads or writes; composite rules span several."""
        fields = [rule.source_field]
        if self.registry.get(rule.transform).composite:
            for section in (rule.transform_options or {}).get("sections") or []:
                if section.get("field") and section["field"] not in fields:
                    fields.append(section["field"])
        return fields

    def written_fields(self, rule: MappingRule, direction: str) -> List[str]:
        if direction == SyncDirection.BRD_TO_JIRA.value:
            return [rule.target_field]
        if self.registry.get(rule.transform).composite:
            return self.local_fields(rule)
        return [rule.source_field]

    def bidirectional_fields(self) -> List[str]:
        """Local fields covered by active bidirectional rules, in rule order."""
        seen: List[str] = []
        for rule in self.rules:
            if not (rule.active and rule.is_bidirectional):
                continue
            for name in self.local_fields(rule):
                if name not in seen:
                    seen.append(name)
        return seen

    def required_local_fields(self) -> List[str]:
        """Local fields a pull must never clear."""
        return [
            rule.source_field
            for rule in self.rules
            if rule.active and (rule.required or rule.default_value is not None)
        ]

    def one_way_rules(self, direction: str) -> List[MappingRule]:
        return [
            rule for rule in self.rules if rule.active and rule.direction == direction
        ]

    def validate(self) -> None:
        """Raise FieldMappingError for any rule naming an unknown transform."""
        for rule in self.rules:
            self.registry.get(rule.transform)

    def convert_value(self, rule: MappingRule, value: Any, direction: str) -> Any:
        transform = self.registry.get(rule.transform)
        fn = transform.forward if direction == SyncDirection.BRD_TO_JIRA.value else transform.reverse
        try:
            return fn(copy.deepcopy(value), rule.transform_options or {})
        except FieldMappingError:
            raise
        except (TypeError, ValueError) as e:
            raise FieldMappingError(
                f"Transform '{transform.name}' failed: {e}",
                field=rule.source_field,
                value=value,
            ) from e

    def _fields(self, rule: MappingRule, direction: str) -> Tuple[str, str]:
        if direction == SyncDirection.BRD_TO_JIRA.value:
            return rule.source_field, rule.target_field
        return rule.target_field, rule.source_field

    def _gather(
        self,
        rule: MappingRule,
        record: Dict[str, Any],
        context: Optional[Dict[str, Any]],
        partial: bool,
    ) -> Any:
        """Collect the local values a composite rule composes from."""
        fields = self.local_fields(rule)
        if partial and not any(has_path(record, name) for name in fields):
            return _MISSING
        value: Dict[str, Any] = {}
        for name in fields:
            found = get_path(record, name)
            if found is _MISSING:
                found = get_path(context or {}, name, None)
            value[MAIN_SECTION if name == rule.source_field else name] = found
        if all(v is None for v in value.values()):
            return None
        return value

    def map(
        self,
        record: Dict[str, Any],
        direction: str,
        partial: bool = False,
        rules: Optional[Sequence[MappingRule]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Translate ``record`` in ``direction``.

        Args:
            record: Source record (nested dicts allowed)
            direction: ``brd_to_jira`` or ``jira_to_brd``
            partial: Map only values present in ``record``; no defaults and
                no required checks
            rules: Restrict to these rules (defaults to every rule that
                applies to ``direction``)
            context: Local record supplying the fields a composite rule
                needs but ``record`` lacks

        Raises:
            FieldMappingError: A required value is absent or a transform fails
        """
        if direction not in (
            SyncDirection.BRD_TO_JIRA.value,
            SyncDirection.JIRA_TO_BRD.value,
        ):
            raise FieldMappingError(f"Cannot map in direction '{direction}'")

        result: Dict[str, Any] = {}
        for rule in rules if rules is not None else self.rules_for(direction):
            if not rule.applies_to(direction):
                continue
            composite = self.registry.get(rule.transform).composite
            read_from, write_to = self._fields(rule, direction)
            if composite and direction == SyncDirection.BRD_TO_JIRA.value:
                value = self._gather(rule, record, context, partial)
            else:
                value = get_path(record, read_from)

            if partial:
                if value is _MISSING:
                    continue
            elif value is _MISSING or value is None:
                if rule.default_value is not None:
                    value = rule.default_value
                elif rule.required:
                    raise FieldMappingError(
                        f"Required field '{read_from}' is missing",
                        field=read_from,
                    )
                else:
                    continue

            converted = self.convert_value(rule, value, direction)
            if composite and direction == SyncDirection.JIRA_TO_BRD.value:
                for name in self.local_fields(rule):
                    key = MAIN_SECTION if name == rule.source_field else name
                    set_path(result, name, converted.get(key))
            else:
                set_path(result, write_to, converted)
        return result

    def to_remote(self, record: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
        return self.map(record, SyncDirection.BRD_TO_JIRA.value, partial=partial)

    def to_local(self, record: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
        return self.map(record, SyncDirection.JIRA_TO_BRD.value, partial=partial)
