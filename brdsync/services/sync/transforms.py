"""Named value transforms used by field mapping rules.

Every transform has a forward function (BRD value to Jira value) and a
reverse function (Jira value to BRD value). Both receive the rule's
``transform_options``.
"""

import copy
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from brdsync.core.exceptions import FieldMappingError
from brdsync.utils.timeutils import parse_datetime

TransformFn = Callable[[Any, Dict[str, Any]], Any]

# key holding the rule's own source field in a composite value
MAIN_SECTION = "_main"

_HEADING = re.compile(r"^h2\.[ \t]*(.+?)[ \t]*$", re.MULTILINE | re.IGNORECASE)


@dataclass(frozen=True)
class Transform:
    name: str
    forward: TransformFn
    reverse: TransformFn
    # forward takes and reverse returns a dict of local fields
    composite: bool = False


def _identity(value: Any, options: Dict[str, Any]) -> Any:
    return value


def _lookup(value: Any, table: Dict[str, Any]) -> Any:
    """Exact match first, then a case-insensitive one; unknown values pass through."""
    if value is None or not isinstance(value, str):
        return value
    if value in table:
        return table[value]
    folded = value.strip().casefold()
    for key, mapped in table.items():
        if str(key).strip().casefold() == folded:
            return mapped
    return value


def _enum_forward(value: Any, options: Dict[str, Any]) -> Any:
    return _lookup(value, options.get("mapping") or {})


def _enum_reverse(value: Any, options: Dict[str, Any]) -> Any:
    table = {str(v): k for k, v in (options.get("mapping") or {}).items()}
    table.update(options.get("reverse_mapping") or {})
    return _lookup(value, table)


def _date_forward(value: Any, options: Dict[str, Any]) -> Any:
    if value in (None, ""):
        return value
    parsed = parse_datetime(value)
    if parsed is None:
        raise FieldMappingError(f"Cannot parse date '{value}'", value=value)
    return parsed.strftime(options.get("format") or "%Y-%m-%d")


def _date_reverse(value: Any, options: Dict[str, Any]) -> Any:
    if value in (None, ""):
        return value
    fmt = options.get("format") or "%Y-%m-%d"
    try:
        parsed = datetime.strptime(str(value), fmt)
    except ValueError as e:
        raise FieldMappingError(
            f"Date '{value}' does not match format '{fmt}'", value=value
        ) from e
    return parsed.isoformat()


def _path_parts(options: Dict[str, Any]) -> list:
    path = options.get("path")
    if not path:
        raise FieldMappingError("pluck_nested requires a 'path' option")
    return str(path).split(".")


def _pluck_forward(value: Any, options: Dict[str, Any]) -> Any:
    if value is None:
        return None
    wrapped: Any = value
    for part in reversed(_path_parts(options)):
        wrapped = {part: wrapped}
    return wrapped


def _pluck_reverse(value: Any, options: Dict[str, Any]) -> Any:
    current = value
    for part in _path_parts(options):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _join_forward(value: Any, options: Dict[str, Any]) -> Any:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return str(options.get("separator", ", ")).join(str(v) for v in value)
    return value


def _join_reverse(value: Any, options: Dict[str, Any]) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        separator = str(options.get("separator", ", ")).strip() or ","
        return [part.strip() for part in value.split(separator) if part.strip()]
    return value


def _description_sections(options: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [s for s in options.get("sections") or [] if s.get("field") and s.get("heading")]


def _format_section(value: Any, section: Dict[str, Any]) -> str:
    if section.get("format") == "currency" and isinstance(value, (int, float)):
        if float(value).is_integer():
            return f"${int(value):,}"
        return f"${value:,.2f}"
    return str(value).strip()


def _parse_section(text: str, section: Dict[str, Any]) -> Any:
    if section.get("format") != "currency":
        return text
    cleaned = text.replace("$", "").replace(",", "").strip()
    try:
        return float(cleaned)
    except ValueError as e:
        raise FieldMappingError(
            f"Cannot read {section['heading']} amount '{text}'",
            field=section["field"],
            value=text,
        ) from e


def _description_forward(value: Any, options: Dict[str, Any]) -> Any:
    """Compose a Jira description from the problem statement and extra sections.

    ``value`` is a dict keyed by local field name; the problem statement
    lives under ``MAIN_SECTION``.
    """
    if not isinstance(value, dict):
        value = {MAIN_SECTION: value}
    blocks = []
    main = value.get(MAIN_SECTION)
    if main not in (None, ""):
        heading = options.get("heading", "Problem Statement")
        blocks.append(f"h2. {heading}\n{str(main).strip()}")
    for section in _description_sections(options):
        section_value = value.get(section["field"])
        if section_value in (None, ""):
            continue
        blocks.append(f"h2. {section['heading']}\n{_format_section(section_value, section)}")
    return "\n\n".join(blocks) if blocks else None


def _description_reverse(value: Any, options: Dict[str, Any]) -> Any:
    """Split a Jira description back into its sections.

    Text without any headings is taken as the problem statement.
    """
    sections = _description_sections(options)
    parsed: Dict[str, Any] = {MAIN_SECTION: None}
    parsed.update({section["field"]: None for section in sections})
    if not isinstance(value, str) or not value.strip():
        return parsed

    matches = list(_HEADING.finditer(value))
    if not matches:
        parsed[MAIN_SECTION] = value.strip()
        return parsed

    by_heading = {section["heading"].casefold(): section for section in sections}
    main_heading = str(options.get("heading", "Problem Statement")).casefold()
    leading = value[: matches[0].start()].strip()
    if leading:
        parsed[MAIN_SECTION] = leading
    for index, match in enumerate(matches):
        end = matches[index + 1].start() if index + 1 < len(matches) else len(value)
        body = value[match.end():end].strip()
        heading = match.group(1).strip().casefold()
        if heading == main_heading:
            parsed[MAIN_SECTION] = body or None
        elif heading in by_heading and body:
            section = by_heading[heading]
            parsed[section["field"]] = _parse_section(body, section)
    return parsed


def _story_points_forward(value: Any, options: Dict[str, Any]) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return value
    per_point = options.get("per_point", 10000)
    return min(round(value / per_point), options.get("max_points", 100))


def _story_points_reverse(value: Any, options: Dict[str, Any]) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return value
    return float(value * options.get("per_point", 10000))


class TransformRegistry:
    """Lookup table of transforms by identifier."""

    def __init__(self) -> None:
        self._transforms: Dict[str, Transform] = {}

    def register(
        self, name: str, forward: TransformFn, reverse: TransformFn, composite: bool = False
    ) -> None:
        self._transforms[name] = Transform(name, forward, reverse, composite)

    def get(self, name: Optional[str]) -> Transform:
        """
        Resolve a transform; a missing name means identity.

        Raises:
            FieldMappingError: For unknown identifiers
        """
        if not name:
            return self._transforms["identity"]
        try:
            return self._transforms[name]
        except KeyError:
            raise FieldMappingError(f"Unknown transform '{name}'", field="transform", value=name)

    def __contains__(self, name: object) -> bool:
        return name in self._transforms

    def names(self) -> list:
        return sorted(self._transforms)


def build_default_registry() -> TransformRegistry:
    registry = TransformRegistry()
    registry.register("identity", _identity, _identity)
    registry.register("enum_remap", _enum_forward, _enum_reverse)
    registry.register("date_format", _date_forward, _date_reverse)
    registry.register("pluck_nested", _pluck_forward, _pluck_reverse)
    registry.register("join_list", _join_forward, _join_reverse)
    registry.register(
        "brd_description", _description_forward, _description_reverse, composite=True
    )
    registry.register("story_points", _story_points_forward, _story_points_reverse)
    return registry


default_registry = build_default_registry()

STATUS_MAP = {
    "draft": "To Do",
    "under_review": "In Review",
    "approved": "Done",
    "rejected": "Closed",
}
STATUS_REVERSE_EXTRA = {"In Progress": "under_review"}

PRIORITY_MAP = {
    "critical": "Highest",
    "high": "High",
    "medium": "Medium",
    "low": "Low",
}
PRIORITY_REVERSE_EXTRA = {"Lowest": "low"}

DESCRIPTION_SECTIONS = {
    "heading": "Problem Statement",
    "sections": [
        {"field": "businessImpact", "heading": "Business Impact"},
        {"field": "budget", "heading": "Budget", "format": "currency"},
    ],
}


def default_rule_definitions() -> List[Dict[str, Any]]:
    """The rule set a fresh installation starts with."""
    return [
        {
            "position": 1,
            "source_field": "title",
            "target_field": "summary",
            "transform": "identity",
            "required": True,
        },
        {
            "position": 2,
            "source_field": "problemStatement",
            "target_field": "description",
            "transform": "brd_description",
            "transform_options": copy.deepcopy(DESCRIPTION_SECTIONS),
        },
        {
            "position": 3,
            "source_field": "status",
            "target_field": "status",
            "transform": "enum_remap",
            "transform_options": {
                "mapping": dict(STATUS_MAP),
                "reverse_mapping": dict(STATUS_REVERSE_EXTRA),
            },
            "required": True,
        },
        {
            "position": 4,
            "source_field": "priority",
            "target_field": "priority",
            "transform": "enum_remap",
            "transform_options": {
                "mapping": dict(PRIORITY_MAP),
                "reverse_mapping": dict(PRIORITY_REVERSE_EXTRA),
            },
            "default_value": "medium",
        },
        {
            "position": 5,
            "source_field": "labels",
            "target_field": "labels",
            "transform": "identity",
        },
        {
            "position": 6,
            "source_field": "title",
            "target_field": "customfield_10011",
            "direction": "brd_to_jira",
            "transform": "identity",
            "is_custom": True,
        },
        {
            "position": 7,
            "source_field": "budget",
            "target_field": "customfield_10014",
            "direction": "brd_to_jira",
            "transform": "story_points",
            "is_custom": True,
            "active": False,
        },
    ]
