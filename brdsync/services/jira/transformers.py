"""Data transformation utilities for the Jira REST API."""

import logging
from typing import Any, Dict, Optional

from .adf import adf_to_text, text_to_adf

logger = logging.getLogger(__name__)

# fields that are written through dedicated endpoints, never via PUT /issue
READ_ONLY_FIELDS = {"id", "key", "status", "created", "updated", "project", "issuetype"}


def _name(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("name") or value.get("value")
    return value


def transform_issue(issue: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a Jira issue payload to a flat record."""
    if not issue:
        return {}
    fields = issue.get("fields") or {}
    record: Dict[str, Any] = {
        "id": issue.get("id"),
        "key": issue.get("key"),
        "summary": fields.get("summary"),
        "description": adf_to_text(fields.get("description")),
        "status": _name(fields.get("status")),
        "priority": _name(fields.get("priority")),
        "labels": list(fields.get("labels") or []),
        "issuetype": _name(fields.get("issuetype")),
        "project": (fields.get("project") or {}).get("key"),
        "created": fields.get("created"),
        "updated": fields.get("updated"),
    }
    for name, value in fields.items():
        if name.startswith("customfield_"):
            record[name] = value
    return record


def record_to_fields(record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert a flat record back into the ``fields`` object Jira expects.

    Status is left out; it can only change through a transition.
    """
    fields: Dict[str, Any] = {}
    for name, value in record.items():
        if name in READ_ONLY_FIELDS:
            continue
        if name == "description":
            fields[name] = text_to_adf(value)
        elif name == "priority":
            fields[name] = {"name": value} if value is not None else None
        elif name == "labels":
            fields[name] = [str(label) for label in value or []]
        else:
            fields[name] = value
    return fields
