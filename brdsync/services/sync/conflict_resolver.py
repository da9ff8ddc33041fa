"""Three-way comparison of BRD and Jira values and conflict resolution."""

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.core.exceptions import (
    ConflictNotFoundError,
    ConflictStateError,
    ValidationError,
)
from brdsync.models import ConflictType, ResolutionStrategy, SyncConflict
from brdsync.repositories.conflict_repository import conflict_repository

logger = logging.getLogger(__name__)

MergeFn = Callable[[Any, Any, Any], Any]
UNSET: Any = object()

TEXT_SEPARATOR = "\n\n---\n\n"


class Outcome(str, enum.Enum):
    """What a single field comparison asks the sync pass to do."""

    IN_SYNC = "in_sync"
    APPLY_LOCAL = "apply_local"  # push the BRD value to Jira
    APPLY_REMOTE = "apply_remote"  # pull the Jira value into the BRD
    CONFLICT = "conflict"


@dataclass
class FieldComparison:
    field: str
    base: Any
    local: Any
    remote: Any
    outcome: Outcome


def normalize(value: Any) -> Any:
    """Canonical form used for equality: trimmed case-folded strings."""
    if isinstance(value, str):
        return value.strip().casefold()
    if isinstance(value, dict):
        return {str(k): normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize(v) for v in value]
    return value


def _sort_key(value: Any) -> Tuple[str, str]:
    return (type(value).__name__, repr(value))


def values_equal(a: Any, b: Any) -> bool:
    """
    Compare two field values.

    ``None`` equals only ``None``. Lists compare as multisets, so a label
    reordering on one side is not a change.
    """
    if a is None or b is None:
        return a is None and b is None
    left, right = normalize(a), normalize(b)
    if isinstance(left, list) and isinstance(right, list):
        return sorted(left, key=_sort_key) == sorted(right, key=_sort_key)
    return bool(left == right)


def compare_values(base: Any, local: Any, remote: Any) -> Outcome:
    """Three-way decision for one field."""
    if values_equal(local, remote):
        return Outcome.IN_SYNC
    if values_equal(local, base):
        return Outcome.APPLY_REMOTE
    if values_equal(remote, base):
        return Outcome.APPLY_LOCAL
    return Outcome.CONFLICT


# Merge functions


def merge_lists(base: Any, local: Any, remote: Any) -> List[Any]:
    """Unique union, local order first."""
    merged: List[Any] = []
    for value in list(local or []) + list(remote or []):
        if not any(values_equal(value, seen) for seen in merged):
            merged.append(value)
    return merged


def merge_text(base: Any, local: Any, remote: Any) -> Any:
    """Keep the side that changed; when both changed keep both, local first."""
    if values_equal(local, base):
        return remote
    if values_equal(remote, base):
        return local
    if not local:
        return remote
    if not remote:
        return local
    return f"{local}{TEXT_SEPARATOR}{remote}"


class MergeRegistry:
    """Per-field merge functions for the ``merge`` strategy."""

    def __init__(self) -> None:
        self._merges: Dict[str, MergeFn] = {}

    def register(self, field: str, fn: MergeFn) -> None:
        self._merges[field] = fn

    def has(self, field: str) -> bool:
        return field in self._merges

    def merge(self, field: str, base: Any, local: Any, remote: Any) -> Any:
        fn = self._merges.get(field)
        if fn is None:
            # no merge registered: keep the local value
            return local
        return fn(base, local, remote)


def build_default_merges() -> MergeRegistry:
    registry = MergeRegistry()
    registry.register("labels", merge_lists)
    registry.register("problemStatement", merge_text)
    registry.register("businessImpact", merge_text)
    return registry


class ConflictResolver:
    """Detects, classifies and resolves conflicts between BRDs and issues."""

    def __init__(
        self,
        merges: Optional[MergeRegistry] = None,
        status_fields: Sequence[str] = ("status",),
    ):
        self.merges = merges or build_default_merges()
        self.status_fields = set(status_fields)

    def compare(
        self,
        base: Dict[str, Any],
        local: Dict[str, Any],
        remote: Dict[str, Any],
        fields: Iterable[str],
    ) -> List[FieldComparison]:
        """Compare each field's base, local and remote values."""
        comparisons = []
        for name in fields:
            b, lv, rv = base.get(name), local.get(name), remote.get(name)
            comparisons.append(FieldComparison(name, b, lv, rv, compare_values(b, lv, rv)))
        return comparisons

    def classify(
        self, conflicts: Sequence[FieldComparison]
    ) -> List[Tuple[FieldComparison, ConflictType]]:
        """
        Type every genuine conflict of one pass.

        Status fields are status mismatches and a side that lost its value
        is a deletion. Otherwise a lone divergent field is a field change;
        two or more in the same pass mean both records were re-saved, so all
        of them are concurrent modifications.
        """
        concurrent = len(conflicts) > 1
        typed = []
        for comparison in conflicts:
            if comparison.field in self.status_fields:
                conflict_type = ConflictType.STATUS_MISMATCH
            elif comparison.local is None or comparison.remote is None:
                conflict_type = ConflictType.DELETION
            elif concurrent:
                conflict_type = ConflictType.CONCURRENT_MODIFICATION
            else:
                conflict_type = ConflictType.FIELD_CHANGE
            typed.append((comparison, conflict_type))
        return typed

    def resolve_value(
        self,
        field: str,
        base: Any,
        local: Any,
        remote: Any,
        strategy: str,
        resolved_value: Any = UNSET,
    ) -> Any:
        """
        Value a strategy settles on.

        Raises:
            ValidationError: Unknown strategy, or ``manual`` without a value
        """
        if strategy == ResolutionStrategy.KEEP_LOCAL.value:
            return local
        if strategy == ResolutionStrategy.KEEP_REMOTE.value:
            return remote
        if strategy == ResolutionStrategy.MERGE.value:
            return self.merges.merge(field, base, local, remote)
        if strategy == ResolutionStrategy.MANUAL.value:
            if resolved_value is UNSET:
                raise ValidationError(
                    "Manual resolution requires a resolved_value",
                    field="resolved_value",
                )
            return resolved_value
        raise ValidationError(f"Unknown resolution strategy '{strategy}'", field="strategy")

    async def resolve(
        self,
        db: AsyncSession,
        conflict_id: str,
        strategy: str,
        resolved_by: str,
        resolved_value: Any = UNSET,
        apply_to_similar: bool = False,
    ) -> List[SyncConflict]:
        """
        Resolve a pending conflict, and optionally every similar one.

        Returns:
            The resolved conflicts, the requested one first

        Raises:
            ConflictNotFoundError: Unknown conflict
            ConflictStateError: The conflict is no longer pending
        """
        conflict = await conflict_repository.get(conflict_id, db)
        if conflict is None:
            raise ConflictNotFoundError(conflict_id)
        if not conflict.is_pending():
            raise ConflictStateError(conflict_id, str(conflict.status))

        targets = [conflict]
        if apply_to_similar:
            targets.extend(await conflict_repository.list_similar_pending(conflict, db))

        for target in targets:
            value = self.resolve_value(
                str(target.field),
                target.base_value,
                target.local_value,
                target.remote_value,
                strategy,
                resolved_value,
            )
            await conflict_repository.mark_resolved(
                target, db, strategy, value, resolved_by, commit=False
            )
        await db.commit()
        for target in targets:
            await db.refresh(target)

        logger.info(
            f"Resolved conflict {conflict_id} with {strategy} by {resolved_by}"
            + (f" ({len(targets) - 1} similar)" if apply_to_similar else "")
        )
        return targets

    async def ignore(
        self, db: AsyncSession, conflict_id: str, resolved_by: str
    ) -> SyncConflict:
        """Mark a pending conflict ignored; neither side is touched."""
        conflict = await conflict_repository.get(conflict_id, db)
        if conflict is None:
            raise ConflictNotFoundError(conflict_id)
        if not conflict.is_pending():
            raise ConflictStateError(conflict_id, str(conflict.status))
        conflict = await conflict_repository.mark_ignored(conflict, db, resolved_by)
        logger.info(f"Ignored conflict {conflict_id} by {resolved_by}")
        return conflict
