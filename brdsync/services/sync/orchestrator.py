"""Sync orchestration: job creation and per-item reconciliation."""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.core.config import Settings, get_settings
from brdsync.core.database import AsyncSessionLocal
from brdsync.core.exceptions import (
    BrdSyncException,
    ConnectionNotFoundError,
    DuplicateMappingError,
    MappingNotFoundError,
    NotFoundError,
    OAuthError,
    RemoteAPIError,
    SyncDisabledError,
    ValidationError,
    is_transient,
)
from brdsync.models import (
    RECORD_FIELD,
    ConflictType,
    ResolutionStrategy,
    SyncConflict,
    SyncDirection,
    SyncJob,
    SyncMapping,
    SyncOperationType,
)
from brdsync.repositories.conflict_repository import conflict_repository
from brdsync.repositories.connection_repository import connection_repository
from brdsync.repositories.mapping_repository import mapping_repository
from brdsync.repositories.rule_repository import rule_repository
from brdsync.utils.timeutils import ensure_utc, parse_datetime, utcnow

from . import events as ev
from .claims import LockKey, MappingLockRegistry
from .conflict_resolver import UNSET, ConflictResolver, FieldComparison, Outcome, values_equal
from .field_mapper import FieldMapper, get_path, set_path
from .queue import JobOutcome, JobRunContext, SyncJobQueue
from .sources import LocalRecordStore, RemoteRecordStore
from .transforms import TransformRegistry, default_registry

logger = logging.getLogger(__name__)

LOCAL = "local"
REMOTE = "remote"

WEBHOOK_EVENTS = ("jira:issue_created", "jira:issue_updated", "jira:issue_deleted")
AUTO_STRATEGIES = (
    ResolutionStrategy.KEEP_LOCAL.value,
    ResolutionStrategy.KEEP_REMOTE.value,
    ResolutionStrategy.MERGE.value,
)
CUSTOM_RULE_POSITION = 1000


@dataclass
class ConflictPolicy:
    """How a job treats the conflicts it detects."""

    auto_resolve: bool = False
    strategy: Optional[str] = None

    @classmethod
    def from_metadata(cls, metadata: Optional[Dict[str, Any]]) -> "ConflictPolicy":
        metadata = metadata or {}
        return cls(
            auto_resolve=bool(metadata.get("auto_resolve_conflicts")),
            strategy=metadata.get("conflict_strategy"),
        )


@dataclass
class ItemResult:
    action: str
    mapping_id: Optional[str] = None
    local_id: Optional[str] = None
    remote_key: Optional[str] = None
    pushed: List[str] = field(default_factory=list)
    pulled: List[str] = field(default_factory=list)
    conflict_ids: List[str] = field(default_factory=list)

    def detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"action": self.action}
        for name in ("mapping_id", "local_id", "remote_key"):
            if getattr(self, name):
                detail[name] = getattr(self, name)
        for name in ("pushed", "pulled", "conflict_ids"):
            if getattr(self, name):
                detail[name] = list(getattr(self, name))
        return detail


def _is_item_error(exc: BrdSyncException) -> bool:
    """Errors that fail one item and let the job carry on."""
    if is_transient(exc) or isinstance(exc, (OAuthError, ConnectionNotFoundError)):
        return False
    return isinstance(
        exc, (ValidationError, DuplicateMappingError, NotFoundError, RemoteAPIError)
    )


class SyncOrchestrator:
    """
    Turn sync requests into jobs and process them item by item.

    Every public operation persists a job and returns it immediately; the
    queue later calls :meth:`process_job`, which creates missing
    counterparts or reconciles existing mappings.
    """

    def __init__(
        self,
        queue: SyncJobQueue,
        local_store: LocalRecordStore,
        remote_store: RemoteRecordStore,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        resolver: Optional[ConflictResolver] = None,
        locks: Optional[MappingLockRegistry] = None,
        transforms: Optional[TransformRegistry] = None,
        settings: Optional[Settings] = None,
    ):
        self.queue = queue
        self.local = local_store
        self.remote = remote_store
        self.session_factory = session_factory
        self.resolver = resolver or ConflictResolver()
        self.locks = locks or MappingLockRegistry()
        self.transforms = transforms or default_registry
        self.settings = settings or get_settings()
        self.events = queue.events
        queue.register_handler(self.process_job)

    # Job creation

    async def resolve_connection_id(self, connection_id: Optional[str] = None) -> str:
        """
        Validate ``connection_id`` or fall back to the oldest active connection.

        Raises:
            ConnectionNotFoundError: Unknown connection
            OAuthError: The connection is inactive or needs re-authorization
            ValidationError: No connection given and none is active
        """
        async with self.session_factory() as db:
            if connection_id:
                connection = await connection_repository.get(connection_id, db)
                if connection is None:
                    raise ConnectionNotFoundError(connection_id)
            else:
                connection = await connection_repository.get_default(db)
                if connection is None:
                    raise ValidationError(
                        "No active Jira connection; authorize one first",
                        field="connection_id",
                    )
        if not connection.is_active or connection.requires_reauth:
            raise OAuthError(
                OAuthError.CONNECTION_INACTIVE,
                f"Connection {connection.id} must be re-authorized",
                connection_id=str(connection.id),
            )
        return str(connection.id)

    def _job_metadata(
        self, options: Optional[Dict[str, Any]], **extra: Any
    ) -> Dict[str, Any]:
        """Validate job options and merge them into job metadata."""
        options = dict(options or {})
        metadata: Dict[str, Any] = {}

        auto_resolve = bool(options.get("auto_resolve_conflicts", False))
        strategy = options.get("conflict_strategy")
        if auto_resolve:
            if strategy not in AUTO_STRATEGIES:
                raise ValidationError(
                    "auto_resolve_conflicts requires conflict_strategy "
                    f"to be one of {', '.join(AUTO_STRATEGIES)}",
                    field="conflict_strategy",
                    value=strategy,
                )
            metadata["auto_resolve_conflicts"] = True
            metadata["conflict_strategy"] = strategy

        custom = options.get("custom_field_mappings") or []
        if custom:
            rules = []
            for index, raw in enumerate(custom):
                if not isinstance(raw, dict) or not raw.get("source_field") or not raw.get(
                    "target_field"
                ):
                    raise ValidationError(
                        "Custom field mappings need source_field and target_field",
                        field="custom_field_mappings",
                        value=raw,
                    )
                rule = dict(raw)
                rule.setdefault("position", CUSTOM_RULE_POSITION + index)
                rule["is_custom"] = True
                rules.append(rule)
            FieldMapper(rules, registry=self.transforms).validate()
            metadata["custom_field_mappings"] = rules

        metadata.update({k: v for k, v in extra.items() if v is not None})
        return metadata

    async def import_from_remote(
        self,
        connection_id: Optional[str],
        remote_key: str,
        project_key: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        created_by: str = "system",
    ) -> SyncJob:
        """Create a job that imports (or refreshes) one Jira issue as a BRD."""
        if not remote_key:
            raise ValidationError("remote_key is required", field="remote_key")
        connection_id = await self.resolve_connection_id(connection_id)
        async with self.session_factory() as db:
            mapping = await mapping_repository.get_by_remote(connection_id, remote_key, db)
        operation = SyncOperationType.UPDATE if mapping else SyncOperationType.CREATE
        return await self.queue.enqueue(
            connection_id=connection_id,
            direction=SyncDirection.JIRA_TO_BRD.value,
            operation_type=operation.value,
            remote_keys=[remote_key],
            created_by=created_by,
            metadata=self._job_metadata(options, project_key=project_key),
        )

    async def export_to_remote(
        self,
        connection_id: Optional[str],
        local_id: str,
        project_key: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        created_by: str = "system",
    ) -> SyncJob:
        """
        Create a job that exports one BRD as a Jira Epic.

        Raises:
            ValidationError: The BRD is unmapped and no project key is known
        """
        if not local_id:
            raise ValidationError("local_id is required", field="local_id")
        connection_id = await self.resolve_connection_id(connection_id)
        async with self.session_factory() as db:
            mapping = await mapping_repository.get_by_local(connection_id, local_id, db)
        if mapping is None:
            project_key = self._project_key(project_key)
        operation = SyncOperationType.UPDATE if mapping else SyncOperationType.CREATE
        return await self.queue.enqueue(
            connection_id=connection_id,
            direction=SyncDirection.BRD_TO_JIRA.value,
            operation_type=operation.value,
            local_ids=[local_id],
            created_by=created_by,
            metadata=self._job_metadata(options, project_key=project_key),
        )

    async def bulk_import(
        self,
        connection_id: Optional[str],
        remote_keys: List[str],
        options: Optional[Dict[str, Any]] = None,
        created_by: str = "system",
        project_key: Optional[str] = None,
    ) -> SyncJob:
        """One job importing several issues."""
        keys = _unique(remote_keys)
        if not keys:
            raise ValidationError("remote_keys must not be empty", field="remote_keys")
        connection_id = await self.resolve_connection_id(connection_id)
        return await self.queue.enqueue(
            connection_id=connection_id,
            direction=SyncDirection.JIRA_TO_BRD.value,
            operation_type=SyncOperationType.BULK_IMPORT.value,
            remote_keys=keys,
            created_by=created_by,
            metadata=self._job_metadata(options, project_key=project_key),
        )

    async def bulk_export(
        self,
        connection_id: Optional[str],
        local_ids: List[str],
        project_key: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        created_by: str = "system",
    ) -> SyncJob:
        """One job exporting several BRDs into ``project_key``."""
        ids = _unique(local_ids)
        if not ids:
            raise ValidationError("local_ids must not be empty", field="local_ids")
        connection_id = await self.resolve_connection_id(connection_id)
        return await self.queue.enqueue(
            connection_id=connection_id,
            direction=SyncDirection.BRD_TO_JIRA.value,
            operation_type=SyncOperationType.BULK_EXPORT.value,
            local_ids=ids,
            created_by=created_by,
            metadata=self._job_metadata(options, project_key=self._project_key(project_key)),
        )

    async def sync_existing_mapping(
        self,
        mapping_id: str,
        direction: str = SyncDirection.BIDIRECTIONAL.value,
        options: Optional[Dict[str, Any]] = None,
        created_by: str = "system",
    ) -> SyncJob:
        """
        Create an update job for an existing mapping.

        Raises:
            MappingNotFoundError: Unknown mapping
            SyncDisabledError: Sync is disabled on the mapping
            ValidationError: Unknown direction
        """
        if direction not in {d.value for d in SyncDirection}:
            raise ValidationError(f"Unknown direction '{direction}'", field="direction")
        async with self.session_factory() as db:
            mapping = await mapping_repository.get(mapping_id, db)
        if mapping is None:
            raise MappingNotFoundError(mapping_id)
        if not mapping.sync_enabled:
            raise SyncDisabledError(mapping_id)
        return await self.queue.enqueue(
            connection_id=mapping.connection_id,
            direction=direction,
            operation_type=SyncOperationType.UPDATE.value,
            local_ids=[mapping.local_id],
            created_by=created_by,
            metadata=self._job_metadata(options, mapping_id=mapping.id),
        )

    async def handle_webhook(
        self, connection_id: str, payload: Dict[str, Any]
    ) -> Optional[SyncJob]:
        """
        Translate a verified webhook delivery into a ``webhook_sync`` job.

        Returns:
            The created job, or None when the event is not actionable
        """
        event = payload.get("webhookEvent")
        key = (payload.get("issue") or {}).get("key")
        if event not in WEBHOOK_EVENTS or not key:
            logger.info(f"Ignoring webhook event {event!r} for connection {connection_id}")
            return None

        async with self.session_factory() as db:
            mapping = await mapping_repository.get_by_remote(connection_id, key, db)
        if mapping is None or not mapping.sync_enabled or not mapping.auto_sync:
            logger.info(f"Webhook {event} for {key} has no auto-synced mapping, dropping")
            return None

        return await self.queue.enqueue(
            connection_id=connection_id,
            direction=SyncDirection.JIRA_TO_BRD.value,
            operation_type=SyncOperationType.WEBHOOK_SYNC.value,
            remote_keys=[key],
            created_by="webhook",
            metadata={"mapping_id": mapping.id, "webhook_event": event},
        )

    async def notify_local_deleted(
        self, connection_id: Optional[str], local_id: str, created_by: str = "system"
    ) -> SyncJob:
        """Create a ``delete`` job that surfaces a removed BRD as a conflict."""
        connection_id = await self.resolve_connection_id(connection_id)
        async with self.session_factory() as db:
            mapping = await mapping_repository.get_by_local(connection_id, local_id, db)
        if mapping is None:
            raise NotFoundError("SyncMapping for BRD", local_id)
        return await self.queue.enqueue(
            connection_id=connection_id,
            direction=SyncDirection.BRD_TO_JIRA.value,
            operation_type=SyncOperationType.DELETE.value,
            local_ids=[local_id],
            created_by=created_by,
            metadata={"mapping_id": mapping.id},
        )

    async def schedule_connection_sync(self, connection_id: str) -> Optional[SyncJob]:
        """Bidirectional pass over every auto-synced mapping of a connection."""
        async with self.session_factory() as db:
            mappings = await mapping_repository.list_mappings(
                db, connection_id=connection_id, auto_sync=True, limit=10000
            )
        if not mappings:
            return None
        return await self.queue.enqueue(
            connection_id=connection_id,
            direction=SyncDirection.BIDIRECTIONAL.value,
            operation_type=SyncOperationType.SCHEDULED_SYNC.value,
            local_ids=[str(m.local_id) for m in mappings],
            created_by="scheduler",
        )

    # Conflicts

    async def resolve_conflict(
        self,
        conflict_id: str,
        strategy: str,
        resolved_value: Any = UNSET,
        apply_to_similar: bool = False,
        resolved_by: str = "system",
    ) -> SyncConflict:
        """
        Resolve a conflict and schedule the pass that applies the value.

        Jobs waiting on the resolved conflicts are released, and every
        affected mapping without remaining pending conflicts gets a
        bidirectional update job.
        """
        async with self.session_factory() as db:
            resolved = await self.resolver.resolve(
                db, conflict_id, strategy, resolved_by, resolved_value, apply_to_similar
            )
        for conflict in resolved:
            self._publish_resolved(conflict)
        await self._after_settled(resolved, resolved_by, follow_up=True)
        return resolved[0]

    async def ignore_conflict(
        self, conflict_id: str, resolved_by: str = "system"
    ) -> SyncConflict:
        async with self.session_factory() as db:
            conflict = await self.resolver.ignore(db, conflict_id, resolved_by)
        self._publish_resolved(conflict)
        await self._after_settled([conflict], resolved_by, follow_up=False)
        return conflict

    def _publish_resolved(self, conflict: SyncConflict) -> None:
        self.events.publish(
            ev.CONFLICT_RESOLVED,
            conflict_id=conflict.id,
            mapping_id=conflict.mapping_id,
            field=conflict.field,
            status=conflict.status,
            resolution_strategy=conflict.resolution_strategy,
        )

    async def _after_settled(
        self, conflicts: List[SyncConflict], actor: str, follow_up: bool
    ) -> None:
        for job_id in _unique(c.sync_job_id for c in conflicts if c.sync_job_id):
            await self.queue.release_awaiting(job_id, actor)
        if not follow_up:
            return

        field_mappings = _unique(
            c.mapping_id for c in conflicts if c.field != RECORD_FIELD
        )
        for mapping_id in field_mappings:
            async with self.session_factory() as db:
                mapping = await mapping_repository.get(mapping_id, db)
                if mapping is None or not mapping.sync_enabled:
                    continue
                if await conflict_repository.get_pending_for_mapping(mapping_id, db):
                    continue
            await self.queue.enqueue(
                connection_id=mapping.connection_id,
                direction=SyncDirection.BIDIRECTIONAL.value,
                operation_type=SyncOperationType.UPDATE.value,
                local_ids=[mapping.local_id],
                created_by=actor,
                metadata={"mapping_id": mapping.id, "trigger": "conflict_resolution"},
            )

    # Job processing

    async def process_job(self, job: SyncJob, context: JobRunContext) -> JobOutcome:
        """Queue handler: process every item of ``job`` not yet done."""
        connection_id = str(job.connection_id)
        await self.remote.check_connection(connection_id)
        mapper = await self._load_mapper(job)
        policy = ConflictPolicy.from_metadata(job.job_metadata)

        counts: Dict[str, int] = {}
        for kind, item in self._items(job):
            item_key = f"{kind}:{item}"
            context.check_cancellation()
            if context.is_done(item_key):
                continue
            try:
                result = await self._process_item(job, kind, item, mapper, policy)
            except BrdSyncException as e:
                if not _is_item_error(e):
                    raise
                logger.warning(f"Item {item_key} failed: {e}")
                await context.item_done(
                    item_key, False, {"error": str(e), "error_code": e.error_code}
                )
                continue
            counts[result.action] = counts.get(result.action, 0) + 1
            await context.item_done(item_key, True, result.detail())

        async with self.session_factory() as db:
            pending = await conflict_repository.list_conflicts(
                db, job_id=str(job.id), status="pending", limit=10000
            )
        return JobOutcome(
            awaiting_conflict_ids=[str(c.id) for c in pending],
            summary={"actions": counts} if counts else {},
        )

    @staticmethod
    def _items(job: SyncJob) -> List[Tuple[str, str]]:
        return [(LOCAL, str(i)) for i in job.local_ids or []] + [
            (REMOTE, str(k)) for k in job.remote_keys or []
        ]

    async def _load_mapper(self, job: SyncJob) -> FieldMapper:
        async with self.session_factory() as db:
            rules: List[Any] = list(await rule_repository.list_rules(db, active_only=True))
        rules.extend((job.job_metadata or {}).get("custom_field_mappings") or [])
        mapper = FieldMapper(rules, registry=self.transforms)
        mapper.validate()
        return mapper

    def _project_key(self, project_key: Optional[str]) -> str:
        project_key = project_key or self.settings.sync.default_project_key
        if not project_key:
            raise ValidationError(
                "A Jira project key is required to export a BRD", field="project_key"
            )
        return project_key

    async def _find_mapping(
        self, connection_id: str, kind: str, item: str
    ) -> Optional[SyncMapping]:
        async with self.session_factory() as db:
            if kind == LOCAL:
                return await mapping_repository.get_by_local(connection_id, item, db)
            return await mapping_repository.get_by_remote(connection_id, item, db)

    def _lock_keys(
        self, connection_id: str, kind: str, item: str, mapping: Optional[SyncMapping]
    ) -> List[LockKey]:
        keys = [
            self.locks.local_key(connection_id, item)
            if kind == LOCAL
            else self.locks.remote_key(connection_id, item)
        ]
        if mapping is not None:
            keys.append(self.locks.local_key(connection_id, str(mapping.local_id)))
            keys.append(self.locks.remote_key(connection_id, str(mapping.remote_key)))
        return keys

    async def _process_item(
        self,
        job: SyncJob,
        kind: str,
        item: str,
        mapper: FieldMapper,
        policy: ConflictPolicy,
    ) -> ItemResult:
        connection_id = str(job.connection_id)
        mapping = await self._find_mapping(connection_id, kind, item)
        async with self.locks.hold(self._lock_keys(connection_id, kind, item, mapping)):
            mapping = await self._find_mapping(connection_id, kind, item)
            if mapping is None:
                if job.operation_type == SyncOperationType.DELETE.value:
                    return ItemResult("skipped", local_id=item if kind == LOCAL else None)
                if kind == LOCAL:
                    return await self._export_new(job, item, mapper)
                return await self._import_new(job, item, mapper, policy)
            if not mapping.sync_enabled:
                logger.info(f"Mapping {mapping.id} has sync disabled, skipping")
                return ItemResult("skipped", mapping_id=str(mapping.id))
            return await self._reconcile(job, mapping, mapper, policy)

    def _agreed_snapshot(
        self, mapper: FieldMapper, local: Dict[str, Any], remote: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Base snapshot holding every bidirectional field both sides agree on."""
        remote_view = mapper.to_local(remote, partial=True)
        snapshot: Dict[str, Any] = {}
        for name in mapper.bidirectional_fields():
            local_value = get_path(local, name, None)
            if values_equal(local_value, get_path(remote_view, name, None)):
                snapshot[name] = local_value
        return snapshot

    async def _import_new(
        self,
        job: SyncJob,
        remote_key: str,
        mapper: FieldMapper,
        policy: ConflictPolicy,
    ) -> ItemResult:
        connection_id = str(job.connection_id)
        remote = await self.remote.get(connection_id, remote_key)
        if remote is None:
            raise NotFoundError("Jira issue", remote_key)

        # Jira answers lowercase and moved keys with the canonical issue
        canonical_key = remote["key"]
        if canonical_key != remote_key:
            mapping = await self._find_mapping(connection_id, REMOTE, canonical_key)
            if mapping is not None:
                logger.info(f"{remote_key} resolves to mapped issue {canonical_key}")
                keys = self._lock_keys(connection_id, REMOTE, canonical_key, mapping)
                async with self.locks.hold(keys):
                    if not mapping.sync_enabled:
                        return ItemResult("skipped", mapping_id=str(mapping.id))
                    return await self._reconcile(job, mapping, mapper, policy)

        record = mapper.to_local(remote)
        record["createdBy"] = job.created_by
        local = await self.local.create(record)

        async with self.session_factory() as db:
            mapping = await mapping_repository.create(
                db,
                connection_id=connection_id,
                local_id=local["id"],
                remote_key=remote["key"],
                remote_id=remote.get("id"),
                remote_project_key=remote.get("project"),
                base_snapshot=self._agreed_snapshot(mapper, local, remote),
                last_modified_local=parse_datetime(local.get("updatedAt")),
                last_modified_remote=parse_datetime(remote.get("updated")),
            )
        logger.info(f"Imported {remote_key} as BRD {local['id']}")
        return ItemResult(
            "created_local",
            mapping_id=str(mapping.id),
            local_id=local["id"],
            remote_key=remote_key,
        )

    async def _export_new(self, job: SyncJob, local_id: str, mapper: FieldMapper) -> ItemResult:
        connection_id = str(job.connection_id)
        project_key = self._project_key((job.job_metadata or {}).get("project_key"))
        local = await self.local.get(local_id)
        if local is None:
            raise NotFoundError("BRD", local_id)

        remote = await self.remote.create(connection_id, project_key, mapper.to_remote(local))

        async with self.session_factory() as db:
            mapping = await mapping_repository.create(
                db,
                connection_id=connection_id,
                local_id=local_id,
                remote_key=remote["key"],
                remote_id=remote.get("id"),
                remote_project_key=remote.get("project") or project_key,
                base_snapshot=self._agreed_snapshot(mapper, local, remote),
                last_modified_local=parse_datetime(local.get("updatedAt")),
                last_modified_remote=parse_datetime(remote.get("updated")),
            )
        logger.info(f"Exported BRD {local_id} as {remote['key']}")
        return ItemResult(
            "created_remote",
            mapping_id=str(mapping.id),
            local_id=local_id,
            remote_key=remote["key"],
        )

    async def _reconcile(
        self,
        job: SyncJob,
        mapping: SyncMapping,
        mapper: FieldMapper,
        policy: ConflictPolicy,
    ) -> ItemResult:
        """Three-way pass over one mapping."""
        connection_id = str(mapping.connection_id)
        local = await self.local.get(str(mapping.local_id))
        remote = await self.remote.get(connection_id, str(mapping.remote_key))
        if local is None or remote is None:
            return await self._record_deletion(job, mapping, local, remote, policy)

        fields = mapper.bidirectional_fields()
        remote_mapped = mapper.to_local(remote, partial=True)
        local_view = {name: get_path(local, name, None) for name in fields}
        remote_view = {name: get_path(remote_mapped, name, None) for name in fields}
        base = dict(mapping.base_snapshot or {})

        async with self.session_factory() as db:
            overrides = await conflict_repository.resolved_overrides(
                str(mapping.id), ensure_utc(mapping.last_synced_at), db
            )
        overrides.pop(RECORD_FIELD, None)

        push = job.direction in (
            SyncDirection.BRD_TO_JIRA.value,
            SyncDirection.BIDIRECTIONAL.value,
        )
        pull = job.direction in (
            SyncDirection.JIRA_TO_BRD.value,
            SyncDirection.BIDIRECTIONAL.value,
        )

        to_local: Dict[str, Any] = {}
        to_remote: Dict[str, Any] = {}
        divergent: List[FieldComparison] = []
        comparisons = self.resolver.compare(base, local_view, remote_view, fields)
        for cmp in comparisons:
            if cmp.field in overrides:
                _settle(cmp, overrides[cmp.field], to_local, to_remote)
            elif cmp.outcome == Outcome.APPLY_LOCAL and push:
                to_remote[cmp.field] = cmp.local
            elif cmp.outcome == Outcome.APPLY_REMOTE and pull:
                to_local[cmp.field] = cmp.remote
            elif cmp.outcome == Outcome.CONFLICT:
                divergent.append(cmp)

        created = await self._record_conflicts(job, mapping, divergent, policy, to_local, to_remote)
        for name in mapper.required_local_fields():
            if name in to_local and to_local[name] is None:
                logger.warning(
                    f"Jira cleared {name} on {mapping.remote_key}, keeping the BRD value"
                )
                del to_local[name]

        local_changes = _nested(to_local)
        remote_changes = mapper.map(
            _nested(to_remote),
            SyncDirection.BRD_TO_JIRA.value,
            partial=True,
            rules=[r for r in mapper.rules if r.is_bidirectional],
            context=_nested({**remote_view, **to_local}),
        )
        if push:
            self._one_way(mapper, SyncDirection.BRD_TO_JIRA.value, local, remote, remote_changes)
        if pull:
            self._one_way(mapper, SyncDirection.JIRA_TO_BRD.value, remote, local, local_changes)

        if remote_changes:
            await self.remote.update(connection_id, str(mapping.remote_key), remote_changes)
        if local_changes:
            local = await self.local.update(str(mapping.local_id), local_changes)

        new_base = dict(base)
        for cmp in comparisons:
            final_local = to_local.get(cmp.field, cmp.local)
            final_remote = to_remote.get(cmp.field, cmp.remote)
            if values_equal(final_local, final_remote):
                new_base[cmp.field] = final_local

        async with self.session_factory() as db:
            stored = await mapping_repository.get(str(mapping.id), db)
            if stored is not None:
                await mapping_repository.update(
                    stored,
                    db,
                    base_snapshot=new_base,
                    last_synced_at=utcnow(),
                    last_modified_local=parse_datetime(local.get("updatedAt")),
                    last_modified_remote=parse_datetime(remote.get("updated")),
                    conflict_count=(stored.conflict_count or 0) + len(created),
                )

        pending_ids = [str(c.id) for c in created if c.is_pending()]
        logger.info(
            f"Reconciled mapping {mapping.id}: pushed {sorted(remote_changes)}, "
            f"pulled {sorted(local_changes)}, {len(pending_ids)} pending conflict(s)"
        )
        return ItemResult(
            "reconciled",
            mapping_id=str(mapping.id),
            local_id=str(mapping.local_id),
            remote_key=str(mapping.remote_key),
            pushed=sorted(remote_changes),
            pulled=sorted(local_changes),
            conflict_ids=pending_ids,
        )

    def _one_way(
        self,
        mapper: FieldMapper,
        direction: str,
        source: Dict[str, Any],
        target: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> None:
        """Add one-way rule values that differ from the target's current value."""
        for rule in mapper.one_way_rules(direction):
            mapped = mapper.map(source, direction, partial=True, rules=[rule])
            for path in mapper.written_fields(rule, direction):
                converted = get_path(mapped, path, None)
                if converted is None:
                    continue
                if not values_equal(converted, get_path(target, path, None)):
                    set_path(changes, path, converted)

    async def _record_conflicts(
        self,
        job: SyncJob,
        mapping: SyncMapping,
        divergent: List[FieldComparison],
        policy: ConflictPolicy,
        to_local: Dict[str, Any],
        to_remote: Dict[str, Any],
    ) -> List[SyncConflict]:
        """Persist new conflicts; auto-resolved ones feed the pending writes."""
        if not divergent:
            return []
        created: List[SyncConflict] = []
        async with self.session_factory() as db:
            for cmp, conflict_type in self.resolver.classify(divergent):
                if await conflict_repository.get_pending_for_field(str(mapping.id), cmp.field, db):
                    logger.debug(f"Conflict on {cmp.field} for mapping {mapping.id} already open")
                    continue
                conflict = await conflict_repository.create(
                    db,
                    mapping_id=str(mapping.id),
                    conflict_type=conflict_type.value,
                    field=cmp.field,
                    base_value=cmp.base,
                    local_value=cmp.local,
                    remote_value=cmp.remote,
                    sync_job_id=str(job.id),
                    local_id=str(mapping.local_id),
                    remote_key=str(mapping.remote_key),
                )
                if policy.auto_resolve and policy.strategy:
                    value = self.resolver.resolve_value(
                        cmp.field, cmp.base, cmp.local, cmp.remote, policy.strategy
                    )
                    conflict = await conflict_repository.mark_resolved(
                        conflict, db, policy.strategy, value, "system"
                    )
                    _settle(cmp, value, to_local, to_remote)
                created.append(conflict)

        for conflict in created:
            self._publish_detected(conflict)
            if not conflict.is_pending():
                self._publish_resolved(conflict)
        return created

    async def _record_deletion(
        self,
        job: SyncJob,
        mapping: SyncMapping,
        local: Optional[Dict[str, Any]],
        remote: Optional[Dict[str, Any]],
        policy: ConflictPolicy,
    ) -> ItemResult:
        """One side is gone: surface it as a deletion conflict, write nothing."""
        result = ItemResult(
            "deletion_conflict",
            mapping_id=str(mapping.id),
            local_id=str(mapping.local_id),
            remote_key=str(mapping.remote_key),
        )
        async with self.session_factory() as db:
            if await conflict_repository.get_pending_for_field(str(mapping.id), RECORD_FIELD, db):
                return result
            conflict = await conflict_repository.create(
                db,
                mapping_id=str(mapping.id),
                conflict_type=ConflictType.DELETION.value,
                field=RECORD_FIELD,
                base_value=None,
                local_value=local,
                remote_value=remote,
                sync_job_id=str(job.id),
                local_id=str(mapping.local_id),
                remote_key=str(mapping.remote_key),
            )
            if policy.auto_resolve and policy.strategy:
                value = self.resolver.resolve_value(
                    RECORD_FIELD, None, local, remote, policy.strategy
                )
                conflict = await conflict_repository.mark_resolved(
                    conflict, db, policy.strategy, value, "system"
                )
            stored = await mapping_repository.get(str(mapping.id), db)
            if stored is not None:
                await mapping_repository.increment_conflicts(stored, db)

        side = LOCAL if local is None else REMOTE
        logger.warning(f"Mapping {mapping.id}: {side} record no longer exists")
        self._publish_detected(conflict)
        if conflict.is_pending():
            result.conflict_ids.append(str(conflict.id))
        else:
            self._publish_resolved(conflict)
        return result

    def _publish_detected(self, conflict: SyncConflict) -> None:
        self.events.publish(
            ev.CONFLICT_DETECTED,
            conflict_id=conflict.id,
            mapping_id=conflict.mapping_id,
            job_id=conflict.sync_job_id,
            field=conflict.field,
            conflict_type=conflict.conflict_type,
        )


def _settle(
    cmp: FieldComparison, value: Any, to_local: Dict[str, Any], to_remote: Dict[str, Any]
) -> None:
    """Schedule ``value`` for whichever side does not hold it yet."""
    if not values_equal(value, cmp.local):
        to_local[cmp.field] = value
    if not values_equal(value, cmp.remote):
        to_remote[cmp.field] = value


def _nested(flat: Dict[str, Any]) -> Dict[str, Any]:
    record: Dict[str, Any] = {}
    for path, value in flat.items():
        set_path(record, path, value)
    return record


def _unique(values: Iterable[Any]) -> List[Any]:
    seen: List[Any] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen
