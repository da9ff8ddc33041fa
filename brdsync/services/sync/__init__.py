from .backend import DatabaseJobBackend, JobBackend
from .claims import ClaimStore, InMemoryClaimStore, MappingLockRegistry
from .conflict_resolver import ConflictResolver, MergeRegistry, Outcome
from .events import SyncEvent, SyncEventChannel
from .field_mapper import FieldMapper, MappingRule
from .orchestrator import SyncOrchestrator
from .queue import JobOutcome, JobRunContext, SyncJobQueue
from .scheduler import SyncScheduler
from .sources import (
    DatabaseBRDStore,
    JiraRemoteStore,
    LocalRecordStore,
    RemoteRecordStore,
)
from .transforms import TransformRegistry, default_registry

__all__ = [
    "SyncOrchestrator",
    "SyncJobQueue",
    "JobOutcome",
    "JobRunContext",
    "JobBackend",
    "DatabaseJobBackend",
    "ClaimStore",
    "InMemoryClaimStore",
    "MappingLockRegistry",
    "ConflictResolver",
    "MergeRegistry",
    "Outcome",
    "FieldMapper",
    "MappingRule",
    "TransformRegistry",
    "default_registry",
    "SyncEvent",
    "SyncEventChannel",
    "SyncScheduler",
    "LocalRecordStore",
    "RemoteRecordStore",
    "DatabaseBRDStore",
    "JiraRemoteStore",
]
