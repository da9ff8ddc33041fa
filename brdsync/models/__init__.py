"""
Database models package.

This module imports and exports all database models to ensure they are
registered with SQLAlchemy when the application starts.
"""

from brdsync.models.base import BaseModel
from brdsync.models.base_log import BaseLogModel
from brdsync.models.brd import Brd, BRDPriority, BRDStatus
from brdsync.models.connection import Connection, OAuthState
from brdsync.models.field_mapping_rule import FieldMappingRule
from brdsync.models.sync_conflict import (
    RECORD_FIELD,
    ConflictStatus,
    ConflictType,
    ResolutionStrategy,
    SyncConflict,
)
from brdsync.models.sync_history import SyncHistoryEntry
from brdsync.models.sync_job import (
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
    SyncDirection,
    SyncJob,
    SyncJobStatus,
    SyncOperationType,
)
from brdsync.models.sync_mapping import SyncMapping
from brdsync.models.webhook_registration import WebhookRegistration

__all__ = [
    # Base
    "BaseModel",
    "BaseLogModel",
    # Models
    "Brd",
    "Connection",
    "OAuthState",
    "WebhookRegistration",
    "SyncMapping",
    "FieldMappingRule",
    "SyncJob",
    "SyncConflict",
    "SyncHistoryEntry",
    # Enums
    "BRDStatus",
    "BRDPriority",
    "SyncDirection",
    "SyncOperationType",
    "SyncJobStatus",
    "ConflictType",
    "ResolutionStrategy",
    "ConflictStatus",
    # Constants
    "RECORD_FIELD",
    "TERMINAL_STATUSES",
    "CANCELLABLE_STATUSES",
]
