"""
Pydantic schemas for API requests and responses.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from brdsync.models import (
    ConflictStatus,
    ResolutionStrategy,
    SyncDirection,
    SyncJobStatus,
)


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        use_enum_values=True,
    )


# Common response schemas
class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Health status")
    version: str = Field(..., description="Application version")
    database: str = Field(..., description="Database status")
    oauth_enabled: bool = Field(..., description="Whether Jira OAuth is configured")
    queue_running: bool = Field(..., description="Whether the job dispatcher runs")


# Sync requests
class FieldMappingRuleInput(BaseSchema):
    """A field mapping rule as supplied in a request."""

    source_field: str = Field(..., min_length=1, description="BRD field (dotted path)")
    target_field: str = Field(..., min_length=1, description="Jira field (dotted path)")
    direction: SyncDirection = Field(
        SyncDirection.BIDIRECTIONAL, description="Direction values flow"
    )
    transform: Optional[str] = Field(None, description="Registered transform name")
    transform_options: Dict[str, Any] = Field(default_factory=dict)
    default_value: Any = Field(None, description="Value used when the source is empty")
    required: bool = Field(False, description="Fail the item when the value is missing")
    active: bool = Field(True)
    position: Optional[int] = Field(None, ge=0, description="Evaluation order")


class SyncOptions(BaseSchema):
    """Per-job options."""

    auto_resolve_conflicts: bool = Field(False)
    conflict_strategy: Optional[ResolutionStrategy] = Field(None)
    custom_field_mappings: List[FieldMappingRuleInput] = Field(default_factory=list)

    def to_options(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ImportRequest(BaseSchema):
    connection_id: Optional[str] = None
    remote_key: str = Field(..., min_length=1, description="Jira issue key")
    project_key: Optional[str] = None
    options: SyncOptions = Field(default_factory=SyncOptions)


class ExportRequest(BaseSchema):
    connection_id: Optional[str] = None
    local_id: str = Field(..., min_length=1, description="BRD id")
    project_key: Optional[str] = None
    options: SyncOptions = Field(default_factory=SyncOptions)


class BulkImportRequest(BaseSchema):
    connection_id: Optional[str] = None
    remote_keys: List[str] = Field(..., min_length=1)
    project_key: Optional[str] = None
    options: SyncOptions = Field(default_factory=SyncOptions)


class BulkExportRequest(BaseSchema):
    connection_id: Optional[str] = None
    local_ids: List[str] = Field(..., min_length=1)
    project_key: Optional[str] = None
    options: SyncOptions = Field(default_factory=SyncOptions)


class MappingSyncRequest(BaseSchema):
    direction: SyncDirection = Field(SyncDirection.BIDIRECTIONAL)
    options: SyncOptions = Field(default_factory=SyncOptions)


class MappingUpdateRequest(BaseSchema):
    sync_enabled: Optional[bool] = None
    auto_sync: Optional[bool] = None


class ResolveConflictRequest(BaseSchema):
    strategy: ResolutionStrategy
    resolved_value: Any = Field(None, description="Required for the manual strategy")
    apply_to_similar: bool = Field(False)


class FieldMappingRuleUpdate(BaseSchema):
    source_field: Optional[str] = Field(None, min_length=1)
    target_field: Optional[str] = Field(None, min_length=1)
    direction: Optional[SyncDirection] = None
    transform: Optional[str] = None
    transform_options: Optional[Dict[str, Any]] = None
    default_value: Any = None
    required: Optional[bool] = None
    active: Optional[bool] = None
    position: Optional[int] = Field(None, ge=0)


class WebhookRegisterRequest(BaseSchema):
    connection_id: Optional[str] = None
    url: Optional[str] = Field(None, description="Delivery URL; defaults to this service")
    events: Optional[List[str]] = None
    jql: Optional[str] = None
    name: Optional[str] = None


# Responses
class JobResponse(BaseSchema):
    """Sync job."""

    id: str
    connection_id: Optional[str] = None
    direction: str
    operation_type: str
    status: SyncJobStatus
    progress: int = 0
    total_items: int = 0
    processed_items: int = 0
    failed_items: int = 0
    local_ids: List[str] = Field(default_factory=list)
    remote_keys: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 0
    next_attempt_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_by: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    can_cancel: bool = False
    can_retry: bool = False


class JobsListResponse(BaseSchema):
    jobs: List[JobResponse]
    total: int
    limit: int
    offset: int


class HistoryEntryResponse(BaseSchema):
    id: int
    job_id: str
    timestamp: datetime
    action: str
    details: Dict[str, Any] = Field(default_factory=dict)
    performed_by: str


class StatsResponse(BaseSchema):
    by_status: Dict[str, int]
    total: int
    running: int
    claimed: int
    concurrency: int
    scheduled_retries: int
    pending_conflicts: int


class ConflictResponse(BaseSchema):
    id: str
    sync_job_id: Optional[str] = None
    mapping_id: str
    local_id: Optional[str] = None
    remote_key: Optional[str] = None
    conflict_type: str
    field: str
    base_value: Any = None
    local_value: Any = None
    remote_value: Any = None
    resolution_strategy: Optional[str] = None
    resolved_value: Any = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    status: ConflictStatus
    created_at: Optional[datetime] = None


class MappingResponse(BaseSchema):
    id: str
    connection_id: str
    local_id: str
    remote_key: str
    remote_id: Optional[str] = None
    remote_project_key: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    last_modified_local: Optional[datetime] = None
    last_modified_remote: Optional[datetime] = None
    base_snapshot: Dict[str, Any] = Field(default_factory=dict)
    sync_enabled: bool
    auto_sync: bool
    conflict_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FieldMappingRuleResponse(BaseSchema):
    id: str
    source_field: str
    target_field: str
    direction: str
    transform: Optional[str] = None
    transform_options: Optional[Dict[str, Any]] = None
    is_custom: bool = False
    default_value: Any = None
    required: bool = False
    active: bool = True
    position: int = 0

    @field_validator("transform_options", mode="before")
    @classmethod
    def empty_options(cls, v: Any) -> Any:
        return v or {}


class ConnectionResponse(BaseSchema):
    id: str
    user_id: str
    remote_site_id: str
    site_url: Optional[str] = None
    site_name: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)
    is_active: bool
    requires_reauth: bool
    last_error: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class AuthorizationUrlResponse(BaseSchema):
    authorization_url: str
    state: str


class ConnectionTestResponse(BaseSchema):
    connection_id: str
    ok: bool
    account_id: Optional[str] = None
    display_name: Optional[str] = None
    projects: List[Dict[str, Any]] = Field(default_factory=list)


class WebhookRegistrationResponse(BaseSchema):
    id: str
    connection_id: str
    remote_webhook_id: Optional[str] = None
    name: Optional[str] = None
    url: str
    events: List[str] = Field(default_factory=list)
    jql: Optional[str] = None
    is_active: bool
    last_triggered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class WebhookAck(BaseModel):
    received: bool = True
