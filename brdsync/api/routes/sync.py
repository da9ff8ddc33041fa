"""
Sync management endpoints.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    Header,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.api.schemas import (
    BulkExportRequest,
    BulkImportRequest,
    ConflictResponse,
    ExportRequest,
    HistoryEntryResponse,
    ImportRequest,
    JobResponse,
    JobsListResponse,
    MappingResponse,
    MappingSyncRequest,
    MappingUpdateRequest,
    ResolveConflictRequest,
    StatsResponse,
    WebhookAck,
)
from brdsync.core.dependencies import (
    PaginationParams,
    get_current_user_id,
    get_db,
    get_optional_services,
    get_orchestrator,
    get_queue,
)
from brdsync.core.exceptions import JobNotFoundError, MappingNotFoundError, NotFoundError
from brdsync.models import SyncJob
from brdsync.repositories.conflict_repository import conflict_repository
from brdsync.repositories.job_repository import job_repository
from brdsync.repositories.mapping_repository import mapping_repository
from brdsync.services.sync import SyncEventChannel, SyncJobQueue, SyncOrchestrator
from brdsync.services.container import ServiceContainer
from brdsync.services.sync.conflict_resolver import UNSET
from brdsync.services.webhook_service import VerifiedDelivery, WebhookService

logger = logging.getLogger(__name__)

router = APIRouter()


def _job_response(job: SyncJob) -> JobResponse:
    return JobResponse.model_validate(job.to_dict())


# Job creation


@router.post("/import", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def import_issue(
    body: ImportRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    user_id: str = Depends(get_current_user_id),
) -> JobResponse:
    """Import a Jira issue as a BRD, or refresh the BRD it is already mapped to."""
    job = await orchestrator.import_from_remote(
        body.connection_id,
        body.remote_key,
        project_key=body.project_key,
        options=body.options.to_options(),
        created_by=user_id,
    )
    return _job_response(job)


@router.post("/export", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def export_brd(
    body: ExportRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    user_id: str = Depends(get_current_user_id),
) -> JobResponse:
    """Export a BRD as a Jira Epic, or push it to the Epic it is mapped to."""
    job = await orchestrator.export_to_remote(
        body.connection_id,
        body.local_id,
        project_key=body.project_key,
        options=body.options.to_options(),
        created_by=user_id,
    )
    return _job_response(job)


@router.post(
    "/bulk-import", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED
)
async def bulk_import(
    body: BulkImportRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    user_id: str = Depends(get_current_user_id),
) -> JobResponse:
    job = await orchestrator.bulk_import(
        body.connection_id,
        body.remote_keys,
        options=body.options.to_options(),
        created_by=user_id,
        project_key=body.project_key,
    )
    return _job_response(job)


@router.post(
    "/bulk-export", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED
)
async def bulk_export(
    body: BulkExportRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    user_id: str = Depends(get_current_user_id),
) -> JobResponse:
    job = await orchestrator.bulk_export(
        body.connection_id,
        body.local_ids,
        project_key=body.project_key,
        options=body.options.to_options(),
        created_by=user_id,
    )
    return _job_response(job)


# Jobs


@router.get("/jobs", response_model=JobsListResponse)
async def list_jobs(
    status_filter: Optional[str] = Query(None, alias="status", description="Job status"),
    connection_id: Optional[str] = Query(None),
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
) -> JobsListResponse:
    """List sync jobs, newest first."""
    jobs = await job_repository.list_jobs(
        db,
        status=status_filter,
        connection_id=connection_id,
        limit=pagination.limit,
        offset=pagination.offset,
    )
    total = await job_repository.count_jobs(
        db, status=status_filter, connection_id=connection_id
    )
    return JobsListResponse(
        jobs=[_job_response(job) for job in jobs],
        total=total,
        limit=pagination.limit,
        offset=pagination.offset,
    )


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, db: AsyncSession = Depends(get_db)) -> JobResponse:
    job = await job_repository.get_job(job_id, db)
    if job is None:
        raise JobNotFoundError(job_id)
    return _job_response(job)


@router.get("/jobs/{job_id}/history", response_model=List[HistoryEntryResponse])
async def get_job_history(
    job_id: str, db: AsyncSession = Depends(get_db)
) -> List[HistoryEntryResponse]:
    """Every state change of a job, oldest first."""
    if await job_repository.get_job(job_id, db) is None:
        raise JobNotFoundError(job_id)
    entries = await job_repository.list_history(job_id, db)
    return [HistoryEntryResponse.model_validate(entry.to_dict()) for entry in entries]


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: str,
    queue: SyncJobQueue = Depends(get_queue),
    user_id: str = Depends(get_current_user_id),
) -> JobResponse:
    return _job_response(await queue.cancel(job_id, performed_by=user_id))


@router.post("/jobs/{job_id}/retry", response_model=JobResponse)
async def retry_job(
    job_id: str,
    queue: SyncJobQueue = Depends(get_queue),
    user_id: str = Depends(get_current_user_id),
) -> JobResponse:
    return _job_response(await queue.retry(job_id, performed_by=user_id))


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    queue: SyncJobQueue = Depends(get_queue),
    db: AsyncSession = Depends(get_db),
) -> StatsResponse:
    """Job counts by status plus dispatcher and conflict figures."""
    stats = await queue.get_stats()
    pending = await conflict_repository.count_pending(db)
    return StatsResponse(**stats, pending_conflicts=pending)


# Conflicts


@router.get("/conflicts", response_model=List[ConflictResponse])
async def list_conflicts(
    local_id: Optional[str] = Query(None),
    mapping_id: Optional[str] = Query(None),
    job_id: Optional[str] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
) -> List[ConflictResponse]:
    conflicts = await conflict_repository.list_conflicts(
        db,
        local_id=local_id,
        mapping_id=mapping_id,
        job_id=job_id,
        status=status_filter,
        limit=pagination.limit,
        offset=pagination.offset,
    )
    return [ConflictResponse.model_validate(c.to_dict()) for c in conflicts]


@router.post("/conflicts/{conflict_id}/resolve", response_model=ConflictResponse)
async def resolve_conflict(
    conflict_id: str,
    body: ResolveConflictRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    user_id: str = Depends(get_current_user_id),
) -> ConflictResponse:
    """
    Resolve a pending conflict.

    The resolved value reaches the two records on the mapping's next sync
    pass, which is scheduled immediately.
    """
    resolved_value: Any = (
        body.resolved_value if "resolved_value" in body.model_fields_set else UNSET
    )
    conflict = await orchestrator.resolve_conflict(
        conflict_id,
        str(body.strategy),
        resolved_value=resolved_value,
        apply_to_similar=body.apply_to_similar,
        resolved_by=user_id,
    )
    return ConflictResponse.model_validate(conflict.to_dict())


@router.post("/conflicts/{conflict_id}/ignore", response_model=ConflictResponse)
async def ignore_conflict(
    conflict_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    user_id: str = Depends(get_current_user_id),
) -> ConflictResponse:
    conflict = await orchestrator.ignore_conflict(conflict_id, resolved_by=user_id)
    return ConflictResponse.model_validate(conflict.to_dict())


# Mappings


@router.get("/mappings", response_model=List[MappingResponse])
async def list_mappings(
    connection_id: Optional[str] = Query(None),
    auto_sync: Optional[bool] = Query(None),
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
) -> List[MappingResponse]:
    mappings = await mapping_repository.list_mappings(
        db,
        connection_id=connection_id,
        auto_sync=auto_sync,
        limit=pagination.limit,
        offset=pagination.offset,
    )
    return [MappingResponse.model_validate(m.to_dict()) for m in mappings]


@router.get("/mappings/local/{local_id}", response_model=List[MappingResponse])
async def get_mappings_for_brd(
    local_id: str, db: AsyncSession = Depends(get_db)
) -> List[MappingResponse]:
    """Mappings of one BRD across connections."""
    mappings = await mapping_repository.list_mappings(db, local_id=local_id)
    return [MappingResponse.model_validate(m.to_dict()) for m in mappings]


@router.get("/mappings/remote/{remote_key}", response_model=List[MappingResponse])
async def get_mappings_for_issue(
    remote_key: str, db: AsyncSession = Depends(get_db)
) -> List[MappingResponse]:
    mappings = await mapping_repository.list_mappings(db, remote_key=remote_key)
    return [MappingResponse.model_validate(m.to_dict()) for m in mappings]


@router.patch("/mappings/{mapping_id}", response_model=MappingResponse)
async def update_mapping(
    mapping_id: str,
    body: MappingUpdateRequest,
    db: AsyncSession = Depends(get_db),
) -> MappingResponse:
    """Toggle ``sync_enabled`` / ``auto_sync``."""
    mapping = await mapping_repository.get(mapping_id, db)
    if mapping is None:
        raise MappingNotFoundError(mapping_id)
    changes = body.model_dump(exclude_none=True)
    if changes:
        mapping = await mapping_repository.update(mapping, db, **changes)
        logger.info(f"Updated mapping {mapping_id}: {changes}")
    return MappingResponse.model_validate(mapping.to_dict())


@router.post(
    "/mappings/{mapping_id}/sync",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def sync_mapping(
    mapping_id: str,
    body: Optional[MappingSyncRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    user_id: str = Depends(get_current_user_id),
) -> JobResponse:
    body = body or MappingSyncRequest()
    job = await orchestrator.sync_existing_mapping(
        mapping_id,
        direction=str(body.direction),
        options=body.options.to_options(),
        created_by=user_id,
    )
    return _job_response(job)


# Webhook ingestion


async def _process_delivery(
    delivery: VerifiedDelivery,
    webhooks: WebhookService,
    orchestrator: SyncOrchestrator,
) -> None:
    try:
        await webhooks.touch(delivery.registration_id)
        await orchestrator.handle_webhook(delivery.connection_id, delivery.payload)
    except NotFoundError as e:
        logger.warning(f"Webhook for {delivery.connection_id} could not be handled: {e}")


@router.post(
    "/webhook/{connection_id}",
    response_model=WebhookAck,
    status_code=status.HTTP_202_ACCEPTED,
)
async def receive_webhook(
    connection_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature: Optional[str] = Header(None),
    services: Optional[ServiceContainer] = Depends(get_optional_services),
) -> WebhookAck:
    """
    Receive a Jira webhook delivery.

    Every delivery gets the same acknowledgement, including those that
    arrive before the service has started; deliveries that cannot be
    authenticated or handled are logged and dropped.
    """
    body = await request.body()
    if services is None:
        logger.warning(f"Dropping webhook for {connection_id}: service is starting")
        return WebhookAck()

    source = request.client.host if request.client else None
    delivery = await services.webhooks.verify_delivery(
        connection_id, body, x_hub_signature, source
    )
    if delivery is not None:
        background_tasks.add_task(
            _process_delivery, delivery, services.webhooks, services.orchestrator
        )
    return WebhookAck()


# Events


@router.websocket("/events")
async def sync_events_ws(websocket: WebSocket) -> None:
    """Stream sync events; clients may send ``{"type": "ping"}``."""
    channel: SyncEventChannel = websocket.app.state.services.events
    await websocket.accept()
    subscription = channel.subscribe()
    logger.info("Client connected to sync events WebSocket")

    async def forward() -> None:
        while True:
            event = await subscription.get()
            await websocket.send_json(event.to_dict())

    async def listen() -> None:
        while True:
            data: Dict[str, Any] = await websocket.receive_json()
            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})

    tasks = [asyncio.create_task(forward()), asyncio.create_task(listen())]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.error(f"Sync events WebSocket error: {error}")
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        channel.unsubscribe(subscription)
        logger.info("Client disconnected from sync events WebSocket")
