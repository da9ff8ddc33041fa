"""Persistent sync job queue with bounded concurrency and timed retries."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.core.cancellation import CancellationToken, CancellationTokenManager
from brdsync.core.config import Settings, get_settings
from brdsync.core.exceptions import JobNotFoundError, JobStateError, is_transient
from brdsync.core.job_context import job_logging_context
from brdsync.models import SyncJob, SyncJobStatus
from brdsync.repositories.conflict_repository import conflict_repository
from brdsync.repositories.job_repository import job_repository
from brdsync.utils.timeutils import utcnow

from . import events as ev
from .backend import DatabaseJobBackend, JobBackend
from .claims import ClaimStore, InMemoryClaimStore
from .events import SyncEventChannel

logger = logging.getLogger(__name__)


@dataclass
class JobOutcome:
    """What a handler reports back when it returns normally."""

    awaiting_conflict_ids: List[str] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)


class JobRunContext:
    """Handed to the handler: cancellation and per-item bookkeeping."""

    def __init__(self, queue: "SyncJobQueue", job: SyncJob, token: CancellationToken):
        self.queue = queue
        self.job_id = str(job.id)
        self.token = token
        self._done = set((job.job_metadata or {}).get("items", {}).keys())

    @property
    def is_cancelled(self) -> bool:
        return self.token.is_cancelled

    def check_cancellation(self) -> None:
        self.token.check_cancellation()

    def is_done(self, item_key: str) -> bool:
        """Whether an earlier attempt already recorded a result for the item."""
        return item_key in self._done

    async def item_done(
        self, item_key: str, success: bool, detail: Optional[Dict[str, Any]] = None
    ) -> None:
        self.check_cancellation()
        await self.queue.record_item(self.job_id, item_key, success, detail)
        self._done.add(item_key)


JobHandler = Callable[[SyncJob, JobRunContext], Awaitable[JobOutcome]]


class SyncJobQueue:
    """
    Run sync jobs through their state machine.

    A dispatcher task sleeps on an event and, when woken, claims eligible
    jobs until the concurrency limit is reached. Job creation, a finished
    job, an elapsed retry timer and a released conflict all wake it.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        backend: Optional[JobBackend] = None,
        claim_store: Optional[ClaimStore] = None,
        events: Optional[SyncEventChannel] = None,
        concurrency: Optional[int] = None,
        backoff: Optional[Sequence[float]] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.session_factory = session_factory
        self.backend = backend or DatabaseJobBackend(session_factory)
        self.claims = claim_store or InMemoryClaimStore()
        self.events = events or SyncEventChannel()
        self.concurrency = concurrency or settings.sync.concurrency
        self.backoff: List[float] = list(backoff or settings.sync.backoff_seconds)
        self.default_max_retries = settings.sync.max_retries

        self._handler: Optional[JobHandler] = None
        self._tokens = CancellationTokenManager()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._wakeup: Optional[asyncio.Event] = None
        self._dispatcher: Optional[asyncio.Task] = None

    def register_handler(self, handler: JobHandler) -> None:
        """Register the coroutine that processes a claimed job."""
        self._handler = handler
        logger.info(f"Registered sync job handler {getattr(handler, '__qualname__', handler)}")

    def backoff_delay(self, retry_count: int) -> float:
        """Delay before the ``retry_count``-th retry (1-based)."""
        index = min(max(retry_count, 1) - 1, len(self.backoff) - 1)
        return float(self.backoff[index])

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    @property
    def active_job_ids(self) -> List[str]:
        return list(self._tasks)

    # Lifecycle

    async def start(self) -> None:
        """Recover state left by a previous process and start dispatching."""
        if self.is_running:
            return
        self._wakeup = asyncio.Event()
        await self._recover()
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="sync-dispatcher")
        logger.info(f"Sync job queue started (concurrency {self.concurrency})")
        self.notify()

    async def stop(self) -> None:
        """Stop dispatching and abort running jobs; they are requeued on start."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._wakeup = None
        logger.info("Sync job queue stopped")

    def notify(self) -> None:
        """Wake the dispatcher."""
        if self._wakeup is not None:
            self._wakeup.set()

    async def _recover(self) -> None:
        async with self.session_factory() as db:
            for job in await job_repository.list_in_progress(db):
                if (job.job_metadata or {}).get("awaiting_conflicts"):
                    continue
                await job_repository.transition(
                    db,
                    job,
                    SyncJobStatus.PENDING.value,
                    "job_requeued",
                    details={"reason": "interrupted by restart"},
                )
                logger.warning(f"Requeued interrupted job {job.id}")

        now = utcnow()
        for job_id, due in await self.backend.pending_retries():
            delay = max((due - now).total_seconds(), 0.0) if due else 0.0
            self._schedule_timer(job_id, delay)

    def _schedule_timer(self, job_id: str, delay: float) -> None:
        loop = asyncio.get_running_loop()
        previous = self._timers.pop(job_id, None)
        if previous is not None:
            previous.cancel()
        self._timers[job_id] = loop.call_later(delay, self._on_timer, job_id)

    def _on_timer(self, job_id: str) -> None:
        self._timers.pop(job_id, None)
        self.notify()

    def _cancel_timer(self, job_id: str) -> None:
        handle = self._timers.pop(job_id, None)
        if handle is not None:
            handle.cancel()

    # Dispatch

    async def _dispatch_loop(self) -> None:
        assert self._wakeup is not None
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            try:
                await self._fill_slots()
            except Exception as e:
                logger.error(f"Sync dispatcher failed to claim jobs: {e}", exc_info=True)

    async def _fill_slots(self) -> None:
        while await self.claims.count() < self.concurrency:
            job_id = await self.backend.next_eligible(await self.claims.claimed())
            if job_id is None:
                return
            if not await self.claims.claim(job_id):
                continue
            self._tasks[job_id] = asyncio.create_task(
                self._run_claimed(job_id), name=f"sync-job-{job_id}"
            )

    async def _run_claimed(self, job_id: str) -> None:
        try:
            await self.run_job(job_id)
        except asyncio.CancelledError:
            logger.info(f"Job {job_id} interrupted by shutdown")
            raise
        except Exception as e:
            logger.error(f"Unexpected error running job {job_id}: {e}", exc_info=True)
        finally:
            self._tasks.pop(job_id, None)
            await self.claims.release(job_id)
            self.notify()

    async def process_next(self) -> Optional[SyncJob]:
        """
        Claim and run the next eligible job in the calling task.

        Returns:
            The job after processing, or None when nothing was eligible
        """
        job_id = await self.backend.next_eligible(await self.claims.claimed())
        if job_id is None or not await self.claims.claim(job_id):
            return None
        try:
            return await self.run_job(job_id)
        finally:
            await self.claims.release(job_id)

    # Execution

    async def run_job(self, job_id: str) -> Optional[SyncJob]:
        """
        Run one job through the registered handler.

        Jobs that are not pending or retrying are returned untouched.
        """
        if self._handler is None:
            raise RuntimeError("No sync job handler registered")

        async with self.session_factory() as db:
            job = await job_repository.get_job(job_id, db)
            if job is None or job.status not in (
                SyncJobStatus.PENDING.value,
                SyncJobStatus.RETRYING.value,
            ):
                return job
            job = await job_repository.transition(
                db,
                job,
                SyncJobStatus.IN_PROGRESS.value,
                "status_changed_to_in_progress",
                details={"attempt": (job.retry_count or 0) + 1},
                next_attempt_at=None,
            )

        self.events.publish(
            ev.JOB_STARTED,
            job_id=job_id,
            operation_type=job.operation_type,
            retry_count=job.retry_count,
        )
        token = self._tokens.create_token(job_id)
        context = JobRunContext(self, job, token)
        try:
            with job_logging_context(job_id=job_id, operation_type=str(job.operation_type)):
                logger.info(f"Processing {job.total_items} item(s)")
                outcome = await self._handler(job, context)
        except asyncio.CancelledError:
            if not token.is_cancelled:
                raise
            logger.info(f"Job {job_id} stopped after cancellation")
            return await self.get_job(job_id)
        except Exception as e:
            return await self._handle_failure(job_id, e)
        finally:
            self._tokens.remove_token(job_id)

        return await self._handle_success(job_id, outcome)

    async def record_item(
        self,
        job_id: str,
        item_key: str,
        success: bool,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Persist one item result and advance the counters."""
        async with self.session_factory() as db:
            job = await job_repository.get_job(job_id, db)
            if job is None or job.status != SyncJobStatus.IN_PROGRESS.value:
                return
            items = dict((job.job_metadata or {}).get("items") or {})
            if item_key in items:
                return
            items[item_key] = {"status": "completed" if success else "failed", **(detail or {})}
            job_repository.set_metadata(job, "items", items)
            if success:
                job.processed_items = (job.processed_items or 0) + 1  # type: ignore[assignment]
            else:
                job.failed_items = (job.failed_items or 0) + 1  # type: ignore[assignment]
            job.update_progress()
            await db.commit()
            await db.refresh(job)

        self.events.publish(
            ev.JOB_PROGRESS,
            job_id=job_id,
            progress=job.progress,
            processed_items=job.processed_items,
            failed_items=job.failed_items,
            total_items=job.total_items,
        )

    async def _handle_success(self, job_id: str, outcome: JobOutcome) -> Optional[SyncJob]:
        async with self.session_factory() as db:
            job = await job_repository.get_job(job_id, db)
            if job is None or job.status != SyncJobStatus.IN_PROGRESS.value:
                return job

            if outcome.awaiting_conflict_ids:
                job_repository.set_metadata(
                    job, "awaiting_conflicts", list(outcome.awaiting_conflict_ids)
                )
                await job_repository.add_history(
                    db,
                    job_id,
                    "job_awaiting_resolution",
                    {"conflict_ids": list(outcome.awaiting_conflict_ids)},
                )
                await db.refresh(job)
                logger.info(
                    f"Job {job_id} waiting on {len(outcome.awaiting_conflict_ids)} conflict(s)"
                )
                self.events.publish(
                    ev.JOB_PROGRESS,
                    job_id=job_id,
                    progress=job.progress,
                    awaiting_conflicts=list(outcome.awaiting_conflict_ids),
                )
                return job

            job.update_progress()
            job = await job_repository.transition(
                db,
                job,
                SyncJobStatus.COMPLETED.value,
                "job_completed",
                details={
                    "processed_items": job.processed_items,
                    "failed_items": job.failed_items,
                    **outcome.summary,
                },
            )

        logger.info(
            f"Job {job_id} completed: {job.processed_items} processed, "
            f"{job.failed_items} failed"
        )
        self.events.publish(
            ev.JOB_COMPLETED,
            job_id=job_id,
            processed_items=job.processed_items,
            failed_items=job.failed_items,
        )
        return job

    async def _handle_failure(self, job_id: str, exc: Exception) -> Optional[SyncJob]:
        message = str(exc) or exc.__class__.__name__
        error_code = getattr(exc, "error_code", exc.__class__.__name__)

        async with self.session_factory() as db:
            job = await job_repository.get_job(job_id, db)
            if job is None or job.status != SyncJobStatus.IN_PROGRESS.value:
                return job

            will_retry = is_transient(exc) and (job.retry_count or 0) < (job.max_retries or 0)
            job = await job_repository.transition(
                db,
                job,
                SyncJobStatus.FAILED.value,
                "job_failed",
                details={"error": message, "error_code": error_code, "will_retry": will_retry},
                error=message,
            )
            if not will_retry:
                logger.error(f"Job {job_id} failed: {message}")
                self.events.publish(
                    ev.JOB_FAILED, job_id=job_id, error=message, will_retry=False
                )
                return job

            retry_count = (job.retry_count or 0) + 1
            delay = self.backoff_delay(retry_count)
            retry_after = getattr(exc, "retry_after", None)
            if retry_after:
                delay = max(delay, float(retry_after))
            job = await job_repository.transition(
                db,
                job,
                SyncJobStatus.RETRYING.value,
                "job_retrying",
                details={"attempt": retry_count, "delay": delay},
                retry_count=retry_count,
                next_attempt_at=utcnow() + timedelta(seconds=delay),
                completed_at=None,
            )

        logger.warning(
            f"Job {job_id} failed with a transient error, retry {retry_count} "
            f"of {job.max_retries} in {delay}s: {message}"
        )
        self._schedule_timer(job_id, delay)
        self.events.publish(
            ev.JOB_FAILED,
            job_id=job_id,
            error=message,
            will_retry=True,
            retry_count=retry_count,
            delay=delay,
        )
        return job

    # Commands

    async def enqueue(self, **job_fields: Any) -> SyncJob:
        """Persist a new pending job and wake the dispatcher."""
        job_fields.setdefault("max_retries", self.default_max_retries)
        async with self.session_factory() as db:
            job = await job_repository.create_job(db, **job_fields)
        logger.info(
            f"Created {job.operation_type} job {job.id} with {job.total_items} item(s)"
        )
        self.events.publish(
            ev.JOB_CREATED,
            job_id=job.id,
            operation_type=job.operation_type,
            direction=job.direction,
            total_items=job.total_items,
        )
        self.notify()
        return job

    async def get_job(self, job_id: str) -> Optional[SyncJob]:
        async with self.session_factory() as db:
            return await job_repository.get_job(job_id, db)

    async def cancel(self, job_id: str, performed_by: str = "system") -> SyncJob:
        """
        Cancel a pending, running or retrying job.

        Raises:
            JobNotFoundError: Unknown job
            JobStateError: The job already reached a terminal status
        """
        async with self.session_factory() as db:
            job = await job_repository.get_job(job_id, db)
            if job is None:
                raise JobNotFoundError(job_id)
            if not job.can_be_cancelled():
                raise JobStateError(
                    job_id, str(job.status), "cancel", "job has already finished"
                )
            job = await job_repository.transition(
                db,
                job,
                SyncJobStatus.CANCELLED.value,
                "job_cancelled",
                performed_by=performed_by,
                next_attempt_at=None,
            )

        self._cancel_timer(job_id)
        self._tokens.cancel_job(job_id)
        await self.claims.release(job_id)
        logger.info(f"Job {job_id} cancelled by {performed_by}")
        self.events.publish(ev.JOB_PROGRESS, job_id=job_id, status=job.status)
        self.notify()
        return job

    async def retry(self, job_id: str, performed_by: str = "system") -> SyncJob:
        """
        Manually retry a failed job that still has retries left.

        Raises:
            JobNotFoundError: Unknown job
            JobStateError: The job is not failed or has exhausted its retries
        """
        async with self.session_factory() as db:
            job = await job_repository.get_job(job_id, db)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status != SyncJobStatus.FAILED.value:
                raise JobStateError(
                    job_id, str(job.status), "retry", "only failed jobs can be retried"
                )
            if (job.retry_count or 0) >= (job.max_retries or 0):
                raise JobStateError(
                    job_id, str(job.status), "retry", "maximum retries reached"
                )
            retry_count = (job.retry_count or 0) + 1
            job = await job_repository.transition(
                db,
                job,
                SyncJobStatus.RETRYING.value,
                "job_retrying",
                performed_by=performed_by,
                details={"attempt": retry_count, "delay": 0, "manual": True},
                retry_count=retry_count,
                next_attempt_at=utcnow(),
                completed_at=None,
            )

        logger.info(f"Job {job_id} manually retried by {performed_by}")
        self.notify()
        return job

    async def release_awaiting(
        self, job_id: str, performed_by: str = "system"
    ) -> Optional[SyncJob]:
        """Complete a job blocked on conflicts once none of them is pending."""
        async with self.session_factory() as db:
            job = await job_repository.get_job(job_id, db)
            if (
                job is None
                or job.status != SyncJobStatus.IN_PROGRESS.value
                or not (job.job_metadata or {}).get("awaiting_conflicts")
            ):
                return job
            if await conflict_repository.count_pending_for_job(job_id, db):
                return job
            job.update_progress()
            job = await job_repository.transition(
                db,
                job,
                SyncJobStatus.COMPLETED.value,
                "job_released",
                performed_by=performed_by,
                details={"conflict_ids": job.job_metadata.get("awaiting_conflicts")},
            )

        logger.info(f"Job {job_id} released after conflict resolution")
        self.events.publish(
            ev.JOB_COMPLETED,
            job_id=job_id,
            processed_items=job.processed_items,
            failed_items=job.failed_items,
        )
        self.notify()
        return job

    async def get_stats(self) -> Dict[str, Any]:
        async with self.session_factory() as db:
            counts = await job_repository.count_by_status(db)
        return {
            "by_status": counts,
            "total": sum(counts.values()),
            "running": len(self._tasks),
            "claimed": await self.claims.count(),
            "concurrency": self.concurrency,
            "scheduled_retries": len(self._timers),
        }

    async def cleanup(self, older_than_days: int) -> int:
        """Delete terminal jobs older than ``older_than_days``."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        async with self.session_factory() as db:
            removed = await job_repository.cleanup_old_jobs(db, cutoff)
        if removed:
            logger.info(f"Removed {removed} finished sync job(s) older than {older_than_days} days")
        return removed

