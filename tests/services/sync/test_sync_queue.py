"""Tests for the sync job queue state machine."""

import asyncio
from datetime import timedelta

import pytest

from brdsync.core.exceptions import (
    JobNotFoundError,
    JobStateError,
    RemoteAPIError,
    RemoteRateLimitError,
    RemoteServerError,
)
from brdsync.models import ConflictType, SyncJobStatus, SyncMapping
from brdsync.repositories.conflict_repository import conflict_repository
from brdsync.repositories.job_repository import job_repository
from brdsync.services.sync import events as ev
from brdsync.services.sync.queue import JobOutcome
from brdsync.utils.timeutils import ensure_utc, utcnow


async def _enqueue(queue, **fields):
    fields.setdefault("direction", "jira_to_brd")
    fields.setdefault("operation_type", "bulk_import")
    fields.setdefault("remote_keys", ["PROJ-1", "PROJ-2"])
    return await queue.enqueue(**fields)


async def _history_actions(session_factory, job_id):
    async with session_factory() as db:
        return [entry.action for entry in await job_repository.list_history(job_id, db)]


class TestBackoff:
    def test_schedule_is_clamped_to_last_step(self, job_queue):
        delays = [job_queue.backoff_delay(n) for n in range(1, 6)]
        assert delays == [1, 5, 15, 60, 60]

    def test_zero_is_treated_as_first_retry(self, job_queue):
        assert job_queue.backoff_delay(0) == 1


class TestRunJob:
    @pytest.mark.asyncio
    async def test_successful_job_completes(self, job_queue, event_channel, session_factory):
        async def handler(job, context):
            for key in job.items:
                await context.item_done(f"remote:{key}", True)
            return JobOutcome(summary={"imported": 2})

        job_queue.register_handler(handler)
        job = await _enqueue(job_queue)

        result = await job_queue.run_job(job.id)

        assert result.status == SyncJobStatus.COMPLETED.value
        assert result.processed_items == 2
        assert result.failed_items == 0
        assert result.progress == 100
        assert result.completed_at is not None
        assert set(result.job_metadata["items"]) == {"remote:PROJ-1", "remote:PROJ-2"}

        actions = await _history_actions(session_factory, job.id)
        assert actions == [
            "job_created",
            "status_changed_to_in_progress",
            "job_completed",
        ]
        types = [event.type for event in event_channel.recent()]
        assert types[0] == ev.JOB_CREATED
        assert ev.JOB_STARTED in types
        assert types.count(ev.JOB_PROGRESS) == 2
        assert types[-1] == ev.JOB_COMPLETED

    @pytest.mark.asyncio
    async def test_item_results_are_recorded_once(self, job_queue):
        async def handler(job, context):
            await context.item_done("remote:PROJ-1", True)
            await job_queue.record_item(job.id, "remote:PROJ-1", False)
            await context.item_done("remote:PROJ-2", False, {"error": "boom"})
            return JobOutcome()

        job_queue.register_handler(handler)
        job = await _enqueue(job_queue)

        result = await job_queue.run_job(job.id)

        assert result.processed_items == 1
        assert result.failed_items == 1
        assert result.job_metadata["items"]["remote:PROJ-2"] == {
            "status": "failed",
            "error": "boom",
        }

    @pytest.mark.asyncio
    async def test_run_without_handler_raises(self, job_queue):
        job = await _enqueue(job_queue)
        with pytest.raises(RuntimeError):
            await job_queue.run_job(job.id)

    @pytest.mark.asyncio
    async def test_finished_job_is_not_rerun(self, job_queue):
        calls = []

        async def handler(job, context):
            calls.append(job.id)
            return JobOutcome()

        job_queue.register_handler(handler)
        job = await _enqueue(job_queue)
        await job_queue.run_job(job.id)

        again = await job_queue.run_job(job.id)

        assert again.status == SyncJobStatus.COMPLETED.value
        assert calls == [job.id]


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failures_exhaust_retries(self, job_queue, session_factory):
        attempts = []

        async def handler(job, context):
            attempts.append(job.retry_count)
            raise RemoteServerError("Jira unavailable", 503)

        job_queue.register_handler(handler)
        job = await _enqueue(job_queue, max_retries=3)

        statuses = []
        for _ in range(4):
            result = await job_queue.run_job(job.id)
            statuses.append((result.status, result.retry_count))

        assert statuses == [
            (SyncJobStatus.RETRYING.value, 1),
            (SyncJobStatus.RETRYING.value, 2),
            (SyncJobStatus.RETRYING.value, 3),
            (SyncJobStatus.FAILED.value, 3),
        ]
        assert attempts == [0, 1, 2, 3]
        final = await job_queue.get_job(job.id)
        assert final.error == "Jira unavailable"
        assert final.completed_at is not None

        actions = await _history_actions(session_factory, job.id)
        assert actions.count("job_failed") == 4
        assert actions.count("job_retrying") == 3

        with pytest.raises(JobStateError):
            await job_queue.retry(job.id)

    @pytest.mark.asyncio
    async def test_retry_is_scheduled_with_backoff(self, job_queue):
        async def handler(job, context):
            raise RemoteServerError("Jira unavailable", 502)

        job_queue.register_handler(handler)
        job = await _enqueue(job_queue)

        before = utcnow()
        result = await job_queue.run_job(job.id)

        due = ensure_utc(result.next_attempt_at)
        assert before + timedelta(seconds=1) <= due <= utcnow() + timedelta(seconds=1)
        stats = await job_queue.get_stats()
        assert stats["scheduled_retries"] == 1

    @pytest.mark.asyncio
    async def test_retry_after_extends_delay(self, job_queue, event_channel):
        async def handler(job, context):
            raise RemoteRateLimitError(retry_after=30)

        job_queue.register_handler(handler)
        job = await _enqueue(job_queue)

        await job_queue.run_job(job.id)

        failed = [e for e in event_channel.recent() if e.type == ev.JOB_FAILED]
        assert failed[-1].payload["will_retry"] is True
        assert failed[-1].payload["delay"] == 30

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, job_queue):
        async def handler(job, context):
            raise RemoteAPIError("Field 'summary' is required", 400)

        job_queue.register_handler(handler)
        job = await _enqueue(job_queue)

        result = await job_queue.run_job(job.id)

        assert result.status == SyncJobStatus.FAILED.value
        assert result.retry_count == 0
        assert result.next_attempt_at is None

    @pytest.mark.asyncio
    async def test_manual_retry_of_failed_job(self, job_queue):
        async def handler(job, context):
            raise RemoteAPIError("Bad request", 400)

        job_queue.register_handler(handler)
        job = await _enqueue(job_queue)
        await job_queue.run_job(job.id)

        retried = await job_queue.retry(job.id, performed_by="alice")

        assert retried.status == SyncJobStatus.RETRYING.value
        assert retried.retry_count == 1
        assert retried.completed_at is None

    @pytest.mark.asyncio
    async def test_retry_skips_items_already_done(self, job_queue):
        seen = []
        fail_once = [RemoteServerError("Jira unavailable", 503)]

        async def handler(job, context):
            for key in job.items:
                item = f"remote:{key}"
                if context.is_done(item):
                    continue
                seen.append(item)
                if key == "PROJ-2" and fail_once:
                    raise fail_once.pop()
                await context.item_done(item, True)
            return JobOutcome()

        job_queue.register_handler(handler)
        job = await _enqueue(job_queue)

        await job_queue.run_job(job.id)
        result = await job_queue.run_job(job.id)

        assert result.status == SyncJobStatus.COMPLETED.value
        assert result.processed_items == 2
        assert seen == ["remote:PROJ-1", "remote:PROJ-2", "remote:PROJ-2"]


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancelled_job_cannot_be_retried(self, job_queue, session_factory):
        job = await _enqueue(job_queue)

        cancelled = await job_queue.cancel(job.id, performed_by="alice")

        assert cancelled.status == SyncJobStatus.CANCELLED.value
        assert cancelled.completed_at is not None
        with pytest.raises(JobStateError):
            await job_queue.retry(job.id)
        with pytest.raises(JobStateError):
            await job_queue.cancel(job.id)
        assert "job_cancelled" in await _history_actions(session_factory, job.id)

    @pytest.mark.asyncio
    async def test_completed_job_cannot_be_cancelled(self, job_queue):
        async def handler(job, context):
            return JobOutcome()

        job_queue.register_handler(handler)
        job = await _enqueue(job_queue)
        await job_queue.run_job(job.id)

        with pytest.raises(JobStateError) as exc_info:
            await job_queue.cancel(job.id)
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_job(self, job_queue):
        with pytest.raises(JobNotFoundError):
            await job_queue.cancel("missing")
        with pytest.raises(JobNotFoundError):
            await job_queue.retry("missing")

    @pytest.mark.asyncio
    async def test_cancel_stops_running_job_between_items(self, job_queue):
        async def handler(job, context):
            await context.item_done("remote:PROJ-1", True)
            await job_queue.cancel(job.id)
            await context.item_done("remote:PROJ-2", True)
            return JobOutcome()

        job_queue.register_handler(handler)
        job = await _enqueue(job_queue)

        result = await job_queue.run_job(job.id)

        assert result.status == SyncJobStatus.CANCELLED.value
        assert result.processed_items == 1

    @pytest.mark.asyncio
    async def test_cancelled_job_is_not_run(self, job_queue):
        async def handler(job, context):
            raise AssertionError("should not run")

        job_queue.register_handler(handler)
        job = await _enqueue(job_queue)
        await job_queue.cancel(job.id)

        assert await job_queue.process_next() is None


class TestDispatch:
    @pytest.mark.asyncio
    async def test_process_next_takes_oldest_pending(self, job_queue):
        order = []

        async def handler(job, context):
            order.append(job.id)
            return JobOutcome()

        job_queue.register_handler(handler)
        first = await _enqueue(job_queue)
        second = await _enqueue(job_queue)

        await job_queue.process_next()
        await job_queue.process_next()

        assert order == [first.id, second.id]
        assert await job_queue.process_next() is None

    @pytest.mark.asyncio
    async def test_waiting_retry_is_not_eligible_until_due(self, job_queue):
        async def handler(job, context):
            raise RemoteServerError("Jira unavailable", 503)

        job_queue.register_handler(handler)
        job = await _enqueue(job_queue)
        await job_queue.run_job(job.id)

        assert await job_queue.process_next() is None

        async with job_queue.session_factory() as db:
            stored = await job_repository.get_job(job.id, db)
            stored.next_attempt_at = utcnow() - timedelta(seconds=1)
            await db.commit()

        result = await job_queue.process_next()
        assert result.id == job.id
        assert result.retry_count == 2

    @pytest.mark.asyncio
    async def test_start_requeues_interrupted_jobs(
        self, job_queue, event_channel, session_factory
    ):
        job = await _enqueue(job_queue)
        async with session_factory() as db:
            stored = await job_repository.get_job(job.id, db)
            await job_repository.transition(
                db, stored, SyncJobStatus.IN_PROGRESS.value, "status_changed_to_in_progress"
            )

        async def handler(job, context):
            return JobOutcome()

        job_queue.register_handler(handler)
        subscriber = event_channel.subscribe()
        await job_queue.start()

        while True:
            event = await asyncio.wait_for(subscriber.get(), timeout=5)
            if event.type == ev.JOB_COMPLETED:
                break
        await job_queue.stop()

        actions = await _history_actions(session_factory, job.id)
        assert "job_requeued" in actions
        assert actions[-1] == "job_completed"


class TestAwaitingConflicts:
    @pytest.mark.asyncio
    async def test_job_waits_until_conflicts_settle(
        self, job_queue, session_factory, connection
    ):
        job = await _enqueue(job_queue, remote_keys=["PROJ-1"])
        async with session_factory() as db:
            mapping = SyncMapping(
                connection_id=connection.id, local_id="brd-1", remote_key="PROJ-1"
            )
            db.add(mapping)
            await db.commit()
            conflict = await conflict_repository.create(
                db,
                mapping_id=mapping.id,
                conflict_type=ConflictType.FIELD_CHANGE.value,
                field="title",
                local_value="a",
                remote_value="b",
                sync_job_id=job.id,
            )

        async def handler(job, context):
            await context.item_done("remote:PROJ-1", True)
            return JobOutcome(awaiting_conflict_ids=[conflict.id])

        job_queue.register_handler(handler)
        waiting = await job_queue.run_job(job.id)

        assert waiting.status == SyncJobStatus.IN_PROGRESS.value
        assert waiting.job_metadata["awaiting_conflicts"] == [conflict.id]
        still_waiting = await job_queue.release_awaiting(job.id)
        assert still_waiting.status == SyncJobStatus.IN_PROGRESS.value

        async with session_factory() as db:
            stored = await conflict_repository.get(conflict.id, db)
            await conflict_repository.mark_resolved(stored, db, "keep_local", "a", "alice")

        released = await job_queue.release_awaiting(job.id, performed_by="alice")

        assert released.status == SyncJobStatus.COMPLETED.value
        actions = await _history_actions(session_factory, job.id)
        assert "job_awaiting_resolution" in actions
        assert actions[-1] == "job_released"


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_stats_counts_by_status(self, job_queue):
        first = await _enqueue(job_queue)
        await _enqueue(job_queue)
        await job_queue.cancel(first.id)

        stats = await job_queue.get_stats()

        assert stats["by_status"]["pending"] == 1
        assert stats["by_status"]["cancelled"] == 1
        assert stats["by_status"]["failed"] == 0
        assert stats["total"] == 2
        assert stats["running"] == 0
        assert stats["concurrency"] == 3

    @pytest.mark.asyncio
    async def test_cleanup_removes_old_finished_jobs(self, job_queue, session_factory):
        old = await _enqueue(job_queue)
        recent = await _enqueue(job_queue)
        active = await _enqueue(job_queue)
        await job_queue.cancel(old.id)
        await job_queue.cancel(recent.id)
        async with session_factory() as db:
            stored = await job_repository.get_job(old.id, db)
            stored.completed_at = utcnow() - timedelta(days=45)
            await db.commit()

        removed = await job_queue.cleanup(30)

        assert removed == 1
        assert await job_queue.get_job(old.id) is None
        assert await job_queue.get_job(recent.id) is not None
        assert await job_queue.get_job(active.id) is not None
        assert await _history_actions(session_factory, old.id) == []
