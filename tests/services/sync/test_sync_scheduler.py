"""Tests for sync scheduler."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from brdsync.models import Connection, SyncMapping
from brdsync.repositories.oauth_state_store import InMemoryOAuthStateStore
from brdsync.services.sync.scheduler import SyncScheduler
from brdsync.utils.timeutils import utcnow


@pytest.fixture
def mock_scheduler():
    scheduler = Mock(spec=AsyncIOScheduler)
    scheduler.running = False
    scheduler.add_job.side_effect = lambda *args, **kwargs: Mock(id=kwargs["id"])
    return scheduler


def _scheduler(orchestrator, session_factory, test_settings, scheduler=None, **kwargs):
    return SyncScheduler(
        orchestrator,
        orchestrator.queue,
        session_factory=session_factory,
        settings=test_settings,
        scheduler=scheduler,
        **kwargs,
    )


class TestSchedulerLifecycle:
    """Scheduling and lifecycle against a mocked APScheduler."""

    def test_init_default_scheduler(self, orchestrator, session_factory, test_settings):
        scheduler = _scheduler(orchestrator, session_factory, test_settings)

        assert isinstance(scheduler.scheduler, AsyncIOScheduler)
        assert scheduler._jobs == {}

    def test_start_without_interval_only_schedules_cleanup(
        self, orchestrator, session_factory, test_settings, mock_scheduler
    ):
        scheduler = _scheduler(orchestrator, session_factory, test_settings, mock_scheduler)

        scheduler.start()

        assert list(scheduler._jobs) == ["nightly_cleanup"]
        mock_scheduler.start.assert_called_once()

    def test_start_with_interval(
        self, orchestrator, session_factory, test_settings, mock_scheduler
    ):
        test_settings.sync.scheduled_interval_minutes = 15
        scheduler = _scheduler(orchestrator, session_factory, test_settings, mock_scheduler)

        scheduler.start()

        assert set(scheduler._jobs) == {"scheduled_sync", "nightly_cleanup"}
        sync_call = mock_scheduler.add_job.call_args_list[0]
        assert sync_call.kwargs["id"] == "scheduled_sync"
        assert sync_call.kwargs["max_instances"] == 1
        assert sync_call.kwargs["trigger"].interval == timedelta(minutes=15)

    def test_start_already_running(
        self, orchestrator, session_factory, test_settings, mock_scheduler
    ):
        mock_scheduler.running = True
        scheduler = _scheduler(orchestrator, session_factory, test_settings, mock_scheduler)

        scheduler.start()

        mock_scheduler.start.assert_not_called()

    def test_shutdown(self, orchestrator, session_factory, test_settings, mock_scheduler):
        mock_scheduler.running = True
        scheduler = _scheduler(orchestrator, session_factory, test_settings, mock_scheduler)

        scheduler.shutdown()

        mock_scheduler.shutdown.assert_called_once_with(wait=False)

    def test_invalid_interval(self, orchestrator, session_factory, test_settings, mock_scheduler):
        scheduler = _scheduler(orchestrator, session_factory, test_settings, mock_scheduler)

        with pytest.raises(ValueError, match="Minimum interval"):
            scheduler.schedule_sync(0)

    def test_cancel_job(self, orchestrator, session_factory, test_settings, mock_scheduler):
        scheduler = _scheduler(orchestrator, session_factory, test_settings, mock_scheduler)
        scheduler.schedule_cleanup(hour=4)

        assert scheduler.cancel_job("nightly_cleanup") is True
        mock_scheduler.remove_job.assert_called_once_with("nightly_cleanup")
        assert scheduler.cancel_job("nightly_cleanup") is False

    def test_get_scheduled_jobs(
        self, orchestrator, session_factory, test_settings, mock_scheduler
    ):
        scheduler = _scheduler(orchestrator, session_factory, test_settings, mock_scheduler)
        active = Mock(next_run_time=datetime(2024, 1, 1, 3, 0, 0), trigger="cron[hour='3']")
        paused = Mock(next_run_time=None, trigger="interval[0:15:00]")
        scheduler._jobs = {"nightly_cleanup": active, "scheduled_sync": paused}

        jobs = scheduler.get_scheduled_jobs()

        assert jobs["nightly_cleanup"] == {
            "id": "nightly_cleanup",
            "next_run": "2024-01-01T03:00:00",
            "trigger": "cron[hour='3']",
            "active": True,
        }
        assert jobs["scheduled_sync"]["active"] is False


class TestScheduledWork:
    @pytest.mark.asyncio
    async def test_run_scheduled_sync(
        self, orchestrator, session_factory, test_settings, connection
    ):
        async with session_factory() as db:
            db.add(
                SyncMapping(
                    connection_id=connection.id,
                    local_id="brd-1",
                    remote_key="PROJ-1",
                    auto_sync=True,
                )
            )
            db.add(
                SyncMapping(
                    connection_id=connection.id,
                    local_id="brd-2",
                    remote_key="PROJ-2",
                    auto_sync=False,
                )
            )
            # needs re-authorization, so it is skipped
            stale = Connection(
                user_id="user-2",
                remote_site_id="cloud-2",
                site_url="https://other.atlassian.net",
                access_token_enc="x",
                refresh_token_enc="y",
                token_expires_at=utcnow(),
                is_active=True,
                requires_reauth=True,
            )
            db.add(stale)
            await db.commit()
        scheduler = _scheduler(orchestrator, session_factory, test_settings)

        created = await scheduler.run_scheduled_sync()

        assert created == 1
        stats = await orchestrator.queue.get_stats()
        assert stats["by_status"]["pending"] == 1

    @pytest.mark.asyncio
    async def test_run_scheduled_sync_without_mappings(
        self, orchestrator, session_factory, test_settings, connection
    ):
        scheduler = _scheduler(orchestrator, session_factory, test_settings)

        assert await scheduler.run_scheduled_sync() == 0

    @pytest.mark.asyncio
    async def test_run_cleanup(self, orchestrator, session_factory, test_settings):
        state_store = InMemoryOAuthStateStore()
        await state_store.save("expired", "user-1", utcnow() - timedelta(minutes=1))
        await state_store.save("live", "user-1", utcnow() + timedelta(minutes=10))
        scheduler = _scheduler(
            orchestrator, session_factory, test_settings, state_store=state_store
        )
        scheduler.queue.cleanup = AsyncMock(return_value=2)

        result = await scheduler.run_cleanup()

        assert result == {"jobs": 2, "conflicts": 0, "oauth_states": 1}
        scheduler.queue.cleanup.assert_awaited_once_with(30)
