import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.core.config import Settings, get_settings
from brdsync.core.database import AsyncSessionLocal
from brdsync.repositories.conflict_repository import conflict_repository
from brdsync.repositories.connection_repository import connection_repository
from brdsync.repositories.oauth_state_store import OAuthStateStore
from brdsync.utils.timeutils import utcnow

from .orchestrator import SyncOrchestrator
from .queue import SyncJobQueue

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Manages periodic sync passes and housekeeping"""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        queue: SyncJobQueue,
        state_store: Optional[OAuthStateStore] = None,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        settings: Optional[Settings] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.orchestrator = orchestrator
        self.queue = queue
        self.state_store = state_store
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.scheduler = scheduler or AsyncIOScheduler()
        self._jobs: Dict[str, Any] = {}

    def start(self) -> None:
        """Schedule the configured jobs and start the scheduler"""
        interval = self.settings.sync.scheduled_interval_minutes
        if interval > 0:
            self.schedule_sync(interval)
        else:
            logger.info("Scheduled sync disabled (SYNC_SCHEDULED_INTERVAL_MINUTES=0)")
        self.schedule_cleanup()
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Sync scheduler started")

    def shutdown(self) -> None:
        """Shutdown the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Sync scheduler stopped")

    def schedule_sync(self, interval_minutes: int, job_id: str = "scheduled_sync") -> str:
        """
        Run a bidirectional pass over auto-synced mappings at a fixed interval

        Args:
            interval_minutes: Interval in minutes between passes
            job_id: Unique job identifier

        Returns:
            Job ID
        """
        if interval_minutes < 1:
            raise ValueError("Minimum interval is 1 minute")

        job = self.scheduler.add_job(
            self.run_scheduled_sync,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=job_id,
            replace_existing=True,
            misfire_grace_time=300,
            max_instances=1,
        )
        self._jobs[job_id] = job
        logger.info(f"Scheduled sync every {interval_minutes} minutes")
        return job_id

    def schedule_cleanup(self, hour: int = 3, job_id: str = "nightly_cleanup") -> str:
        """Purge old jobs, settled conflicts and expired OAuth states once a day"""
        job = self.scheduler.add_job(
            self.run_cleanup,
            trigger=CronTrigger(hour=hour, minute=0),
            id=job_id,
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self._jobs[job_id] = job
        logger.info(f"Scheduled nightly cleanup at {hour:02d}:00")
        return job_id

    def cancel_job(self, job_id: str) -> bool:
        if job_id in self._jobs:
            self.scheduler.remove_job(job_id)
            del self._jobs[job_id]
            logger.info(f"Cancelled scheduled job: {job_id}")
            return True
        return False

    def get_scheduled_jobs(self) -> Dict[str, Any]:
        """Get information about scheduled jobs"""
        jobs_info = {}
        for job_id, job in self._jobs.items():
            next_run = job.next_run_time
            jobs_info[job_id] = {
                "id": job_id,
                "next_run": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger),
                "active": next_run is not None,
            }
        return jobs_info

    async def run_scheduled_sync(self) -> int:
        """Create one scheduled_sync job per active connection; returns the count"""
        async with self.session_factory() as db:
            connections = await connection_repository.list_connections(db, active_only=True)

        created = 0
        for connection in connections:
            if connection.requires_reauth:
                logger.info(f"Skipping scheduled sync for {connection.id}: re-authorization needed")
                continue
            job = await self.orchestrator.schedule_connection_sync(str(connection.id))
            if job is not None:
                created += 1
        logger.info(f"Scheduled sync created {created} job(s)")
        return created

    async def run_cleanup(self) -> Dict[str, int]:
        """Remove terminal jobs, settled conflicts and expired OAuth states"""
        days = self.settings.sync.cleanup_days
        jobs = await self.queue.cleanup(days)

        async with self.session_factory() as db:
            conflicts = await conflict_repository.cleanup_old_conflicts(
                db, utcnow() - timedelta(days=days)
            )

        states = await self.state_store.purge_expired() if self.state_store else 0
        logger.info(
            f"Cleanup removed {jobs} job(s), {conflicts} conflict(s), {states} OAuth state(s)"
        )
        return {"jobs": jobs, "conflicts": conflicts, "oauth_states": states}
