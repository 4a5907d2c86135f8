"""APScheduler-based background jobs running on the application event loop."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from gatekeeper.retention import WindowPruner

logger = logging.getLogger(__name__)

PRUNE_JOB_ID = "prune_windows"


class SchedulerService:
    """
    Background job scheduler.

    Uses the asyncio scheduler so that coroutine jobs share the event loop
    (and the async store connections) of the application. Jobs live in
    memory and are registered again at every startup.
    """

    def __init__(self, timezone: str = "UTC") -> None:
        """
        Initialize the scheduler service.

        Args:
            timezone: Scheduler timezone
        """
        self._timezone = timezone
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def scheduler(self) -> AsyncIOScheduler:
        """Get or create the scheduler instance."""
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(
                job_defaults={
                    "coalesce": True,  # Combine missed runs into one
                    "max_instances": 1,  # Prevent overlapping runs
                    "misfire_grace_time": 60 * 5,
                },
                timezone=self._timezone,
            )
        return self._scheduler

    def start(self) -> None:
        """Start the scheduler (requires a running event loop)."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")
        else:
            logger.warning("Scheduler is already running")

    def shutdown(self, wait: bool = False) -> None:
        """
        Shutdown the scheduler.

        The asyncio scheduler stops on its next loop iteration, so the
        instance is released at once and a later ``start`` builds a new one.
        """
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=wait)
            logger.info("Scheduler shutdown requested")

    async def stop(self) -> None:
        """Shutdown and let the event loop complete it before returning."""
        self.shutdown()
        await asyncio.sleep(0)

    def add_job(
        self,
        job_id: str,
        func: Callable[..., Any],
        interval_minutes: int,
        run_immediately: bool = False,
    ) -> None:
        """
        Add an interval-based job, replacing any job with the same id.

        Args:
            job_id: Unique identifier for the job
            func: Function or coroutine function to execute
            interval_minutes: Minutes between runs
            run_immediately: Schedule the first run now
        """
        options: dict[str, Any] = {}
        if run_immediately:
            # An explicit None would add the job paused
            options["next_run_time"] = datetime.now(timezone.utc)

        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=job_id,
            name=job_id,
            replace_existing=True,
            **options,
        )
        logger.info(f"Job '{job_id}' added with {interval_minutes}m interval")

    def schedule_pruning(self, pruner: WindowPruner, interval_minutes: int = 60) -> None:
        """Run window retention on an interval."""
        self.add_job(PRUNE_JOB_ID, pruner.prune, interval_minutes)

    def remove_job(self, job_id: str) -> bool:
        """
        Remove a job from the scheduler.

        Returns:
            True if job was removed, False if not found
        """
        try:
            self.scheduler.remove_job(job_id)
            logger.info(f"Job '{job_id}' removed")
            return True
        except JobLookupError:
            return False

    def list_jobs(self) -> list[dict[str, Any]]:
        """List all scheduled jobs."""
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": getattr(job, "next_run_time", None),
            }
            for job in self.scheduler.get_jobs()
        ]

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running
