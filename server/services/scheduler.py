"""
Cron maintenance jobs using APScheduler.
Runs periodic housekeeping such as the automation stats recompute.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.base import JobLookupError
from typing import Callable, Dict, List, Optional

from core.logging import get_logger

logger = get_logger(__name__)


def build_cron_trigger(cron_expression: str, timezone: str = "UTC") -> CronTrigger:
    """
    Build a trigger from a 5-field (minute hour day month weekday) or
    6-field (second minute hour day month weekday) cron expression.
    """
    parts = cron_expression.split()
    if len(parts) not in (5, 6):
        raise ValueError(f"Cron expression must have 5 or 6 fields: {cron_expression!r}")

    if len(parts) == 5:
        parts = ['0'] + parts

    return CronTrigger(
        second=parts[0],
        minute=parts[1],
        hour=parts[2],
        day=parts[3],
        month=parts[4],
        day_of_week=parts[5],
        timezone=timezone
    )


class CronScheduler:
    """Thin wrapper over an AsyncIOScheduler owned by the application."""

    def __init__(self, timezone: str = "UTC"):
        self.timezone = timezone
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def scheduler(self) -> AsyncIOScheduler:
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(timezone=self.timezone)
        return self._scheduler

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Start the scheduler if not already running (needs a running event loop)."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Cron scheduler started")

    def shutdown(self) -> None:
        """Shutdown the scheduler without waiting for running jobs."""
        if self.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Cron scheduler shutdown")
        self._scheduler = None

    def register_cron_job(self, job_id: str, cron_expression: str, callback: Callable, **kwargs) -> str:
        """
        Register (or replace) a cron job.

        Args:
            job_id: Unique identifier for the job
            cron_expression: 5- or 6-field cron expression
            callback: Async function to call when the job fires
            **kwargs: Additional arguments passed to the callback

        Returns:
            The job_id
        """
        self.scheduler.add_job(
            callback,
            trigger=build_cron_trigger(cron_expression, self.timezone),
            id=job_id,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            kwargs=kwargs
        )
        logger.info("Registered cron job", job_id=job_id, cron=cron_expression)
        return job_id

    def remove_cron_job(self, job_id: str) -> bool:
        """Remove a job. Returns False if it was not registered."""
        try:
            self.scheduler.remove_job(job_id)
            logger.info("Removed cron job", job_id=job_id)
            return True
        except JobLookupError:
            logger.warning("Cron job not found", job_id=job_id)
            return False

    def get_job_info(self, job_id: str) -> Optional[Dict]:
        job = self.scheduler.get_job(job_id)
        if job:
            # Jobs added before start() have no next_run_time yet
            next_run_time = getattr(job, "next_run_time", None)
            return {
                "id": job.id,
                "next_run_time": next_run_time.isoformat() if next_run_time else None,
                "trigger": str(job.trigger)
            }
        return None

    def get_all_jobs(self) -> List[Dict]:
        return [self.get_job_info(job.id) for job in self.scheduler.get_jobs()]
