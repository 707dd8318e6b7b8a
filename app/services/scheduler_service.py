import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger


logger = logging.getLogger(__name__)


class ScheduleRegistry:
    """
    Owns every recurring timer of the running service.

    One AsyncIOScheduler is shared by the script instances and the playlist
    refresh. Each owner registers its job under a stable id; re-registering an
    id replaces the previous timer, and cancelling releases it exactly once.
    The scheduler is started on first configuration and stopped on shutdown.
    """

    def __init__(self, misfire_grace_sec: int = 300):
        self.scheduler: AsyncIOScheduler | None = None
        self._misfire_grace_sec = misfire_grace_sec
        self._intervals: dict[str, int] = {}

    @property
    def running(self) -> bool:
        return bool(self.scheduler and self.scheduler.running)

    def start(self) -> None:
        """Start the scheduler (idempotent)"""
        if self.running:
            return

        self.scheduler = AsyncIOScheduler(timezone='UTC')
        self.scheduler.start()
        logger.info("Schedule registry started")

    def schedule(
        self,
        job_id: str,
        func: Callable[[], Awaitable[Any]],
        interval_ms: int,
    ) -> None:
        """
        Install (or replace) a recurring job

        Args:
            job_id: Stable id of the owner's timer
            func: Coroutine function run on every tick
            interval_ms: Period in milliseconds
        """
        if interval_ms <= 0:
            raise ValueError("interval_ms must be > 0")

        self.start()
        trigger = IntervalTrigger(seconds=interval_ms / 1000, timezone='UTC')
        self.scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self._misfire_grace_sec,
        )
        self._intervals[job_id] = interval_ms

        next_time = self.get_next_run_time(job_id)
        logger.info(
            "Scheduled '%s' every %s ms. Next run: %s",
            job_id,
            interval_ms,
            next_time.isoformat() if next_time else "unknown",
        )

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a job if present

        Returns:
            True if a timer was removed, False if none was installed
        """
        if job_id not in self._intervals:
            return False

        del self._intervals[job_id]
        if self.scheduler and self.scheduler.get_job(job_id):
            self.scheduler.remove_job(job_id)
        logger.info("Cancelled schedule '%s'", job_id)
        return True

    def is_scheduled(self, job_id: str) -> bool:
        return job_id in self._intervals

    def get_interval_ms(self, job_id: str) -> int | None:
        return self._intervals.get(job_id)

    def get_next_run_time(self, job_id: str) -> datetime | None:
        """Get next scheduled run time of a job"""
        if not self.scheduler:
            return None
        job = self.scheduler.get_job(job_id)
        return job.next_run_time if job else None

    def shutdown(self) -> None:
        """Cancel every timer and stop the scheduler"""
        self._intervals.clear()
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Schedule registry stopped")
        self.scheduler = None
