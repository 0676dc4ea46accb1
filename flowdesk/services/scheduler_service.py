"""Thin wrapper over APScheduler's AsyncIOScheduler."""

from typing import Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from flowdesk.logging_config import get_logger

logger = get_logger("scheduler_service")


class SchedulerService:
    def __init__(self, timezone: str = "UTC"):
        self.timezone = timezone
        self.scheduler = AsyncIOScheduler(timezone=timezone)

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.start()
        logger.info(f"Scheduler started (timezone={self.timezone})")

    def stop(self) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    def add_interval_job(self, func: Callable, seconds: int, job_id: str) -> None:
        self.scheduler.add_job(
            func,
            IntervalTrigger(seconds=seconds, timezone=self.timezone),
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def remove_job(self, job_id: str) -> bool:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        return True
