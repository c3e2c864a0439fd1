"""APScheduler setup and the job registration surface used by housekeeping jobs."""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None

Handler = Callable[..., Awaitable[Any]]


class JobScheduler:
    """Register handlers and one-shot runs keyed by a stable identifier.

    Every run is a single ``DateTrigger`` job whose APScheduler id is the
    stable identifier, so there is at most one pending run per identifier.
    Jobs reschedule themselves after they fire.
    """

    def __init__(self, scheduler: AsyncIOScheduler):
        self.scheduler = scheduler
        self._handlers: dict[str, Handler] = {}

    def register_handler(self, job_name: str, handler: Handler) -> None:
        """Register (or replace) the coroutine run for ``job_name``."""
        self._handlers[job_name] = handler

    def has_handler(self, job_name: str) -> bool:
        return job_name in self._handlers

    def schedule_at(
        self,
        job_name: str,
        run_at: datetime,
        stable_id: str,
        payload: Optional[dict] = None,
    ) -> None:
        """Run ``job_name`` at ``run_at`` under ``stable_id``, replacing any pending run."""
        handler = self._handlers.get(job_name)
        if handler is None:
            raise LookupError(f"No handler registered for job {job_name!r}")

        self.scheduler.add_job(
            handler,
            trigger=DateTrigger(run_date=run_at, timezone=timezone.utc),
            id=stable_id,
            name=job_name,
            kwargs=payload or {},
            replace_existing=True,
            # Late runs still fire (at-least-once), but only once.
            misfire_grace_time=None,
            coalesce=True,
        )

    def cancel(self, stable_id: str) -> bool:
        """Cancel the pending run for ``stable_id``. Returns False if none was pending."""
        try:
            self.scheduler.remove_job(stable_id)
        except JobLookupError:
            return False
        return True

    def next_run_at(self, stable_id: str) -> Optional[datetime]:
        job = self.scheduler.get_job(stable_id)
        if job is None:
            return None
        return getattr(job, "next_run_time", None)

    def pending_jobs(self) -> list[dict]:
        """Pending runs, soonest first."""
        jobs = [
            {
                "id": job.id,
                "name": job.name,
                "next_run_at": getattr(job, "next_run_time", None),
            }
            for job in self.scheduler.get_jobs()
        ]
        far_future = datetime.max.replace(tzinfo=timezone.utc)
        return sorted(jobs, key=lambda j: j["next_run_at"] or far_future)


def setup_scheduler() -> AsyncIOScheduler:
    """Set up and start the background scheduler."""
    global _scheduler

    _scheduler = AsyncIOScheduler(timezone=timezone.utc)
    _scheduler.start()
    logger.info("Background scheduler started")

    return _scheduler


def shutdown_scheduler() -> None:
    """Shutdown the scheduler."""
    global _scheduler

    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    """Get the current scheduler instance."""
    return _scheduler
