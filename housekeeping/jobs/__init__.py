"""Background housekeeping jobs."""

from housekeeping.jobs.registration import Housekeeping, ensure_scheduled
from housekeeping.jobs.scheduler import JobScheduler, setup_scheduler, shutdown_scheduler

__all__ = [
    "Housekeeping",
    "JobScheduler",
    "ensure_scheduled",
    "setup_scheduler",
    "shutdown_scheduler",
]
