"""Register and schedule housekeeping jobs. Call once during startup."""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

import httpx

from housekeeping.jobs.backup_job import (
    RECURRING_CADENCES,
    AdhocBackupTrigger,
    BackupJob,
    BackupJobConfig,
    DatabaseLocation,
    register_adhoc,
)
from housekeeping.jobs.cadence import utc_now
from housekeeping.jobs.cleanup import CleanupConfig, CleanupJob
from housekeeping.jobs.retention import BATCH_PAUSE_SECONDS, Dialect, get_dialect
from housekeeping.jobs.scheduler import JobScheduler

logger = logging.getLogger(__name__)


class Housekeeping:
    """What ``ensure_scheduled`` set up; pass it to whoever triggers adhoc backups."""

    def __init__(
        self,
        scheduler: JobScheduler,
        backup_jobs: list[BackupJob],
        adhoc: Optional[AdhocBackupTrigger],
        cleanup: Optional[CleanupJob],
    ):
        self.scheduler = scheduler
        self.backup_jobs = backup_jobs
        self.adhoc = adhoc
        self.cleanup = cleanup

    def run_backup_now(self, now: Optional[datetime] = None) -> datetime:
        if self.adhoc is None:
            raise RuntimeError("Backups are not configured")
        return self.adhoc.trigger(now)

    def pending_jobs(self) -> list[dict]:
        return self.scheduler.pending_jobs()


def ensure_scheduled(
    scheduler: JobScheduler,
    backup: Optional[BackupJobConfig] = None,
    cleanup: Optional[CleanupConfig] = None,
    db=None,
    dialect: Optional[Dialect] = None,
    db_location: Optional[DatabaseLocation] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    batch_pause: float = BATCH_PAUSE_SECONDS,
    clock: Callable[[], datetime] = utc_now,
    now: Optional[datetime] = None,
) -> Housekeeping:
    """
    Register handlers and schedule the next run of every configured job.

    Idempotent: each job cancels its pending run before scheduling a new one,
    so calling this again (e.g. on redeploy) never duplicates runs.

    All jobs share one lock so a cleanup pass and a backup never overlap.
    """
    lock = asyncio.Lock()
    backup_jobs: list[BackupJob] = []
    adhoc = None
    cleanup_job = None

    if backup is not None:
        for cadence in RECURRING_CADENCES:
            job = BackupJob(
                backup,
                cadence,
                scheduler,
                db_location=db_location,
                lock=lock,
                transport=transport,
                clock=clock,
            )
            job.ensure_scheduled(now)
            backup_jobs.append(job)
        adhoc = register_adhoc(
            backup,
            scheduler,
            db_location=db_location,
            lock=lock,
            transport=transport,
            clock=clock,
        )
        logger.info(
            f"Backups scheduled: {backup.daily}, {backup.weekly}, {backup.monthly}"
        )

    if cleanup is not None:
        if db is None:
            raise ValueError("Log cleanup needs a database executor")
        if dialect is None:
            dialect = get_dialect(getattr(db, "dialect", "postgres"))
        cleanup_job = CleanupJob(
            cleanup,
            scheduler,
            db,
            dialect,
            lock=lock,
            batch_pause=batch_pause,
            clock=clock,
        )
        cleanup_job.ensure_scheduled(now)

    return Housekeeping(scheduler, backup_jobs, adhoc, cleanup_job)
