"""Daily trim of append-only log and metric tables."""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from housekeeping.jobs.cadence import DailyCadence, UtcTime, utc_now
from housekeeping.jobs.retention import (
    BATCH_PAUSE_SECONDS,
    Dialect,
    MaintenanceRun,
    RetentionPolicy,
    TableOverride,
    TableTarget,
    VacuumMode,
    trim_table,
)
from housekeeping.jobs.scheduler import JobScheduler

logger = logging.getLogger(__name__)


class CleanupConfig(BaseModel):
    """Global cleanup configuration with per-table overrides."""

    model_config = ConfigDict(frozen=True)

    # When to run daily (UTC).
    cadence: DailyCadence = DailyCadence(at=UtcTime(hour=19, minute=0))

    default_keep_rows: int = 10000
    default_vacuum: VacuumMode = VacuumMode.ANALYZE_ONLY
    default_batch_size: int = 50000
    # Safety limit on delete batches per table per run.
    default_max_batches: int = 200

    # Which tables to process, and in what order. Put dependent tables
    # before the tables they reference.
    order: tuple[str, ...] = ()

    tables: dict[str, TableOverride] = Field(default_factory=dict)

    @property
    def defaults(self) -> RetentionPolicy:
        return RetentionPolicy(
            keep_rows=self.default_keep_rows,
            batch_size=self.default_batch_size,
            max_batches=self.default_max_batches,
            vacuum=self.default_vacuum,
        )

    def effective(self, table: str) -> RetentionPolicy:
        override = self.tables.get(table)
        if override is None:
            return self.defaults
        return override.merge(self.defaults)

    def targets(self) -> list[TableTarget]:
        """Tables in processing order with their effective policies."""
        return [TableTarget(table=t, policy=self.effective(t)) for t in self.order]


class CleanupJob:
    """Trims every configured table, then schedules itself for the next day."""

    job_name = "housekeeping.logs.cleanup"
    stable_id = "housekeeping:logs:cleanup:daily"

    def __init__(
        self,
        config: CleanupConfig,
        scheduler: JobScheduler,
        db,
        dialect: Dialect,
        lock: Optional[asyncio.Lock] = None,
        batch_pause: float = BATCH_PAUSE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.scheduler = scheduler
        self.db = db
        self.dialect = dialect
        self.lock = lock or asyncio.Lock()
        self.batch_pause = batch_pause
        self.clock = clock
        # Fail at startup, not at 19:00, on bad table names.
        self.targets = config.targets()

    async def invoke(self) -> list[MaintenanceRun]:
        """Run one cleanup pass. Always reschedules, even if a table fails."""
        logger.info("Log cleanup started")
        runs: list[MaintenanceRun] = []

        try:
            async with self.lock:
                for target in self.targets:
                    if not target.policy.enabled:
                        logger.info(f"Skipping {target.table}: disabled")
                        runs.append(MaintenanceRun(table=target.table, skipped="disabled"))
                        continue

                    runs.append(
                        await trim_table(
                            self.db,
                            self.dialect,
                            target.table,
                            target.policy,
                            pause=self.batch_pause,
                        )
                    )
            total = sum(run.total_deleted for run in runs)
            logger.info(f"Log cleanup completed; deleted={total}")
        except Exception:
            done = len(runs)
            failed = self.targets[done].table if done < len(self.targets) else "?"
            logger.exception(f"Log cleanup aborted while processing {failed}")
        finally:
            self.reschedule()

        return runs

    def schedule(self, now: Optional[datetime] = None) -> datetime:
        """Replace any pending run with one at the next daily slot."""
        next_run = self.config.cadence.next_after(now or self.clock())
        self.scheduler.cancel(self.stable_id)
        self.scheduler.schedule_at(self.job_name, next_run, self.stable_id)
        logger.info(f"Log cleanup scheduled at {next_run.isoformat()} (id={self.stable_id})")
        return next_run

    def reschedule(self, now: Optional[datetime] = None) -> Optional[datetime]:
        try:
            return self.schedule(now)
        except Exception:
            logger.exception("Failed to reschedule log cleanup")
            return None

    def ensure_scheduled(self, now: Optional[datetime] = None) -> datetime:
        """Register the handler and (re)schedule. Safe to call repeatedly."""
        self.scheduler.register_handler(self.job_name, self.invoke)
        return self.schedule(now)
