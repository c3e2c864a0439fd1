"""Backup jobs: ask an external backup agent to take a database backup.

One job type covers every cadence. Recurring cadences (daily, weekly,
monthly) reschedule themselves after every run, success or not, so an agent
outage never ends the schedule. The adhoc cadence only runs when triggered.
"""

import asyncio
import inspect
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict

from housekeeping.jobs.cadence import (
    DailyCadence,
    MonthlyCadence,
    UtcTime,
    WeeklyCadence,
    utc_now,
)
from housekeeping.jobs.scheduler import JobScheduler

logger = logging.getLogger(__name__)

OutcomeCallback = Callable[[bool, str], Any]


class BackupCadence(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ADHOC = "adhoc"


RECURRING_CADENCES = (BackupCadence.DAILY, BackupCadence.WEEKLY, BackupCadence.MONTHLY)


class DatabaseLocation(BaseModel):
    """Where the host's own database lives, as the host sees it."""

    model_config = ConfigDict(frozen=True)

    host: Optional[str] = None
    port: Optional[int] = None
    # In development the agent runs in a container next to the host machine.
    development: bool = False


class BackupJobConfig(BaseModel):
    """Backup job config passed by the host."""

    model_config = ConfigDict(frozen=True)

    agent_url: str  # e.g. http://postgres:1804/backup
    agent_token: str = ""
    http_timeout_seconds: float = 300.0

    # Send POSTGRES_HOST/POSTGRES_PORT headers to the agent.
    send_db_host_port_headers: bool = False
    # If unset, derived from the host's DatabaseLocation.
    db_host_override: Optional[str] = None
    db_port_override: Optional[str] = None

    daily: DailyCadence = DailyCadence(at=UtcTime(hour=20, minute=30))
    weekly: WeeklyCadence = WeeklyCadence(weekday=7, at=UtcTime(hour=20, minute=0))
    monthly: MonthlyCadence = MonthlyCadence(day=1, at=UtcTime(hour=20, minute=15))

    on_outcome: Optional[OutcomeCallback] = None

    def cadence_for(
        self, cadence: BackupCadence
    ) -> Optional[Union[DailyCadence, WeeklyCadence, MonthlyCadence]]:
        if cadence == BackupCadence.DAILY:
            return self.daily
        if cadence == BackupCadence.WEEKLY:
            return self.weekly
        if cadence == BackupCadence.MONTHLY:
            return self.monthly
        return None


def sanitize_url(url: str) -> str:
    """Trim accidental wrapping quotes in config values."""
    value = url.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1].strip()
    return value


def db_hint_headers(
    config: BackupJobConfig, location: Optional[DatabaseLocation] = None
) -> dict[str, str]:
    """POSTGRES_HOST/POSTGRES_PORT headers for the agent, if enabled."""
    if not config.send_db_host_port_headers:
        return {}

    location = location or DatabaseLocation()
    if config.db_host_override:
        host = config.db_host_override
    elif location.development:
        host = "host.docker.internal"
    else:
        host = location.host or "postgres"

    if config.db_port_override:
        port = config.db_port_override
    else:
        port = str(location.port) if location.port else "5432"

    return {"POSTGRES_HOST": host, "POSTGRES_PORT": port}


class BackupJob:
    """Call the backup agent for one cadence."""

    def __init__(
        self,
        config: BackupJobConfig,
        cadence: BackupCadence,
        scheduler: JobScheduler,
        db_location: Optional[DatabaseLocation] = None,
        lock: Optional[asyncio.Lock] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.cadence = BackupCadence(cadence)
        self.scheduler = scheduler
        self.db_location = db_location
        self.lock = lock or asyncio.Lock()
        self.transport = transport
        self.clock = clock

    @property
    def job_name(self) -> str:
        return f"housekeeping.backup.{self.cadence.value}"

    @property
    def stable_id(self) -> str:
        return f"housekeeping:backup:{self.cadence.value}"

    @property
    def recurring(self) -> bool:
        return self.cadence in RECURRING_CADENCES

    def next_run_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        cadence = self.config.cadence_for(self.cadence)
        if cadence is None:
            return None
        return cadence.next_after(now)

    async def invoke(self) -> bool:
        """Run the backup. Never raises; returns whether the agent succeeded."""
        logger.info(f"Backup started; cadence={self.cadence.value}")
        success = False
        try:
            async with self.lock:
                success = await self.call_agent()
        finally:
            if self.recurring:
                self.reschedule()
            await self._report(success)
        return success

    async def call_agent(self) -> bool:
        """POST to the agent. Failures are logged, not raised."""
        url = sanitize_url(self.config.agent_url)
        timeout = self.config.http_timeout_seconds
        headers = {"Content-Type": "application/json"}
        if self.config.agent_token:
            headers["Authorization"] = f"Bearer {self.config.agent_token}"
        headers.update(db_hint_headers(self.config, self.db_location))

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                response = await client.post(
                    url,
                    params={"reason": self.cadence.value},
                    headers=headers,
                    content=b"{}",
                )
        except httpx.TimeoutException:
            logger.error(f"Backup agent timeout after {timeout:g}s; cadence={self.cadence.value}")
            return False
        except Exception:
            logger.exception(f"Backup agent request failed; cadence={self.cadence.value}")
            return False

        if not response.is_success:
            logger.error(
                f"Backup agent failed; cadence={self.cadence.value} "
                f"status={response.status_code} body={response.text}"
            )
            return False

        logger.info(
            f"Backup agent success; cadence={self.cadence.value} "
            f"status={response.status_code} body={response.text}"
        )
        return True

    def schedule(self, now: Optional[datetime] = None) -> datetime:
        """Replace any pending run with one at the next slot for this cadence."""
        next_run = self.next_run_at(now or self.clock())
        if next_run is None:
            raise ValueError(f"{self.cadence.value} backups are not recurring")
        self.scheduler.cancel(self.stable_id)
        self.scheduler.schedule_at(self.job_name, next_run, self.stable_id)
        logger.info(
            f"Scheduled {self.cadence.value} backup at {next_run.isoformat()} (id={self.stable_id})"
        )
        return next_run

    def reschedule(self, now: Optional[datetime] = None) -> Optional[datetime]:
        try:
            return self.schedule(now)
        except Exception:
            logger.exception(f"Failed to reschedule {self.cadence.value} backup")
            return None

    def ensure_scheduled(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Register the handler; recurring cadences are also (re)scheduled."""
        self.scheduler.register_handler(self.job_name, self.invoke)
        if not self.recurring:
            return None
        return self.schedule(now)

    async def _report(self, success: bool) -> None:
        callback = self.config.on_outcome
        if callback is None:
            return
        try:
            result = callback(success, self.cadence.value)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Backup outcome callback failed")


class AdhocBackupTrigger:
    """Handle for on-demand backups, returned by adhoc registration."""

    def __init__(self, job: BackupJob):
        if job.recurring:
            raise ValueError("AdhocBackupTrigger needs an adhoc BackupJob")
        self.job = job

    @property
    def stable_id(self) -> str:
        return self.job.stable_id

    def trigger(self, now: Optional[datetime] = None) -> datetime:
        """Schedule a one-shot backup now, replacing any pending adhoc run."""
        run_at = now or self.job.clock()
        scheduler = self.job.scheduler
        scheduler.cancel(self.job.stable_id)
        scheduler.schedule_at(self.job.job_name, run_at, self.job.stable_id)
        logger.info(f"Adhoc backup triggered at {run_at.isoformat()}")
        return run_at


def register_adhoc(
    config: BackupJobConfig,
    scheduler: JobScheduler,
    db_location: Optional[DatabaseLocation] = None,
    lock: Optional[asyncio.Lock] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], datetime] = utc_now,
) -> AdhocBackupTrigger:
    """Register the adhoc backup handler and return its trigger."""
    job = BackupJob(
        config,
        BackupCadence.ADHOC,
        scheduler,
        db_location=db_location,
        lock=lock,
        transport=transport,
        clock=clock,
    )
    job.ensure_scheduled()
    return AdhocBackupTrigger(job)
