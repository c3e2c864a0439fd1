"""Application configuration management."""

import re
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings

from housekeeping.jobs.backup_job import BackupJobConfig, DatabaseLocation
from housekeeping.jobs.cadence import DailyCadence, MonthlyCadence, UtcTime, WeeklyCadence
from housekeeping.jobs.cleanup import CleanupConfig
from housekeeping.jobs.retention import TableOverride, VacuumMode


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "/data/housekeeping.db"
    database_host: Optional[str] = None
    database_port: Optional[int] = None
    sql_dialect: str = "sqlite"

    # Server
    run_mode: str = "production"
    log_level: str = "info"
    admin_token: Optional[str] = None

    # Backup agent
    backup_enabled: bool = False
    backup_agent_url: str = ""
    backup_agent_token: str = ""
    backup_http_timeout_seconds: float = 300.0
    backup_send_db_host_port_headers: bool = False
    backup_db_host_override: Optional[str] = None
    backup_db_port_override: Optional[str] = None

    # Backup cadences (UTC, HH:MM)
    backup_daily_time: str = "20:30"
    backup_weekly_time: str = "20:00"
    backup_weekly_weekday: int = 7  # 1=Monday..7=Sunday
    backup_monthly_time: str = "20:15"
    backup_monthly_day: int = 1

    # Log cleanup
    cleanup_enabled: bool = False
    cleanup_time: str = "19:00"
    cleanup_default_keep_rows: int = 10000
    cleanup_default_vacuum: VacuumMode = VacuumMode.ANALYZE_ONLY
    cleanup_default_batch_size: int = 50000
    cleanup_default_max_batches: int = 200
    cleanup_tables: str = ""
    # JSON object: {"public.audit_log": {"keep_rows": 500, "vacuum": "none"}}
    cleanup_table_overrides: dict[str, TableOverride] = {}

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def parse_table_order(raw: Optional[str]) -> tuple[str, ...]:
    """Parse comma/newline/semicolon separated table names, keeping order."""
    if not raw:
        return ()

    tables: list[str] = []
    for token in re.split(r"[,\n;]+", raw):
        name = token.strip()
        if name and name not in tables:
            tables.append(name)
    return tuple(tables)


def get_database_location(settings: Settings) -> DatabaseLocation:
    """Describe the host's database for backup agent hint headers."""
    return DatabaseLocation(
        host=settings.database_host,
        port=settings.database_port,
        development=settings.run_mode.strip().lower() == "development",
    )


def backup_config_from_settings(settings: Settings) -> Optional[BackupJobConfig]:
    """Build the backup job config, or None if backups are disabled."""
    if not settings.backup_enabled:
        return None
    if not settings.backup_agent_url.strip():
        raise ValueError("BACKUP_AGENT_URL is required when BACKUP_ENABLED is true")

    return BackupJobConfig(
        agent_url=settings.backup_agent_url,
        agent_token=settings.backup_agent_token.strip(),
        http_timeout_seconds=settings.backup_http_timeout_seconds,
        send_db_host_port_headers=settings.backup_send_db_host_port_headers,
        db_host_override=settings.backup_db_host_override or None,
        db_port_override=settings.backup_db_port_override or None,
        daily=DailyCadence(at=UtcTime.parse(settings.backup_daily_time)),
        weekly=WeeklyCadence(
            weekday=settings.backup_weekly_weekday,
            at=UtcTime.parse(settings.backup_weekly_time),
        ),
        monthly=MonthlyCadence(
            day=settings.backup_monthly_day,
            at=UtcTime.parse(settings.backup_monthly_time),
        ),
    )


def cleanup_config_from_settings(settings: Settings) -> Optional[CleanupConfig]:
    """Build the log cleanup config, or None if cleanup is disabled."""
    if not settings.cleanup_enabled:
        return None

    return CleanupConfig(
        cadence=DailyCadence(at=UtcTime.parse(settings.cleanup_time)),
        default_keep_rows=settings.cleanup_default_keep_rows,
        default_vacuum=settings.cleanup_default_vacuum,
        default_batch_size=settings.cleanup_default_batch_size,
        default_max_batches=settings.cleanup_default_max_batches,
        order=parse_table_order(settings.cleanup_tables),
        tables=dict(settings.cleanup_table_overrides),
    )
