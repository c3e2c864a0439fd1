"""UTC cadence helpers (predictable across hosts).

Every function takes an optional ``now`` so callers and tests can pin the
clock. A naive ``now`` is treated as UTC; results are always aware UTC.
"""

import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_now(now: Optional[datetime] = None) -> datetime:
    if now is None:
        return utc_now()
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _check_time(hour: int, minute: int) -> None:
    if not 0 <= hour <= 23:
        raise ValueError(f"hour must be 0-23, got {hour}")
    if not 0 <= minute <= 59:
        raise ValueError(f"minute must be 0-59, got {minute}")


def _month_day(year: int, month: int, day: int, hour: int, minute: int) -> datetime:
    """Build a UTC instant, clamping ``day`` to the month's last day."""
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, min(day, last_day), hour, minute, tzinfo=timezone.utc)


def next_daily(hour: int, minute: int, now: Optional[datetime] = None) -> datetime:
    """Next HH:MM (UTC) strictly after ``now``."""
    _check_time(hour, minute)
    now = _utc_now(now)
    next_run = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return next_run


def next_weekly(
    weekday: int,
    hour: int,
    minute: int,
    now: Optional[datetime] = None,
) -> datetime:
    """Next ``weekday`` (1=Monday..7=Sunday) at HH:MM (UTC) strictly after ``now``."""
    if not 1 <= weekday <= 7:
        raise ValueError(f"weekday must be 1-7, got {weekday}")
    _check_time(hour, minute)
    now = _utc_now(now)
    next_run = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    next_run += timedelta(days=(weekday - next_run.isoweekday()) % 7)
    if next_run <= now:
        next_run += timedelta(days=7)
    return next_run


def next_monthly(
    hour: int,
    minute: int,
    day: int = 1,
    now: Optional[datetime] = None,
) -> datetime:
    """Next ``day`` of the month at HH:MM (UTC) strictly after ``now``.

    Days past the end of a short month are clamped to its last day, so
    ``day=31`` fires on Feb 28/29, Apr 30 and so on.
    """
    if not 1 <= day <= 31:
        raise ValueError(f"day must be 1-31, got {day}")
    _check_time(hour, minute)
    now = _utc_now(now)
    next_run = _month_day(now.year, now.month, day, hour, minute)
    if next_run <= now:
        year = now.year + 1 if now.month == 12 else now.year
        month = 1 if now.month == 12 else now.month + 1
        next_run = _month_day(year, month, day, hour, minute)
    return next_run


class UtcTime(BaseModel):
    """A time of day in UTC."""

    model_config = ConfigDict(frozen=True)

    hour: int = Field(ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)

    @classmethod
    def parse(cls, value: str) -> "UtcTime":
        """Parse ``HH:MM``."""
        hour, sep, minute = value.strip().partition(":")
        if not sep:
            raise ValueError(f"expected HH:MM, got {value!r}")
        return cls(hour=int(hour), minute=int(minute))

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


class DailyCadence(BaseModel):
    model_config = ConfigDict(frozen=True)

    at: UtcTime

    def next_after(self, now: Optional[datetime] = None) -> datetime:
        return next_daily(self.at.hour, self.at.minute, now=now)

    def __str__(self) -> str:
        return f"daily at {self.at} UTC"


class WeeklyCadence(BaseModel):
    model_config = ConfigDict(frozen=True)

    weekday: int = Field(ge=1, le=7)
    at: UtcTime

    def next_after(self, now: Optional[datetime] = None) -> datetime:
        return next_weekly(self.weekday, self.at.hour, self.at.minute, now=now)

    def __str__(self) -> str:
        return f"weekly weekday={self.weekday} at {self.at} UTC"


class MonthlyCadence(BaseModel):
    model_config = ConfigDict(frozen=True)

    day: int = Field(default=1, ge=1, le=31)
    at: UtcTime

    def next_after(self, now: Optional[datetime] = None) -> datetime:
        return next_monthly(self.at.hour, self.at.minute, day=self.day, now=now)

    def __str__(self) -> str:
        return f"monthly day={self.day} at {self.at} UTC"
