"""Pytest configuration and fixtures."""

import os
from datetime import timezone

import aiosqlite
import pytest
import pytest_asyncio

# Set test environment variables before imports
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["SQL_DIALECT"] = "sqlite"
os.environ.pop("ADMIN_TOKEN", None)

from helpers import FIXED_NOW, FakeScheduler  # noqa: E402


@pytest.fixture
def fake_scheduler():
    return FakeScheduler()


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest_asyncio.fixture
async def sqlite_db():
    """An in-memory database wrapped in the maintenance executor."""
    from housekeeping.database import SqliteExecutor

    connection = await aiosqlite.connect(":memory:")
    connection.row_factory = aiosqlite.Row

    yield SqliteExecutor(connection)

    await connection.close()


@pytest_asyncio.fixture
async def paused_scheduler():
    """A started-but-paused APScheduler wrapped in JobScheduler."""
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from housekeeping.jobs.scheduler import JobScheduler

    scheduler = AsyncIOScheduler(timezone=timezone.utc)
    scheduler.start(paused=True)

    yield JobScheduler(scheduler)

    scheduler.shutdown(wait=False)
