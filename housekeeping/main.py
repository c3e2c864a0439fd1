"""Reference host: FastAPI app that runs the housekeeping jobs."""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from housekeeping import __version__
from housekeeping.config import (
    backup_config_from_settings,
    cleanup_config_from_settings,
    get_database_location,
    get_settings,
)
from housekeeping.database import SqliteExecutor, close_database, get_database, get_executor

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    logger.info("Starting housekeeping service...")
    logger.info(f"Database: {settings.database_path} (dialect={settings.sql_dialect})")

    backup = backup_config_from_settings(settings)
    cleanup = cleanup_config_from_settings(settings)

    executor = None
    if cleanup is not None:
        if settings.sql_dialect == SqliteExecutor.dialect:
            executor = await get_executor()
        else:
            logger.error(
                f"No bundled executor for dialect {settings.sql_dialect!r}; log cleanup disabled"
            )
            cleanup = None

    from housekeeping.jobs import JobScheduler, ensure_scheduled, setup_scheduler

    scheduler = JobScheduler(setup_scheduler())
    app.state.housekeeping = ensure_scheduled(
        scheduler,
        backup=backup,
        cleanup=cleanup,
        db=executor,
        db_location=get_database_location(settings),
    )
    logger.info(f"Housekeeping jobs scheduled: {len(scheduler.pending_jobs())}")

    yield

    # Shutdown
    logger.info("Shutting down...")

    try:
        from housekeeping.jobs import shutdown_scheduler
        shutdown_scheduler()
    except Exception as e:
        logger.error(f"Error stopping scheduler: {e}")

    app.state.housekeeping = None
    await close_database()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Housekeeping",
    description="Scheduled database backups and log-table retention",
    version=__version__,
    lifespan=lifespan,
)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    housekeeping = getattr(app.state, "housekeeping", None)
    jobs = len(housekeeping.pending_jobs()) if housekeeping else 0
    try:
        database = "external"
        if get_settings().sql_dialect == SqliteExecutor.dialect:
            db = await get_database()
            await db.execute("SELECT 1")
            database = "connected"
        return {"status": "healthy", "database": database, "pending_jobs": jobs}
    except Exception as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "error": str(e)},
        )


from housekeeping.api import api_router

app.include_router(api_router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "housekeeping.main:app",
        host="0.0.0.0",
        port=3000,
        log_level=settings.log_level.lower(),
        reload=False,
    )
