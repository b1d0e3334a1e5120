"""FastAPI application."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from vidscribe import __version__
from vidscribe.config import settings
from vidscribe.database import engine
from vidscribe.logging_config import setup_logging
from vidscribe.routes import internal as internal_module
from vidscribe.routes import transcribe as transcribe_module
from vidscribe.routes import usage as usage_module
from vidscribe.services.job_queue import queue, resume_pending_jobs

# Initialize logging
setup_logging()
logger = logging.getLogger("vidscribe.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown."""
    logger.info("Starting Vidscribe application")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"CORS origins: {settings.cors_origins_list}")

    from vidscribe.migrations_utils import check_migration_status
    from vidscribe.startup_checks import run_startup_checks

    await run_startup_checks()

    current_rev, head_rev = await check_migration_status(engine)
    logger.info(f"Database migration status: {current_rev} (head: {head_rev})")
    if current_rev != head_rev and settings.is_production:
        logger.warning(
            "Database migrations are not up to date. "
            "Run 'alembic upgrade head' before starting in production."
        )

    # Expose queue via app state; only auto-start outside of unit tests
    app.state.queue = queue
    force_queue_start = os.getenv("FORCE_QUEUE_START") == "1"
    if settings.is_testing and not force_queue_start:
        logger.info("Testing mode detected; job queue will be started by tests as needed")
    else:
        await queue.start()
        resumed = await resume_pending_jobs(queue)
        if resumed:
            logger.info("Job queue started and resumed %s pending job(s)", resumed)
        else:
            logger.info("Job queue started")

    yield

    logger.info("Shutting down Vidscribe application")
    if queue.is_started:
        await queue.stop()


app = FastAPI(
    title="Vidscribe",
    description="Metered asynchronous video transcription service",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(transcribe_module.router)
app.include_router(usage_module.router)
app.include_router(internal_module.router)


@app.get("/health")
async def health_check():
    """Health check endpoint with database status."""
    db_status = "unknown"
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        db_status = "unhealthy"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "version": __version__,
        "environment": settings.environment,
        "database": db_status,
    }
