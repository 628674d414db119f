"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from stocksync.api.routes import sync, webhooks
from stocksync.config import settings
from stocksync.db.models import Base
from stocksync.db.session import AsyncSessionLocal, engine
from stocksync.services import AppServices
from stocksync.worker.scheduler import setup_scheduler
from stocksync.worker.tasks import TaskRunner

# Configure structured logging
from stocksync.logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting catalog stock sync...")

    # Initialize database
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    services = AppServices.from_settings(settings, AsyncSessionLocal)
    app.state.services = services

    # Initialize task runner
    task_runner = TaskRunner(services)
    await task_runner.initialize()

    # Start scheduler
    scheduler = setup_scheduler(task_runner)
    scheduler.start()
    logger.info("Scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down...")

    scheduler.shutdown()
    await task_runner.close()
    await engine.dispose()

    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Catalog Stock Sync",
    description="Keep a local mirror of a marketplace seller catalog in sync",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

# Include API routes
app.include_router(sync.router)
app.include_router(webhooks.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    # Run with uvicorn
    uvicorn.run(
        "stocksync.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
