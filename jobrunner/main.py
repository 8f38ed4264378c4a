"""FastAPI application entry point.

Run with: uvicorn jobrunner.main:app
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from jobrunner.config import settings
from jobrunner.routers.jobs import router as jobs_router
from jobrunner.workers.scheduler import JobScheduler

# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logging.basicConfig(
    format="%(message)s",
    stream=sys.stdout,
    level=logging.INFO,
)


# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

def create_app(scheduler: Optional[JobScheduler] = None) -> FastAPI:
    """Build the API around a scheduler (a default one is created at startup)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # A storage failure here aborts startup
        instance = scheduler or JobScheduler(settings.scheduler)
        await instance.initialize()
        app.state.scheduler = instance
        try:
            yield
        finally:
            await instance.cleanup()

    app = FastAPI(
        title="Job Runner API",
        description=(
            "Runs batches of files through a processing pipeline with bounded concurrency. "
            "Job state is checkpointed so failed, cancelled or crashed jobs resume "
            "without repeating finished files."
        ),
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS: allow all in development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(jobs_router)

    @app.get("/health", tags=["system"])
    async def health_check():
        """Health check endpoint."""
        stats = app.state.scheduler.get_execution_stats()
        return {
            "status": "healthy",
            "service": "Job Runner API",
            "version": "1.0.0",
            "active_jobs": stats.active_jobs,
            "queued_jobs": stats.queued_jobs,
        }

    return app


app = create_app()
