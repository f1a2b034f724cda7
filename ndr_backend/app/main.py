"""
NDR / RTO Resolution Engine

FastAPI application entry point.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ndr_backend.app.api import health, ndr, public_address, rto, tracking, workflows
from ndr_backend.app.core.config import get_settings
from ndr_backend.app.core.exceptions import register_exception_handlers
from ndr_backend.app.core.init_db import init_db
from ndr_backend.app.core.logging import setup_logging, get_logger
from ndr_backend.app.middleware.trace import TracingMiddleware

settings = get_settings()

# Initialize logging
setup_logging(level=settings.log_level)
logger = get_logger(__name__)


async def _cancel(task: asyncio.Task) -> None:
    if task and not task.done():
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    await init_db()

    from ndr_backend.app.services.wiring import get_services
    services = get_services()

    # Tracking intake: event bus + background consumer
    from ndr_backend.app.events.bus import initialize_event_bus
    initialize_event_bus(maxsize=10000)

    from ndr_backend.app.workers.consumer import start_event_consumer
    consumer_task = await start_event_consumer()

    # Persisted job queue workers
    worker_pool = None
    if settings.job_workers_enabled:
        from ndr_backend.app.workers.job_worker import JobWorkerPool
        worker_pool = JobWorkerPool(services)
        worker_pool.start()

    from ndr_backend.app.workers.scheduled import start_scheduler

    sweeper_task = None
    if settings.sweeper_enabled:
        sweeper_task = start_scheduler(settings.sweeper_interval_seconds, services.sweeper.sweep)
        logger.info(f"Deadline sweeper started (interval={settings.sweeper_interval_seconds}s)")

    reaper_task = start_scheduler(settings.job_claim_lease_seconds, services.job_queue.release_stale_claims)

    yield
    # Shutdown
    logger.info(f"Shutting down {settings.app_name}")

    await _cancel(reaper_task)
    await _cancel(sweeper_task)
    if worker_pool is not None:
        await worker_pool.stop()
    await _cancel(consumer_task)


app = FastAPI(
    title=settings.app_name,
    description="Automated resolution of failed deliveries (NDR) and Return-To-Origin handling",
    version=settings.app_version,
    lifespan=lifespan,
)

register_exception_handlers(app)

# Add Middleware
app.add_middleware(TracingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Correlation-ID", "X-Tenant-ID"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(
    tracking.router,
    prefix=f"{settings.api_prefix}/tracking",
    tags=["Tracking Intake"],
)
app.include_router(
    ndr.router,
    prefix=f"{settings.api_prefix}/ndr",
    tags=["NDR"],
)
app.include_router(
    rto.router,
    prefix=f"{settings.api_prefix}/rto",
    tags=["RTO"],
)
app.include_router(
    workflows.router,
    prefix=f"{settings.api_prefix}/workflows",
    tags=["Workflows"],
)

# Magic-link target for customers; authenticated by the link token only
app.include_router(
    public_address.router,
    prefix="/public",
    tags=["Public"],
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
