"""
Marketsync - marketplace job and synchronization engine.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from marketsync.config import get_settings
from marketsync.api.router import api_router
from marketsync.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("marketsync")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("Marketsync starting up (env=%s)", settings.app_env)

    if not settings.encryption_key:
        logger.warning(
            "ENCRYPTION_KEY not set - connection credentials will be stored unencrypted. "
            "Generate a Fernet key for production."
        )
    if not settings.marketplace_write_enabled:
        logger.warning("MARKETPLACE_WRITE_ENABLED=false - commands run as dry-run")

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    worker_tasks: list[asyncio.Task] = []

    from marketsync.workers.job_worker import run_job_workers
    worker_tasks.append(asyncio.create_task(run_job_workers(size=settings.worker_pool_size)))
    logger.info("Job worker pool started (%d workers)", settings.worker_pool_size)

    from marketsync.workers.stale_job_sweeper import run_stale_job_sweeper
    worker_tasks.append(asyncio.create_task(run_stale_job_sweeper()))
    logger.info("Stale job sweeper started")

    if settings.scheduler_enabled:
        from marketsync.workers.sync_scheduler import run_sync_scheduler
        worker_tasks.append(asyncio.create_task(run_sync_scheduler()))
        logger.info("Sync scheduler started")
    else:
        logger.info("Sync scheduler disabled (SCHEDULER_ENABLED=false)")

    yield

    logger.info("Marketsync shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    from marketsync.database import dispose_engine
    await dispose_engine()
    logger.info("Marketsync shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="Marketsync",
        description="Marketplace job and synchronization engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)

    return application


app = create_app()
