"""
FastAPI application factory.

The API process hosts the status hub. With the Celery backend it relays
worker status from Redis; with the inline backend it also runs tasks
itself, together with the polling and reclaim loops.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from taskengine.config import settings
from taskengine.core.cache import cache_manager
from taskengine.core.database import db_manager
from taskengine.core.logging_config import get_logger, setup_logging
from taskengine.features.tasks.engine import build_engine
from taskengine.features.tasks.hub import (
    LocalStatusPublisher,
    RedisStatusPublisher,
    StatusRelay,
    hub_registry,
)

# Setup logging first
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan events."""
    logger.info(
        "application_starting",
        app_name=settings.app_name,
        version=settings.app_version,
        environment=settings.environment,
        queue_backend=settings.queue_backend,
    )

    # Initialize services
    db_manager.init()
    if settings.db_auto_create:
        await db_manager.create_all()
    await cache_manager.init()

    from taskengine.core.metrics import app_info
    app_info.info({
        "version": settings.app_version,
        "environment": settings.environment,
        "queue_backend": settings.queue_backend,
    })

    background: list[asyncio.Task] = []
    relay: StatusRelay | None = None

    if settings.uses_broker:
        publisher = RedisStatusPublisher(cache_manager.client, settings.status_channel_prefix)
        relay = StatusRelay(hub_registry, cache_manager.client, settings.status_channel_prefix)
        relay.start()
    else:
        publisher = LocalStatusPublisher(hub_registry)

    engine = build_engine(publisher=publisher)
    app.state.engine = engine

    if not settings.uses_broker:
        background = [
            asyncio.create_task(engine.poller.run_forever(settings.poll_interval_seconds)),
            asyncio.create_task(engine.reclaimer.run_forever(settings.reclaim_interval_seconds)),
            asyncio.create_task(engine.reclaimer.cleanup_forever()),
        ]

    logger.info("application_ready")

    yield

    # Cleanup
    logger.info("application_shutting_down")
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)
    if relay is not None:
        await relay.stop()
    await db_manager.close()
    await cache_manager.close()
    logger.info("application_shutdown_complete")


def create_application() -> FastAPI:
    """Application factory."""

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Asynchronous generation task engine with live status push",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )

        if settings.is_production:
            detail = "An internal error occurred. Please contact support."
        else:
            detail = str(exc)

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": detail},
        )

    # Register routers
    from taskengine.api.health_router import router as health_router
    from taskengine.api.metrics_router import router as metrics_router
    from taskengine.features.tasks.router import router as status_router

    app.include_router(health_router)

    if settings.metrics_enabled:
        app.include_router(metrics_router)

    app.include_router(status_router)

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        return {
            "message": f"Welcome to {settings.app_name}",
            "version": settings.app_version,
            "environment": settings.environment,
            "queue_backend": settings.queue_backend,
            "health": "/health",
            "metrics": "/metrics" if settings.metrics_enabled else "Disabled",
        }

    logger.info("application_configured")
    return app


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "taskengine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload and settings.is_development,
        log_level=settings.log_level.lower(),
        access_log=False,
    )
