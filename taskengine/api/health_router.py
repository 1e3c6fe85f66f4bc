"""
Health check endpoints for monitoring and orchestration.

Provides:
- Liveness probe: Is the app running?
- Readiness probe: Can the app serve traffic?
- Detailed health check: dependencies, queue counts and live subscribers
"""

import asyncio
from typing import Any

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from taskengine.config import settings
from taskengine.core.cache import cache_manager
from taskengine.core.database import db_manager
from taskengine.features.tasks.hub import hub_registry

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Health"])


async def _check_database() -> dict[str, Any]:
    start = asyncio.get_running_loop().time()
    async with db_manager.session_factory() as session:
        await session.execute(text("SELECT 1"))
    response_time = (asyncio.get_running_loop().time() - start) * 1000
    return {"status": "healthy", "response_time_ms": round(response_time, 2)}


async def _check_redis() -> dict[str, Any]:
    start = asyncio.get_running_loop().time()
    await cache_manager.client.ping()
    response_time = (asyncio.get_running_loop().time() - start) * 1000
    return {"status": "healthy", "response_time_ms": round(response_time, 2)}


@router.get("/health/live")
async def liveness() -> dict:
    """
    Liveness probe.

    Returns:
        200: Application is running
    """
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness() -> JSONResponse:
    """
    Readiness probe.

    Checks:
    - Database connectivity
    - Redis connectivity

    Returns:
        200: Ready to serve traffic
        503: Not ready (dependencies unavailable)
    """
    checks = {}
    is_ready = True

    for name, check in (("database", _check_database), ("redis", _check_redis)):
        try:
            checks[name] = await check()
        except Exception as e:
            checks[name] = {"status": "unhealthy", "error": str(e)}
            is_ready = False

    status_code = status.HTTP_200_OK if is_ready else status.HTTP_503_SERVICE_UNAVAILABLE

    return JSONResponse(
        status_code=status_code,
        content={
            "status": "ready" if is_ready else "not_ready",
            "checks": checks,
        }
    )


@router.get("/health")
async def health(request: Request) -> dict:
    """
    Detailed health check.

    Includes per-status task counts and the number of live status hubs.
    Broker workers are reported but never degrade the overall status.
    """
    checks: dict[str, Any] = {}
    overall_status = "healthy"

    for name, check in (("database", _check_database), ("redis", _check_redis)):
        try:
            checks[name] = await check()
        except Exception as e:
            checks[name] = {"status": "unhealthy", "error": str(e)}
            overall_status = "degraded"

    queue: dict[str, Any] | None = None
    engine = getattr(request.app.state, "engine", None)
    if engine is not None:
        try:
            queue = (await engine.service.queue_stats()).model_dump()
        except Exception as e:
            logger.warning("queue_stats_failed", error=str(e))

    if settings.uses_broker:
        try:
            from taskengine.core.celery_app import celery_app

            stats = celery_app.control.inspect(timeout=1.0).stats()
            checks["celery"] = {
                "status": "healthy" if stats else "degraded",
                "worker_count": len(stats or {}),
            }
        except Exception as e:
            checks["celery"] = {"status": "unknown", "error": str(e)}

    return {
        "status": overall_status,
        "version": settings.app_version,
        "environment": settings.environment,
        "queue_backend": settings.queue_backend,
        "checks": checks,
        "queue": queue,
        "status_hubs": len(hub_registry),
    }
