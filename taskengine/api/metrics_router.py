"""
Metrics endpoint for Prometheus scraping.
"""

import structlog
from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Metrics"])


@router.get("/metrics")
async def metrics(request: Request) -> Response:
    """
    Prometheus metrics in text format.

    Queue length gauges are refreshed from the store on every scrape.
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is not None:
        try:
            await engine.service.queue_stats()
        except Exception as e:
            logger.warning("queue_gauge_refresh_failed", error=str(e))

    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
