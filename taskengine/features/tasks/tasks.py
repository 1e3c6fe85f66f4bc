"""
Celery tasks.

Tasks run in Celery workers, separate from the API server. Each worker
process builds one engine lazily and reuses its event loop, so the
database and Redis pools survive across deliveries.
"""

import asyncio
import logging

from taskengine.config import settings
from taskengine.core.cache import cache_manager
from taskengine.core.celery_app import celery_app
from taskengine.core.database import db_manager
from taskengine.features.tasks.engine import Engine, build_engine
from taskengine.features.tasks.hub import RedisStatusPublisher
from taskengine.features.tasks.service import CeleryEnqueuer
from taskengine.schemas.task import Delivery, DeliveryAction, QueueMessage

logger = logging.getLogger(__name__)

_engine: Engine | None = None


def get_or_create_event_loop():
    """Helper to handle asyncio loops safely within thread-based workers."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_closed():
            raise RuntimeError("event loop is closed")
        return loop
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        return loop


def run_async(coro):
    return get_or_create_event_loop().run_until_complete(coro)


async def get_worker_engine() -> Engine:
    """Build the worker's engine on first use."""
    global _engine

    if _engine is None:
        db_manager.init()
        if settings.db_auto_create:
            await db_manager.create_all()
        await cache_manager.init()

        _engine = build_engine(
            publisher=RedisStatusPublisher(cache_manager.client, settings.status_channel_prefix),
            enqueuer=CeleryEnqueuer(),
        )
        logger.info("Worker engine initialized")

    return _engine


async def _handle_delivery(delivery: Delivery):
    engine = await get_worker_engine()
    return await engine.dispatcher.handle(delivery)


@celery_app.task(
    bind=True,
    name="taskengine.process_task",
    acks_late=True,
    reject_on_worker_lost=True,
    max_retries=None,
)
def process_task(self, message: dict) -> dict:
    """
    Consume one queue message.

    The dispatcher decides between acknowledge, retry and dead-letter;
    a retry is handed back to Celery with the computed countdown.
    """
    delivery = Delivery(
        message=QueueMessage.model_validate(message),
        attempts=self.request.retries + 1,
    )
    logger.info(f"Delivery received: {delivery.message.task_id} (attempt {delivery.attempts})")

    outcome = run_async(_handle_delivery(delivery))

    if outcome.action == DeliveryAction.RETRY:
        raise self.retry(countdown=outcome.delay_seconds)

    return outcome.model_dump(mode="json")


async def _process_batch(batch_id: str, concurrency: int) -> int:
    engine = await get_worker_engine()
    results = await engine.batch.run_batch(batch_id, concurrency, engine.processor.process)
    return len(results)


@celery_app.task(name="taskengine.process_batch", acks_late=True, reject_on_worker_lost=True)
def process_batch(batch_id: str, concurrency: int) -> dict:
    """Run the pending siblings of one batch under its concurrency bound."""
    processed = run_async(_process_batch(batch_id, concurrency))
    return {"batch_id": batch_id, "processed": processed}


async def _reclaim() -> int:
    engine = await get_worker_engine()
    return await engine.reclaimer.reclaim()


@celery_app.task(name="taskengine.reclaim_stuck_tasks")
def reclaim_stuck_tasks() -> dict:
    """Return abandoned processing tasks to pending and re-dispatch them. Runs every minute via beat."""
    return {"reclaimed": run_async(_reclaim())}


async def _cleanup() -> int:
    engine = await get_worker_engine()
    return await engine.reclaimer.cleanup()


@celery_app.task(name="taskengine.cleanup_tasks")
def cleanup_tasks() -> dict:
    """Delete old completed/failed tasks. Runs daily at 03:00 UTC via beat."""
    return {"deleted": run_async(_cleanup())}

