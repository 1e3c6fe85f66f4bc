"""
Queue dispatchers.

QueueDispatcher decides what the broker does with each delivery
(acknowledge, retry with exponential backoff, or dead-letter).
PollingDispatcher is the fallback when no broker is configured: it
periodically sweeps pending standalone tasks straight from the store.
Batch siblings are left to their batch run.
"""

import asyncio
from typing import Iterable

import structlog

from taskengine.config import settings
from taskengine.core.context import task_context
from taskengine.core.metrics import queue_deliveries_total
from taskengine.features.tasks.executor import run_with_concurrency_limit, with_jitter
from taskengine.features.tasks.processor import ProcessOutcome, TaskProcessor
from taskengine.features.tasks.store import TaskStore
from taskengine.schemas.task import Delivery, DeliveryAction, DeliveryOutcome

logger = structlog.get_logger(__name__)


def retry_delay(attempts: int, base_seconds: int) -> int:
    """Backoff before the next delivery: base, 2*base, 4*base, ..."""
    return base_seconds * 2 ** (attempts - 1)


class QueueDispatcher:
    """
    Broker consumer logic, independent of the broker itself.

    A failing delivery marks its task failed; a later retry that
    succeeds does not bring it back, since the processor skips
    non-runnable tasks.
    """

    def __init__(
        self,
        processor: TaskProcessor,
        store: TaskStore,
        max_attempts: int | None = None,
        retry_base_seconds: int | None = None,
    ):
        self.processor = processor
        self.store = store
        self.max_attempts = max_attempts or settings.queue_max_attempts
        self.retry_base_seconds = retry_base_seconds or settings.queue_retry_base_seconds

    async def handle(self, delivery: Delivery) -> DeliveryOutcome:
        task_id = delivery.message.task_id

        with task_context(task_id=task_id, attempt=delivery.attempts):
            try:
                await self.processor.process(task_id)
            except Exception as e:
                return await self._on_error(delivery, e)

        queue_deliveries_total.labels(disposition="ack").inc()
        return DeliveryOutcome(task_id=task_id, action=DeliveryAction.ACK)

    async def consume(self, deliveries: Iterable[Delivery]) -> list[DeliveryOutcome]:
        """Handle a batch of deliveries one after another."""
        return [await self.handle(delivery) for delivery in deliveries]

    async def _on_error(self, delivery: Delivery, error: Exception) -> DeliveryOutcome:
        task_id = delivery.message.task_id
        message = str(error) or "Processing failed"

        logger.error("delivery_failed", error=message, attempts=delivery.attempts)

        try:
            await self.store.fail(task_id, message)
        except Exception as e:
            logger.error("delivery_fail_write_failed", error=str(e))

        if delivery.attempts < self.max_attempts:
            delay = retry_delay(delivery.attempts, self.retry_base_seconds)
            queue_deliveries_total.labels(disposition="retry").inc()
            logger.info("delivery_retry_scheduled", delay_seconds=delay)
            return DeliveryOutcome(task_id=task_id, action=DeliveryAction.RETRY, delay_seconds=delay)

        queue_deliveries_total.labels(disposition="dead_letter").inc()
        logger.error("delivery_dead_lettered", attempts=delivery.attempts)
        return DeliveryOutcome(task_id=task_id, action=DeliveryAction.ACK, dead_lettered=True)


class PollingDispatcher:
    """Sweeps pending tasks when there is no broker to deliver them."""

    def __init__(
        self,
        processor: TaskProcessor,
        store: TaskStore,
        batch_size: int | None = None,
        concurrency: int | None = None,
        jitter_max_ms: int | None = None,
    ):
        self.processor = processor
        self.store = store
        self.batch_size = batch_size or settings.poll_batch_size
        self.concurrency = concurrency or settings.poll_concurrency
        self.jitter_max_ms = settings.poll_jitter_max_ms if jitter_max_ms is None else jitter_max_ms

    async def run_once(self) -> int:
        """Process up to batch_size pending tasks; returns how many completed."""
        pending = await self.store.get_pending(self.batch_size, exclude_batched=True)
        if not pending:
            return 0

        units = [
            with_jitter(self._unit(task.id), self.jitter_max_ms)
            for task in pending
        ]
        results = await run_with_concurrency_limit(units, self.concurrency)

        completed = sum(1 for result in results if result.ok and result.value == ProcessOutcome.COMPLETED)
        logger.info("poll_sweep_finished", picked=len(pending), completed=completed)
        return completed

    async def run_forever(self, interval: float | None = None) -> None:
        """Sweep every interval seconds until cancelled."""
        interval = interval or settings.poll_interval_seconds
        logger.info("polling_dispatcher_started", interval_seconds=interval)

        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("poll_sweep_failed", error=str(e))
            await asyncio.sleep(interval)

    def _unit(self, task_id: str):
        async def run() -> ProcessOutcome:
            return await self.processor.process(task_id)

        return run
