"""
Stuck-task reclaimer.

A worker that dies mid-task leaves its row in processing forever. The
sweep returns such rows to pending once they have been processing
longer than the threshold, then hands them back to the enqueuer:
batch siblings go back through their batch run, everything else gets
a fresh queue message. Re-running a task repeats its collaborator calls.
"""

import asyncio
from datetime import timedelta

import structlog

from taskengine.config import settings
from taskengine.core.metrics import tasks_cleaned_total, tasks_reclaimed_total
from taskengine.features.tasks.service import Enqueuer
from taskengine.features.tasks.store import ReclaimedTask, TaskStore
from taskengine.schemas.task import QueueMessage

logger = structlog.get_logger(__name__)

CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60


class StuckTaskReclaimer:
    def __init__(
        self,
        store: TaskStore,
        threshold: timedelta | None = None,
        retention_days: int | None = None,
        enqueuer: Enqueuer | None = None,
        default_concurrency: int | None = None,
    ):
        self.store = store
        self.threshold = threshold or timedelta(minutes=settings.stuck_task_threshold_minutes)
        self.retention_days = retention_days or settings.task_retention_days
        self.enqueuer = enqueuer
        self.default_concurrency = default_concurrency or settings.batch_default_concurrency

    async def reclaim(self) -> int:
        """Reset abandoned processing tasks and re-dispatch them; returns how many."""
        reclaimed = await self.store.reclaim_stuck_tasks(self.threshold)
        if not reclaimed:
            return 0

        tasks_reclaimed_total.inc(len(reclaimed))
        logger.warning(
            "stuck_tasks_reclaimed",
            count=len(reclaimed),
            threshold_seconds=self.threshold.total_seconds(),
        )

        if self.enqueuer is not None:
            await self.redispatch(reclaimed)
        return len(reclaimed)

    async def redispatch(self, reclaimed: list[ReclaimedTask]) -> None:
        """One batch run per affected batch, one message per standalone task."""
        batches: dict[str, int] = {}

        for task in reclaimed:
            try:
                if task.batch_id:
                    if task.batch_id not in batches:
                        batches[task.batch_id] = task.input_data.get("concurrency", self.default_concurrency)
                        await self.enqueuer.enqueue_batch(task.batch_id, batches[task.batch_id])
                else:
                    await self.enqueuer.enqueue(QueueMessage(task_id=task.id, type=task.type))
            except Exception as e:
                # Row stays pending with no message behind it
                logger.error("reclaim_redispatch_failed", task_id=task.id, batch_id=task.batch_id, error=str(e))

    async def cleanup(self) -> int:
        """Delete terminal tasks past the retention window; returns how many."""
        count = await self.store.cleanup(self.retention_days)
        tasks_cleaned_total.inc(count)
        logger.info("tasks_cleaned", count=count, retention_days=self.retention_days)
        return count

    async def run_forever(self, interval: float | None = None) -> None:
        """Reclaim every interval seconds until cancelled."""
        interval = interval or settings.reclaim_interval_seconds

        while True:
            try:
                await self.reclaim()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("reclaim_sweep_failed", error=str(e))
            await asyncio.sleep(interval)

    async def cleanup_forever(self, interval: float = CLEANUP_INTERVAL_SECONDS) -> None:
        """Retention sweep loop for deployments without a beat scheduler."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("cleanup_sweep_failed", error=str(e))
