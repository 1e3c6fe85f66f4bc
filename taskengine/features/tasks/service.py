"""
Task service: the producer-facing facade.

Creates task records, hands them to the configured enqueue strategy
and answers status queries. Rate limits are enforced per owner before
anything is written.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from typing import Any, Literal

import structlog

from taskengine.core.exceptions import (
    TaskAlreadyTerminalError,
    TaskForbiddenError,
    TaskNotFoundError,
)
from taskengine.core.metrics import task_queue_length, tasks_submitted_total
from taskengine.core.rate_limit import RateLimiter
from taskengine.features.tasks.batch import BatchCoordinator
from taskengine.features.tasks.executor import (
    DEFAULT_CONCURRENCY,
    MAX_CONCURRENCY,
    clamp_concurrency,
)
from taskengine.features.tasks.processor import TaskProcessor
from taskengine.features.tasks.store import TaskStore
from taskengine.models.task import Task, TaskStatus, TaskType
from taskengine.schemas.task import (
    BatchRequest,
    BatchStatus,
    BatchSubmission,
    BatchTaskSummary,
    CancelResult,
    ProductShotRequest,
    QueueMessage,
    QueueStats,
    TaskRead,
    TaskSubmission,
)

logger = structlog.get_logger(__name__)

ListScope = Literal["active", "completed", "all"]

RESULT_FIELDS = ("angle", "image_url", "thumbnail_url", "image_id")


# Enqueue strategies

class Enqueuer(ABC):
    """How a freshly created task reaches a worker."""

    @abstractmethod
    async def enqueue(self, message: QueueMessage) -> None:
        pass

    @abstractmethod
    async def enqueue_batch(self, batch_id: str, concurrency: int) -> None:
        pass


class CeleryEnqueuer(Enqueuer):
    """Sends broker messages consumed by the Celery worker."""

    async def enqueue(self, message: QueueMessage) -> None:
        from taskengine.features.tasks.tasks import process_task

        process_task.delay(message.model_dump(mode="json", by_alias=True))

    async def enqueue_batch(self, batch_id: str, concurrency: int) -> None:
        from taskengine.features.tasks.tasks import process_batch

        process_batch.delay(batch_id, concurrency)


class InlineEnqueuer(Enqueuer):
    """
    Runs tasks as background asyncio tasks of the current process.

    Nothing is retried here; tasks lost with the process stay pending or
    processing until the polling sweep or the reclaimer picks them up.
    """

    def __init__(self, processor: TaskProcessor, batch: BatchCoordinator):
        self.processor = processor
        self.batch = batch
        self._background: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._background)

    async def enqueue(self, message: QueueMessage) -> None:
        self._spawn(self.processor.process(message.task_id), message.task_id)

    async def enqueue_batch(self, batch_id: str, concurrency: int) -> None:
        self._spawn(self.batch.run_batch(batch_id, concurrency, self.processor.process), batch_id)

    async def drain(self) -> None:
        """Wait for every background task started so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn(self, coro, key: str) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(lambda done: self._finished(done, key))

    def _finished(self, task: asyncio.Task, key: str) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("inline_dispatch_failed", key=key, error=str(task.exception()))


class TaskService:
    """
    Producer facade.

    Usage:
        service = TaskService(store, batch, enqueuer, rate_limiter)
        submission = await service.submit_single(owner_id, {"prompt": ..., "image_base64": ...})
    """

    def __init__(
        self,
        store: TaskStore,
        batch: BatchCoordinator,
        enqueuer: Enqueuer,
        rate_limiter: RateLimiter | None = None,
        default_concurrency: int = DEFAULT_CONCURRENCY,
        max_concurrency: int = MAX_CONCURRENCY,
    ):
        self.store = store
        self.batch = batch
        self.enqueuer = enqueuer
        self.rate_limiter = rate_limiter
        self.default_concurrency = default_concurrency
        self.max_concurrency = max_concurrency

    # Submission

    async def submit_single(self, owner_id: str, input_data: dict[str, Any]) -> TaskSubmission:
        await self._check_rate(owner_id, "single")

        task = await self._create(owner_id, TaskType.SINGLE, input_data)
        await self.enqueuer.enqueue(QueueMessage(task_id=task.id, type=TaskType.SINGLE))

        return TaskSubmission(
            task_id=task.id,
            status=TaskStatus.PENDING,
            queue_position=await self._queue_position(),
        )

    async def submit_batch(self, owner_id: str, request: BatchRequest) -> TaskSubmission:
        """Create a batch-parent; siblings are created when it is processed."""
        await self._check_rate(owner_id, "batch")

        input_data = request.model_dump()
        input_data["concurrency"] = self._concurrency(request.concurrency)

        task = await self._create(owner_id, TaskType.BATCH_PARENT, input_data)
        await self.enqueuer.enqueue(QueueMessage(task_id=task.id, type=TaskType.BATCH_PARENT))

        return TaskSubmission(
            task_id=task.id,
            status=TaskStatus.PENDING,
            queue_position=await self._queue_position(),
        )

    async def submit_product_shots(self, owner_id: str, request: ProductShotRequest) -> BatchSubmission:
        """Create one product-shot sibling per angle and schedule the batch."""
        await self._check_rate(owner_id, "product-shot")

        concurrency = self._concurrency(request.concurrency)
        batch_id = str(uuid.uuid4())

        siblings = self.batch.expand_product_shots(request, concurrency)
        task_ids = await self.batch.create_siblings(owner_id, batch_id, siblings)
        await self.enqueuer.enqueue_batch(batch_id, concurrency)

        logger.info("product_shots_submitted", batch_id=batch_id, owner_id=owner_id, total=len(task_ids))

        return BatchSubmission(
            batch_id=batch_id,
            task_ids=task_ids,
            status=TaskStatus.PENDING,
            queue_position=await self._queue_position(),
            total=len(task_ids),
        )

    # Cancellation

    async def cancel_task(self, task_id: str, owner_id: str) -> CancelResult:
        """Cancel a pending or processing task; impossibility is a result, not an error."""
        try:
            await self.store.cancel(task_id, owner_id)
        except TaskNotFoundError:
            return CancelResult(success=False, message="Task not found")
        except TaskForbiddenError:
            return CancelResult(success=False, message="Not allowed to cancel this task")
        except TaskAlreadyTerminalError as e:
            return CancelResult(success=False, message=e.message)

        logger.info("task_cancelled", task_id=task_id, owner_id=owner_id)
        return CancelResult(success=True, message="Task cancelled")

    # Queries

    async def get_task(self, task_id: str, owner_id: str) -> TaskRead:
        """
        Raises:
            TaskNotFoundError: no such task
            TaskForbiddenError: task belongs to another owner
        """
        task = await self.store.get(task_id)
        if task is None:
            raise TaskNotFoundError("Task not found", {"task_id": task_id})
        if task.owner_id != owner_id:
            raise TaskForbiddenError("Not allowed to view this task", {"task_id": task_id})
        return TaskRead.model_validate(task)

    async def get_batch_status(self, batch_id: str, owner_id: str) -> BatchStatus:
        """
        Aggregate view of one batch: counts, per-sibling summary and results.

        Raises:
            TaskNotFoundError: no sibling carries batch_id
            TaskForbiddenError: batch belongs to another owner
        """
        siblings = await self.store.get_by_batch(batch_id)
        if not siblings:
            raise TaskNotFoundError("Batch not found", {"batch_id": batch_id})
        if any(task.owner_id != owner_id for task in siblings):
            raise TaskForbiddenError("Not allowed to view this batch", {"batch_id": batch_id})

        progress = await self.store.get_batch_progress(batch_id)

        return BatchStatus(
            batch_id=batch_id,
            progress=progress,
            tasks=[self._summary(task) for task in siblings],
            results=[
                self._result(task)
                for task in siblings
                if task.status == TaskStatus.COMPLETED.value and task.output_data
            ],
            is_completed=progress.is_completed,
        )

    async def list_tasks(self, owner_id: str, scope: ListScope = "all", limit: int = 50) -> list[TaskRead]:
        if scope == "active":
            tasks = await self.store.get_active(owner_id)
        elif scope == "completed":
            tasks = await self.store.get_completed(owner_id, limit)
        else:
            tasks = await self.store.get_by_owner(owner_id, limit)
        return [TaskRead.model_validate(task) for task in tasks]

    async def queue_stats(self) -> QueueStats:
        stats = await self.store.get_queue_stats()
        for status, count in stats.model_dump().items():
            task_queue_length.labels(status=status).set(count)
        return stats

    # Helpers

    async def _create(self, owner_id: str, task_type: TaskType, input_data: dict[str, Any]) -> Task:
        task = await self.store.create(str(uuid.uuid4()), owner_id, task_type, input_data)
        tasks_submitted_total.labels(task_type=task_type.value).inc()
        logger.info("task_submitted", task_id=task.id, task_type=task_type.value, owner_id=owner_id)
        return task

    async def _check_rate(self, owner_id: str, tier: str) -> None:
        if self.rate_limiter is not None:
            await self.rate_limiter.check(owner_id, tier)

    async def _queue_position(self) -> int:
        return (await self.store.get_queue_stats()).pending

    def _concurrency(self, requested: int | None) -> int:
        return clamp_concurrency(requested, default=self.default_concurrency, upper=self.max_concurrency)

    @staticmethod
    def _summary(task: Task) -> BatchTaskSummary:
        return BatchTaskSummary(
            id=task.id,
            status=task.status,
            angle=(task.input_data or {}).get("angle"),
            error_message=task.error_message,
        )

    @staticmethod
    def _result(task: Task) -> dict[str, Any]:
        output = task.output_data or {}
        return {"task_id": task.id, **{field: output.get(field) for field in RESULT_FIELDS}}
