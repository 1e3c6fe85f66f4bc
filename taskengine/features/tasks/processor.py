"""
Task processor: per-task dispatch.

Claims a task through the store's compare-and-set, hands its input to
the generation and storage collaborators and records the outcome.
Collaborator and input errors become a failed task; store errors
propagate to whoever invoked the processor (the broker retries them).
"""

import time
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog

from taskengine.core.context import task_context
from taskengine.core.exceptions import InvalidTaskInputError
from taskengine.core.metrics import task_duration_seconds, tasks_processed_total
from taskengine.features.tasks.batch import BatchCoordinator
from taskengine.features.tasks.collaborators import (
    GenerationCollaborator,
    GenerationMode,
    GenerationRequest,
    StorageCollaborator,
    TemplateResolver,
)
from taskengine.features.tasks.executor import (
    DEFAULT_CONCURRENCY,
    MAX_CONCURRENCY,
    clamp_concurrency,
)
from taskengine.features.tasks.hub import StatusPublisher
from taskengine.features.tasks.store import TaskStore
from taskengine.models.task import ACTIVE_STATUSES, Task, TaskStatus, TaskType
from taskengine.schemas.task import BatchProgressEvent, TaskStatusEvent

logger = structlog.get_logger(__name__)

PROGRESS_AFTER_GENERATION = 70

DEFAULT_ASPECT_RATIO = "3:4"
DEFAULT_IMAGE_QUALITY = "1K"
DEFAULT_GENDER = "female"

INVALID_INPUT_MESSAGE = "Invalid task input: missing prompt or model_config"


class ProcessOutcome(str, Enum):
    SKIPPED = "skipped"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskProcessor:
    """
    Executes one task to a terminal status.

    Usage:
        processor = TaskProcessor(store, generator, storage, resolver, batch)
        outcome = await processor.process(task_id)
    """

    def __init__(
        self,
        store: TaskStore,
        generator: GenerationCollaborator,
        storage: StorageCollaborator,
        resolver: TemplateResolver,
        batch: BatchCoordinator,
        publisher: StatusPublisher | None = None,
        default_concurrency: int = DEFAULT_CONCURRENCY,
        max_concurrency: int = MAX_CONCURRENCY,
    ):
        self.store = store
        self.generator = generator
        self.storage = storage
        self.resolver = resolver
        self.batch = batch
        self.publisher = publisher
        self.default_concurrency = default_concurrency
        self.max_concurrency = max_concurrency

        self._handlers: dict[TaskType, Callable[[Task], Awaitable[ProcessOutcome]]] = {
            TaskType.SINGLE: self._process_single,
            TaskType.BATCH_PARENT: self._process_batch_parent,
            TaskType.PRODUCT_SHOT: self._process_product_shot,
        }

    async def process(self, task_id: str) -> ProcessOutcome:
        """
        Run a task if it is still runnable.

        A pending task is claimed first; losing the claim means another
        worker owns it. A task already in processing (reclaimed and
        re-delivered, or claimed by the caller) proceeds without a claim.
        """
        task = await self.store.get(task_id)

        if task is None:
            logger.warning("task_missing", task_id=task_id)
            return ProcessOutcome.SKIPPED

        if task.status not in {status.value for status in ACTIVE_STATUSES}:
            logger.info("task_not_runnable", task_id=task_id, status=task.status)
            return ProcessOutcome.SKIPPED

        if task.status == TaskStatus.PENDING.value:
            if not await self.store.start_processing(task_id):
                logger.info("task_claim_lost", task_id=task_id)
                return ProcessOutcome.SKIPPED
            await self.publish_status(task_id, task.batch_id)

        task_type = TaskType(task.type)

        with task_context(task_id=task_id, batch_id=task.batch_id):
            logger.info("task_claimed", task_type=task_type.value)
            started = time.perf_counter()

            outcome = await self._handlers[task_type](task)

            duration = time.perf_counter() - started
            tasks_processed_total.labels(task_type=task_type.value, outcome=outcome.value).inc()
            task_duration_seconds.labels(task_type=task_type.value, outcome=outcome.value).observe(duration)
            logger.info("task_processed", outcome=outcome.value, duration_seconds=round(duration, 3))

        return outcome

    # Request building

    def build_single_request(self, input_data: dict[str, Any]) -> GenerationRequest:
        """
        Interpret a single task's input.

        Raises:
            InvalidTaskInputError: neither model_config nor prompt present
        """
        image_base64 = self._require_image(input_data)
        model_config = input_data.get("model_config")
        prompt = input_data.get("prompt")

        if model_config:
            return GenerationRequest(
                mode=GenerationMode.MODEL_CONFIG,
                image_base64=image_base64,
                aspect_ratio=model_config.get("aspect_ratio") or input_data.get("aspect_ratio"),
                parameters={
                    **model_config,
                    "image_quality": model_config.get("image_quality") or DEFAULT_IMAGE_QUALITY,
                    "gender": model_config.get("gender") or DEFAULT_GENDER,
                },
            )

        if prompt:
            variables = input_data.get("variable_values") or {}
            return GenerationRequest(
                mode=GenerationMode.PROMPT,
                image_base64=image_base64,
                prompt=self.resolver.resolve(prompt, variables),
                aspect_ratio=input_data.get("aspect_ratio") or DEFAULT_ASPECT_RATIO,
            )

        raise InvalidTaskInputError(INVALID_INPUT_MESSAGE)

    def build_product_shot_request(self, input_data: dict[str, Any]) -> GenerationRequest:
        """
        Interpret a product-shot sibling's input: one angle plus shared config.

        Raises:
            InvalidTaskInputError: angle missing
        """
        image_base64 = self._require_image(input_data)
        angle = input_data.get("angle")
        if not angle:
            raise InvalidTaskInputError("Invalid task input: missing angle")

        config = input_data.get("config") or {}
        return GenerationRequest(
            mode=GenerationMode.PRODUCT_SHOT,
            image_base64=image_base64,
            aspect_ratio=config.get("aspect_ratio"),
            parameters={
                "angle": angle,
                "background_color": config.get("background_color"),
                "reflection_enabled": config.get("reflection_enabled"),
                "shadow_style": config.get("shadow_style"),
                "output_size": config.get("output_size"),
            },
        )

    @staticmethod
    def _require_image(input_data: dict[str, Any]) -> str:
        image_base64 = input_data.get("image_base64")
        if not image_base64:
            raise InvalidTaskInputError("Invalid task input: missing image_base64")
        return image_base64

    # Handlers

    async def _process_single(self, task: Task) -> ProcessOutcome:
        return await self._generate_and_store(task, self.build_single_request, {})

    async def _process_product_shot(self, task: Task) -> ProcessOutcome:
        angle = (task.input_data or {}).get("angle")
        return await self._generate_and_store(task, self.build_product_shot_request, {"angle": angle})

    async def _generate_and_store(
        self,
        task: Task,
        build_request: Callable[[dict[str, Any]], GenerationRequest],
        extra_output: dict[str, Any],
    ) -> ProcessOutcome:
        image_id = str(uuid.uuid4())

        try:
            request = build_request(task.input_data or {})
            artifact = await self.generator.generate(request)
        except Exception as e:
            return await self._fail(task, e)

        await self.store.update_progress(task.id, PROGRESS_AFTER_GENERATION)
        await self.publish_status(task.id)

        try:
            stored = await self.storage.persist(artifact, task.owner_id, image_id)
        except Exception as e:
            return await self._fail(task, e)

        output = {
            "success": True,
            **extra_output,
            "image_url": stored.url,
            "thumbnail_url": stored.thumbnail_url,
            "image_id": image_id,
        }
        await self.store.complete(task.id, output)
        await self.publish_status(task.id, task.batch_id)

        return ProcessOutcome.COMPLETED

    async def _process_batch_parent(self, task: Task) -> ProcessOutcome:
        """
        Expand the parent into siblings, complete it, then drive the siblings.

        The parent is only a planning record: it reports completed as soon
        as its siblings exist, whatever their eventual outcome.
        """
        input_data = task.input_data or {}

        try:
            variants = self.batch.expand_variants(input_data)
        except Exception as e:
            return await self._fail(task, e)

        batch_id = str(uuid.uuid4())
        sibling_ids = await self.batch.create_siblings(task.owner_id, batch_id, variants)

        await self.store.complete(
            task.id,
            {
                "success": True,
                "batch_id": batch_id,
                "sub_task_count": len(sibling_ids),
                "message": f"Created {len(sibling_ids)} sub-tasks",
            },
        )
        await self.publish_status(task.id, batch_id)

        concurrency = clamp_concurrency(
            input_data.get("concurrency"),
            default=self.default_concurrency,
            upper=self.max_concurrency,
        )
        await self.batch.run_batch(batch_id, concurrency, self.process)

        return ProcessOutcome.COMPLETED

    async def _fail(self, task: Task, error: BaseException) -> ProcessOutcome:
        message = str(error) or "Processing failed"
        logger.warning("task_failed", error=message, error_type=type(error).__name__)

        await self.store.fail(task.id, message)
        await self.publish_status(task.id, task.batch_id)
        return ProcessOutcome.FAILED

    # Status publishing

    async def publish_status(self, task_id: str, batch_id: str | None = None) -> None:
        """
        Push the task's current snapshot, and its batch aggregate if any.

        Failures are logged and never affect the task.
        """
        if self.publisher is None:
            return

        try:
            task = await self.store.get(task_id)
            if task is not None:
                event = TaskStatusEvent(
                    task_id=task.id,
                    status=task.status,
                    progress=task.progress,
                    output_data=task.output_data,
                    error_message=task.error_message,
                )
                await self.publisher.publish(task.id, event.model_dump(mode="json", by_alias=True))

            if batch_id:
                progress = await self.store.get_batch_progress(batch_id)
                batch_event = BatchProgressEvent(
                    batch_id=batch_id,
                    progress=progress,
                    is_completed=progress.is_completed,
                )
                await self.publisher.publish(batch_id, batch_event.model_dump(mode="json", by_alias=True))
        except Exception as e:
            logger.warning("status_publish_failed", task_id=task_id, batch_id=batch_id, error=str(e))
