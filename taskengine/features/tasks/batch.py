"""
Batch coordinator: expands a batch into sibling tasks and drives them.

Siblings share one batch id; the coordinator never tracks them in
memory, so batch progress is always derived from the store.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

from taskengine.config import settings
from taskengine.core.exceptions import InvalidTaskInputError
from taskengine.core.metrics import tasks_submitted_total
from taskengine.features.tasks.collaborators import TemplateResolver
from taskengine.features.tasks.executor import (
    UnitResult,
    run_with_concurrency_limit,
    with_jitter,
)
from taskengine.features.tasks.store import TaskStore
from taskengine.models.task import TaskStatus, TaskType
from taskengine.schemas.task import ProductShotRequest

logger = structlog.get_logger(__name__)

ProcessFn = Callable[[str], Awaitable[Any]]


@dataclass
class SiblingSpec:
    """Input of one sibling to be created."""

    task_type: TaskType
    input_data: dict[str, Any]


class BatchCoordinator:
    """
    Creates sibling tasks and runs the pending ones with bounded parallelism.

    Usage:
        coordinator = BatchCoordinator(store, resolver)
        variants = coordinator.expand_variants(parent.input_data)
        ids = await coordinator.create_siblings(owner_id, batch_id, variants)
        await coordinator.run_batch(batch_id, 2, processor.process)
    """

    def __init__(
        self,
        store: TaskStore,
        resolver: TemplateResolver,
        jitter_max_ms: int | None = None,
    ):
        self.store = store
        self.resolver = resolver
        self.jitter_max_ms = settings.batch_jitter_max_ms if jitter_max_ms is None else jitter_max_ms

    def expand_variants(self, input_data: dict[str, Any]) -> list[SiblingSpec]:
        """
        One single-task input per variable combination.

        Raises:
            InvalidTaskInputError: base prompt or combinations missing
        """
        base_prompt = input_data.get("base_prompt")
        combinations = input_data.get("combinations")

        if not base_prompt or not combinations:
            raise InvalidTaskInputError("Invalid batch input: missing base_prompt or combinations")

        specs = []
        for combination in combinations:
            # String values only
            variable_values = {name: value for name, value in combination.items() if isinstance(value, str)}
            specs.append(
                SiblingSpec(
                    task_type=TaskType.SINGLE,
                    input_data={
                        "image_base64": input_data.get("image_base64"),
                        "prompt": self.resolver.resolve(base_prompt, variable_values),
                        "aspect_ratio": input_data.get("aspect_ratio") or "3:4",
                        "template_id": input_data.get("template_id"),
                        "template_name": input_data.get("template_name"),
                        "variable_values": variable_values,
                    },
                )
            )
        return specs

    def expand_product_shots(
        self,
        request: ProductShotRequest,
        concurrency: int,
    ) -> list[SiblingSpec]:
        """One product-shot input per angle; every sibling carries the batch concurrency."""
        config = request.config.model_dump()
        return [
            SiblingSpec(
                task_type=TaskType.PRODUCT_SHOT,
                input_data={
                    "image_base64": request.image_base64,
                    "angle": angle,
                    "config": config,
                    "concurrency": concurrency,
                },
            )
            for angle in request.angles
        ]

    async def create_siblings(
        self,
        owner_id: str,
        batch_id: str,
        siblings: list[SiblingSpec],
    ) -> list[str]:
        """Insert every sibling as pending under batch_id; returns ids in order."""
        task_ids = []

        for sibling in siblings:
            task_id = str(uuid.uuid4())
            await self.store.create(
                task_id,
                owner_id,
                sibling.task_type,
                sibling.input_data,
                batch_id=batch_id,
            )
            tasks_submitted_total.labels(task_type=sibling.task_type.value).inc()
            task_ids.append(task_id)

        logger.info("batch_siblings_created", batch_id=batch_id, count=len(task_ids))
        return task_ids

    async def run_batch(
        self,
        batch_id: str,
        concurrency: int,
        process: ProcessFn,
    ) -> list[UnitResult]:
        """
        Process the batch's pending siblings, at most `concurrency` at a time.

        Every sibling but the first starts after a random jitter so that
        downstream calls do not arrive in lockstep.
        """
        siblings = [
            task
            for task in await self.store.get_by_batch(batch_id)
            if task.status == TaskStatus.PENDING.value
        ]

        units = [
            with_jitter(self._unit(process, task.id), self.jitter_max_ms, skip=index == 0)
            for index, task in enumerate(siblings)
        ]

        logger.info("batch_started", batch_id=batch_id, siblings=len(units), concurrency=concurrency)
        results = await run_with_concurrency_limit(units, concurrency)

        failed = sum(1 for result in results if not result.ok)
        logger.info("batch_finished", batch_id=batch_id, siblings=len(results), errors=failed)
        return results

    @staticmethod
    def _unit(process: ProcessFn, task_id: str) -> Callable[[], Awaitable[Any]]:
        async def run() -> Any:
            return await process(task_id)

        return run
