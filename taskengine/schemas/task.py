"""
Task-related schemas: read models, producer requests, queue wire format
and status push frames.
"""

import time
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import Field, computed_field

from taskengine.models.task import TaskStatus, TaskType
from taskengine.schemas.common import BaseSchema, WireSchema


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


class TaskRead(BaseSchema):
    """Task record as exposed to callers."""

    id: str
    owner_id: str
    type: TaskType
    status: TaskStatus
    progress: int = Field(..., ge=0, le=100, description="Progress percentage")
    input_data: dict[str, Any]
    output_data: dict[str, Any] | None = None
    error_message: str | None = None
    batch_id: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


# Producer requests

class BatchRequest(BaseSchema):
    """One base prompt rendered once per variable combination."""

    image_base64: str
    base_prompt: str
    combinations: list[dict[str, Any]] = Field(..., min_length=1)
    aspect_ratio: str = "3:4"
    template_id: str | None = None
    template_name: str | None = None
    concurrency: int | None = Field(None, description="Parallel siblings, clamped to 1-5")


class ProductShotConfig(BaseSchema):
    """Rendering options shared by every angle of a product shot batch."""

    background_color: str = "pure_white"
    reflection_enabled: bool = False
    shadow_style: str = "none"
    output_size: str = "1K"
    aspect_ratio: str = "1:1"


class ProductShotRequest(BaseSchema):
    """One sibling task per requested angle."""

    image_base64: str
    angles: list[str] = Field(..., min_length=1)
    config: ProductShotConfig = Field(default_factory=ProductShotConfig)
    concurrency: int | None = Field(None, description="Parallel siblings, clamped to 1-5")


class TaskSubmission(BaseSchema):
    task_id: str
    status: TaskStatus
    queue_position: int


class BatchSubmission(BaseSchema):
    batch_id: str
    task_ids: list[str]
    status: TaskStatus
    queue_position: int
    total: int


class CancelResult(BaseSchema):
    """Outcome of a cancellation request; never an error for terminal tasks."""

    success: bool
    message: str


# Aggregates

class QueueStats(BaseSchema):
    """Task counts per status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0


class BatchProgress(BaseSchema):
    """
    Derived sibling counts for one batch id.

    pending + processing + completed + failed + cancelled == total
    """

    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @computed_field
    @property
    def is_completed(self) -> bool:
        return self.pending == 0 and self.processing == 0


class BatchTaskSummary(BaseSchema):
    id: str
    status: TaskStatus
    angle: str | None = None
    error_message: str | None = None


class BatchStatus(BaseSchema):
    batch_id: str
    progress: BatchProgress
    tasks: list[BatchTaskSummary]
    results: list[dict[str, Any]]
    is_completed: bool


# Queue wire format

class QueueMessage(WireSchema):
    """Broker message: {"taskId", "type", "timestamp"}."""

    task_id: str
    type: TaskType
    timestamp: int = Field(default_factory=now_ms)


class Delivery(BaseSchema):
    """A queue message together with its 1-based delivery attempt."""

    message: QueueMessage
    attempts: int = Field(1, ge=1)


class DeliveryAction(str, Enum):
    ACK = "ack"
    RETRY = "retry"


class DeliveryOutcome(BaseSchema):
    """What the broker should do with a delivery."""

    task_id: str
    action: DeliveryAction
    delay_seconds: int = 0
    dead_lettered: bool = False


# Status push frames

class TaskStatusEvent(WireSchema):
    """Snapshot pushed to subscribers of one task id."""

    type: Literal["task_status"] = "task_status"
    task_id: str
    status: TaskStatus
    progress: int
    output_data: dict[str, Any] | None = None
    error_message: str | None = None
    timestamp: int = Field(default_factory=now_ms)


class BatchProgressEvent(WireSchema):
    """Aggregate pushed to subscribers of one batch id."""

    type: Literal["batch_progress"] = "batch_progress"
    batch_id: str
    progress: BatchProgress
    is_completed: bool
    timestamp: int = Field(default_factory=now_ms)


class PongFrame(WireSchema):
    type: Literal["pong"] = "pong"
    timestamp: int = Field(default_factory=now_ms)
