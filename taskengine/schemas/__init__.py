"""
Pydantic schemas package.
"""

from taskengine.schemas.common import BaseSchema, MessageResponse, WireSchema
from taskengine.schemas.task import (
    BatchProgress,
    BatchProgressEvent,
    BatchStatus,
    BatchSubmission,
    BatchTaskSummary,
    CancelResult,
    Delivery,
    DeliveryAction,
    DeliveryOutcome,
    PongFrame,
    ProductShotConfig,
    ProductShotRequest,
    QueueMessage,
    QueueStats,
    TaskRead,
    TaskStatusEvent,
    TaskSubmission,
    BatchRequest,
)

__all__ = [
    # Common
    "BaseSchema",
    "WireSchema",
    "MessageResponse",
    # Tasks
    "TaskRead",
    "TaskSubmission",
    "BatchRequest",
    "BatchSubmission",
    "ProductShotConfig",
    "ProductShotRequest",
    "CancelResult",
    "BatchProgress",
    "BatchStatus",
    "BatchTaskSummary",
    "QueueStats",
    # Queue
    "QueueMessage",
    "Delivery",
    "DeliveryAction",
    "DeliveryOutcome",
    # Status push
    "TaskStatusEvent",
    "BatchProgressEvent",
    "PongFrame",
]
