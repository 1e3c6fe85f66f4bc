"""
Task model: the durable state-machine record behind every unit of work.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from taskengine.models.base import BaseModel


class TaskStatus(str, Enum):
    """Task lifecycle status."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskType(str, Enum):
    """Kind of work a task carries."""
    SINGLE = "single"
    BATCH_PARENT = "batch-parent"
    PRODUCT_SHOT = "product-shot"


ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.PROCESSING)
TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class Task(BaseModel):
    """
    Task tracking model.

    Status only moves pending -> processing -> completed/failed, or to
    cancelled from pending/processing. Siblings created by one batch share
    batch_id.
    """

    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_owner_status", "owner_id", "status"),
    )

    owner_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Owning user/account ID"
    )

    type: Mapped[TaskType] = mapped_column(
        String(32),
        nullable=False,
        comment="single, batch-parent or product-shot"
    )

    status: Mapped[TaskStatus] = mapped_column(
        String(32),
        nullable=False,
        default=TaskStatus.PENDING,
        index=True,
        comment="Current task status"
    )

    progress: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Task progress percentage (0-100)"
    )

    input_data: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Input payload interpreted by the processor"
    )

    output_data: Mapped[dict[str, Any] | None] = mapped_column(
        JSON,
        nullable=True,
        comment="Result payload (completed only)"
    )

    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Error message (failed only)"
    )

    batch_id: Mapped[str | None] = mapped_column(
        String(36),
        nullable=True,
        index=True,
        comment="Groups sibling tasks of one batch"
    )

    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the task was claimed for processing"
    )

    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the task reached a terminal status"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<Task(id={self.id}, type={self.type}, status={self.status})>"
