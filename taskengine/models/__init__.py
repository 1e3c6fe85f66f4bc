"""
Database models package.
"""

from taskengine.core.database import Base
from taskengine.models.base import BaseModel, utc_now
from taskengine.models.task import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Task,
    TaskStatus,
    TaskType,
)

__all__ = [
    "Base",
    "BaseModel",
    "utc_now",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "Task",
    "TaskStatus",
    "TaskType",
]
