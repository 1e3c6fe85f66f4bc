"""
Custom exception hierarchy for the task engine.
"""

from typing import Any


class TaskEngineException(Exception):
    """Base exception for all task engine exceptions."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class TaskNotFoundError(TaskEngineException):
    """Raised when a referenced task or batch does not exist."""
    pass


class TaskForbiddenError(TaskEngineException):
    """Raised when a caller acts on a task owned by someone else."""
    pass


class TaskAlreadyTerminalError(TaskEngineException):
    """Raised when a task can no longer change state (completed, failed, cancelled)."""
    pass


class InvalidTaskInputError(TaskEngineException):
    """Raised when a task's input payload cannot be interpreted."""
    pass


class GenerationError(TaskEngineException):
    """Raised by the generation collaborator with a human-readable message."""
    pass


class StorageError(TaskEngineException):
    """Raised by the storage collaborator when an artifact cannot be persisted."""
    pass


class RateLimitExceededError(TaskEngineException):
    """Raised when an owner exceeds a submission rate limit."""

    def __init__(self, message: str, retry_after: int = 0, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class MissingTokenError(TaskEngineException):
    """Raised when a status subscriber connects without an access token."""
    pass
