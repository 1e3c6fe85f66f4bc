"""
Execution context using contextvars.

Every log line emitted while a task is being processed carries its
task id, batch id and delivery attempt without threading them through
each call.
"""

import contextvars
from contextlib import contextmanager
from typing import Any, Iterator

task_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "task_id", default=None
)
batch_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "batch_id", default=None
)
attempt_var: contextvars.ContextVar[int | None] = contextvars.ContextVar(
    "attempt", default=None
)


def set_task_context(
    task_id: str | None = None,
    batch_id: str | None = None,
    attempt: int | None = None,
) -> None:
    """Set task context variables."""
    if task_id:
        task_id_var.set(task_id)
    if batch_id:
        batch_id_var.set(batch_id)
    if attempt is not None:
        attempt_var.set(attempt)


def get_task_context() -> dict[str, Any]:
    """Get the non-empty task context as a dictionary."""
    context = {
        "task_id": task_id_var.get(),
        "batch_id": batch_id_var.get(),
        "attempt": attempt_var.get(),
    }
    return {key: value for key, value in context.items() if value is not None}


@contextmanager
def task_context(
    task_id: str | None = None,
    batch_id: str | None = None,
    attempt: int | None = None,
) -> Iterator[None]:
    """Scope task context to a block, restoring the previous values on exit."""
    tokens = [
        task_id_var.set(task_id or task_id_var.get()),
        batch_id_var.set(batch_id or batch_id_var.get()),
        attempt_var.set(attempt if attempt is not None else attempt_var.get()),
    ]
    try:
        yield
    finally:
        task_id_var.reset(tokens[0])
        batch_id_var.reset(tokens[1])
        attempt_var.reset(tokens[2])
