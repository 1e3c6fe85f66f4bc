"""
Task store: persisted task records and their atomic state transitions.

Every operation runs in its own session and touches one row (or one
set-based statement), so no cross-task locking exists. The only guard
against duplicate execution is the compare-and-set in start_processing.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskengine.core.exceptions import (
    TaskAlreadyTerminalError,
    TaskForbiddenError,
    TaskNotFoundError,
)
from taskengine.models.base import utc_now
from taskengine.models.task import (
    ACTIVE_STATUSES,
    Task,
    TaskStatus,
    TaskType,
)
from taskengine.schemas.task import BatchProgress, QueueStats

logger = logging.getLogger(__name__)

PROGRESS_ON_CLAIM = 10


@dataclass
class ReclaimedTask:
    id: str
    type: str
    batch_id: str | None
    input_data: dict[str, Any]


def _status_count(status: TaskStatus):
    return func.coalesce(func.sum(case((Task.status == status.value, 1), else_=0)), 0)


class TaskStore:
    """
    Task persistence.

    Usage:
        store = TaskStore(db_manager.session_factory)
        task = await store.create(task_id, owner_id, TaskType.SINGLE, {...})
        if await store.start_processing(task.id):
            ...
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(
        self,
        task_id: str,
        owner_id: str,
        task_type: TaskType,
        input_data: dict[str, Any],
        batch_id: str | None = None,
    ) -> Task:
        """Insert a pending task with progress 0."""
        task = Task(
            id=task_id,
            owner_id=owner_id,
            type=TaskType(task_type).value,
            status=TaskStatus.PENDING.value,
            progress=0,
            input_data=input_data,
            batch_id=batch_id,
            created_at=utc_now(),
        )

        async with self._session_factory() as session:
            session.add(task)
            await session.commit()

        logger.debug(f"Task created: {task_id} ({task_type}) batch={batch_id}")
        return task

    async def get(self, task_id: str) -> Task | None:
        async with self._session_factory() as session:
            return await session.get(Task, task_id)

    async def start_processing(self, task_id: str) -> bool:
        """
        Claim a pending task.

        Compare-and-set on status: succeeds only while the row is still
        pending. Returns whether this caller won the race.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(Task)
                .where(Task.id == task_id, Task.status == TaskStatus.PENDING.value)
                .values(
                    status=TaskStatus.PROCESSING.value,
                    started_at=utc_now(),
                    progress=PROGRESS_ON_CLAIM,
                )
            )
            await session.commit()
            return result.rowcount == 1

    async def update_progress(self, task_id: str, progress: int) -> bool:
        """Unconditional coarse progress write."""
        progress = max(0, min(100, progress))
        async with self._session_factory() as session:
            result = await session.execute(
                update(Task).where(Task.id == task_id).values(progress=progress)
            )
            await session.commit()
            return result.rowcount > 0

    async def complete(self, task_id: str, output_data: dict[str, Any]) -> bool:
        """Mark completed with output; last write wins."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Task)
                .where(Task.id == task_id)
                .values(
                    status=TaskStatus.COMPLETED.value,
                    output_data=output_data,
                    completed_at=utc_now(),
                    progress=100,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def fail(self, task_id: str, error_message: str) -> bool:
        """Mark failed with a message; progress is left as it was."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Task)
                .where(Task.id == task_id)
                .values(
                    status=TaskStatus.FAILED.value,
                    error_message=error_message,
                    completed_at=utc_now(),
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def cancel(self, task_id: str, owner_id: str) -> Task:
        """
        Owner-checked cancellation of a pending or processing task.

        Raises:
            TaskNotFoundError: no such task
            TaskForbiddenError: owner mismatch
            TaskAlreadyTerminalError: task already completed, failed or cancelled
        """
        async with self._session_factory() as session:
            task = await session.get(Task, task_id)

            if task is None:
                raise TaskNotFoundError("Task not found", {"task_id": task_id})

            if task.owner_id != owner_id:
                raise TaskForbiddenError("Not allowed to cancel this task", {"task_id": task_id})

            if task.status == TaskStatus.COMPLETED:
                raise TaskAlreadyTerminalError("Task already completed and cannot be cancelled")

            if task.status == TaskStatus.FAILED:
                raise TaskAlreadyTerminalError("Task already failed")

            if task.status == TaskStatus.CANCELLED:
                raise TaskAlreadyTerminalError("Task already cancelled")

            result = await session.execute(
                update(Task)
                .where(
                    Task.id == task_id,
                    Task.owner_id == owner_id,
                    Task.status.in_([s.value for s in ACTIVE_STATUSES]),
                )
                .values(status=TaskStatus.CANCELLED.value, completed_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            await session.commit()

            if result.rowcount != 1:
                # A worker reached a terminal status between the read and the update
                raise TaskAlreadyTerminalError("Task finished before it could be cancelled")

        return await self.get(task_id)

    async def get_pending(self, limit: int = 10, exclude_batched: bool = False) -> list[Task]:
        """
        Oldest pending tasks first.

        With exclude_batched, batch siblings are left out: their batch run
        owns them and its concurrency bound.
        """
        query = select(Task).where(Task.status == TaskStatus.PENDING.value)
        if exclude_batched:
            query = query.where(Task.batch_id.is_(None))

        async with self._session_factory() as session:
            result = await session.execute(
                query.order_by(Task.created_at.asc()).limit(limit)
            )
            return list(result.scalars().all())

    async def get_active(self, owner_id: str) -> list[Task]:
        """Pending and processing tasks of one owner, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Task)
                .where(
                    Task.owner_id == owner_id,
                    Task.status.in_([s.value for s in ACTIVE_STATUSES]),
                )
                .order_by(Task.created_at.asc())
            )
            return list(result.scalars().all())

    async def get_by_batch(self, batch_id: str) -> list[Task]:
        """Siblings of one batch in creation order."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Task)
                .where(Task.batch_id == batch_id)
                .order_by(Task.created_at.asc())
            )
            return list(result.scalars().all())

    async def get_by_owner(self, owner_id: str, limit: int = 50) -> list[Task]:
        """Most recent tasks of one owner."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Task)
                .where(Task.owner_id == owner_id)
                .order_by(Task.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_completed(self, owner_id: str, limit: int = 50) -> list[Task]:
        """Most recently completed tasks of one owner."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Task)
                .where(
                    Task.owner_id == owner_id,
                    Task.status == TaskStatus.COMPLETED.value,
                )
                .order_by(Task.completed_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_queue_stats(self) -> QueueStats:
        """Counts per status across all tasks."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    _status_count(TaskStatus.PENDING),
                    _status_count(TaskStatus.PROCESSING),
                    _status_count(TaskStatus.COMPLETED),
                    _status_count(TaskStatus.FAILED),
                    _status_count(TaskStatus.CANCELLED),
                )
            )
            pending, processing, completed, failed, cancelled = result.one()

        return QueueStats(
            pending=pending,
            processing=processing,
            completed=completed,
            failed=failed,
            cancelled=cancelled,
        )

    async def get_batch_progress(self, batch_id: str) -> BatchProgress:
        """Sibling counts per status for one batch, from a single statement."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    func.count(Task.id),
                    _status_count(TaskStatus.PENDING),
                    _status_count(TaskStatus.PROCESSING),
                    _status_count(TaskStatus.COMPLETED),
                    _status_count(TaskStatus.FAILED),
                    _status_count(TaskStatus.CANCELLED),
                ).where(Task.batch_id == batch_id)
            )
            total, pending, processing, completed, failed, cancelled = result.one()

        return BatchProgress(
            total=total,
            pending=pending,
            processing=processing,
            completed=completed,
            failed=failed,
            cancelled=cancelled,
        )

    async def reset_stuck_tasks(self, threshold: timedelta) -> int:
        """
        Return abandoned processing tasks to pending.

        Only rows whose started_at is older than now - threshold are touched.
        Returns count reclaimed.
        """
        return len(await self.reclaim_stuck_tasks(threshold))

    async def reclaim_stuck_tasks(self, threshold: timedelta) -> list[ReclaimedTask]:
        """Same as reset_stuck_tasks, returning what was reset so it can be re-dispatched."""
        cutoff = utc_now() - threshold

        async with self._session_factory() as session:
            result = await session.execute(
                update(Task)
                .where(
                    Task.status == TaskStatus.PROCESSING.value,
                    Task.started_at < cutoff,
                )
                .values(status=TaskStatus.PENDING.value, started_at=None, progress=0)
                .returning(Task.id, Task.type, Task.batch_id, Task.input_data)
                .execution_options(synchronize_session=False)
            )
            reclaimed = [
                ReclaimedTask(id=row.id, type=row.type, batch_id=row.batch_id, input_data=row.input_data or {})
                for row in result.all()
            ]
            await session.commit()
            return reclaimed

    async def cleanup(self, retention_days: int = 7) -> int:
        """Delete completed/failed tasks older than the retention window."""
        cutoff = utc_now() - timedelta(days=retention_days)

        async with self._session_factory() as session:
            result = await session.execute(
                delete(Task)
                .where(
                    Task.status.in_([TaskStatus.COMPLETED.value, TaskStatus.FAILED.value]),
                    Task.completed_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount
