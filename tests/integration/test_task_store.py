"""
Integration tests for the task store against a real SQLite database.
"""

import asyncio
from datetime import timedelta

import pytest

from taskengine.core.exceptions import (
    TaskAlreadyTerminalError,
    TaskForbiddenError,
    TaskNotFoundError,
)
from taskengine.models.task import TaskStatus, TaskType
from tests.factories import TaskFactory, backdate


@pytest.mark.integration
class TestTaskLifecycle:
    async def test_create_is_pending_with_zero_progress(self, store):
        task = await TaskFactory.create(store, owner_id="owner-1")

        loaded = await store.get(task.id)
        assert loaded.status == TaskStatus.PENDING
        assert loaded.progress == 0
        assert loaded.started_at is None
        assert loaded.owner_id == "owner-1"

    async def test_start_processing_claims_once(self, store):
        task = await TaskFactory.create(store)

        assert await store.start_processing(task.id) is True
        assert await store.start_processing(task.id) is False

        loaded = await store.get(task.id)
        assert loaded.status == TaskStatus.PROCESSING
        assert loaded.progress == 10
        assert loaded.started_at is not None

    async def test_racing_claims_have_exactly_one_winner(self, store):
        task = await TaskFactory.create(store)

        results = await asyncio.gather(*[store.start_processing(task.id) for _ in range(5)])

        assert results.count(True) == 1
        assert (await store.get(task.id)).status == TaskStatus.PROCESSING

    async def test_losing_claim_never_reverts_status(self, store):
        task = await TaskFactory.create(store)
        await store.start_processing(task.id)
        await store.complete(task.id, {"success": True})

        assert await store.start_processing(task.id) is False
        assert (await store.get(task.id)).status == TaskStatus.COMPLETED

    async def test_update_progress_is_clamped(self, store):
        task = await TaskFactory.create(store)

        await store.update_progress(task.id, 140)
        assert (await store.get(task.id)).progress == 100

        await store.update_progress(task.id, -5)
        assert (await store.get(task.id)).progress == 0

    async def test_complete_sets_output_and_full_progress(self, store):
        task = await TaskFactory.create(store)
        await store.start_processing(task.id)

        await store.complete(task.id, {"success": True, "image_url": "u"})

        loaded = await store.get(task.id)
        assert loaded.status == TaskStatus.COMPLETED
        assert loaded.progress == 100
        assert loaded.output_data == {"success": True, "image_url": "u"}
        assert loaded.completed_at is not None

    async def test_fail_leaves_progress_untouched(self, store):
        task = await TaskFactory.create(store)
        await store.start_processing(task.id)

        await store.fail(task.id, "quota exceeded")

        loaded = await store.get(task.id)
        assert loaded.status == TaskStatus.FAILED
        assert loaded.error_message == "quota exceeded"
        assert loaded.progress == 10
        assert loaded.completed_at is not None


@pytest.mark.integration
class TestCancel:
    async def test_cancel_pending(self, store):
        task = await TaskFactory.create(store, owner_id="owner-1")

        cancelled = await store.cancel(task.id, "owner-1")

        assert cancelled.status == TaskStatus.CANCELLED
        assert cancelled.completed_at is not None

    async def test_cancel_processing(self, store):
        task = await TaskFactory.create(store, owner_id="owner-1")
        await store.start_processing(task.id)

        assert (await store.cancel(task.id, "owner-1")).status == TaskStatus.CANCELLED

    async def test_cancel_missing(self, store):
        with pytest.raises(TaskNotFoundError):
            await store.cancel("nope", "owner-1")

    async def test_cancel_someone_elses_task(self, store):
        task = await TaskFactory.create(store, owner_id="owner-1")

        with pytest.raises(TaskForbiddenError):
            await store.cancel(task.id, "owner-2")

        assert (await store.get(task.id)).status == TaskStatus.PENDING

    @pytest.mark.parametrize("finish", ["complete", "fail", "cancel"])
    async def test_cancel_terminal_task(self, store, finish):
        task = await TaskFactory.create(store, owner_id="owner-1")
        if finish == "complete":
            await store.complete(task.id, {"success": True})
        elif finish == "fail":
            await store.fail(task.id, "boom")
        else:
            await store.cancel(task.id, "owner-1")

        with pytest.raises(TaskAlreadyTerminalError):
            await store.cancel(task.id, "owner-1")

    async def test_cancelled_task_cannot_be_claimed(self, store):
        task = await TaskFactory.create(store, owner_id="owner-1")
        await store.cancel(task.id, "owner-1")

        assert await store.start_processing(task.id) is False


@pytest.mark.integration
class TestQueries:
    async def test_get_pending_oldest_first_with_limit(self, store):
        tasks = [await TaskFactory.create(store) for _ in range(4)]
        await store.start_processing(tasks[0].id)

        pending = await store.get_pending(limit=2)

        assert [t.id for t in pending] == [tasks[1].id, tasks[2].id]

    async def test_get_pending_can_leave_out_batch_siblings(self, store):
        await TaskFactory.create_batch(store, 2)
        standalone = await TaskFactory.create(store)

        assert len(await store.get_pending()) == 3
        assert [t.id for t in await store.get_pending(exclude_batched=True)] == [standalone.id]

    async def test_get_active_only_pending_and_processing(self, store):
        first = await TaskFactory.create(store, owner_id="owner-1")
        second = await TaskFactory.create(store, owner_id="owner-1")
        done = await TaskFactory.create(store, owner_id="owner-1")
        await TaskFactory.create(store, owner_id="owner-2")
        await store.start_processing(second.id)
        await store.complete(done.id, {"success": True})

        active = await store.get_active("owner-1")

        assert [t.id for t in active] == [first.id, second.id]

    async def test_get_by_owner_newest_first(self, store):
        older = await TaskFactory.create(store, owner_id="owner-1")
        newer = await TaskFactory.create(store, owner_id="owner-1")

        assert [t.id for t in await store.get_by_owner("owner-1")] == [newer.id, older.id]

    async def test_get_completed(self, store):
        done = await TaskFactory.create(store, owner_id="owner-1")
        await TaskFactory.create(store, owner_id="owner-1")
        await store.complete(done.id, {"success": True})

        assert [t.id for t in await store.get_completed("owner-1")] == [done.id]

    async def test_queue_stats(self, store):
        tasks = [await TaskFactory.create(store, owner_id="owner-1") for _ in range(5)]
        await store.start_processing(tasks[1].id)
        await store.complete(tasks[2].id, {"success": True})
        await store.fail(tasks[3].id, "boom")
        await store.cancel(tasks[4].id, "owner-1")

        stats = await store.get_queue_stats()

        assert stats.model_dump() == {
            "pending": 1,
            "processing": 1,
            "completed": 1,
            "failed": 1,
            "cancelled": 1,
        }

    async def test_queue_stats_empty(self, store):
        assert (await store.get_queue_stats()).pending == 0

    async def test_batch_progress_counts_add_up(self, store):
        batch_id, tasks = await TaskFactory.create_batch(store, 5)
        await TaskFactory.create(store)
        await store.start_processing(tasks[0].id)
        await store.complete(tasks[1].id, {"success": True})
        await store.fail(tasks[2].id, "boom")

        progress = await store.get_batch_progress(batch_id)

        assert progress.total == 5
        assert (progress.pending, progress.processing, progress.completed, progress.failed) == (2, 1, 1, 1)
        assert progress.is_completed is False

    async def test_batch_progress_unknown_batch(self, store):
        progress = await store.get_batch_progress("missing")

        assert progress.total == 0
        assert progress.is_completed is True


@pytest.mark.integration
class TestMaintenance:
    async def test_reset_stuck_tasks_only_past_threshold(self, store, db):
        stuck = await TaskFactory.create(store)
        recent = await TaskFactory.create(store)
        for task in (stuck, recent):
            await store.start_processing(task.id)
        await backdate(db, stuck.id, started_at=timedelta(minutes=30))
        await backdate(db, recent.id, started_at=timedelta(minutes=5))

        reclaimed = await store.reset_stuck_tasks(timedelta(minutes=10))

        assert reclaimed == 1
        reset = await store.get(stuck.id)
        assert reset.status == TaskStatus.PENDING
        assert reset.started_at is None
        assert reset.progress == 0
        untouched = await store.get(recent.id)
        assert untouched.status == TaskStatus.PROCESSING
        assert untouched.progress == 10

    async def test_reset_ignores_pending_and_terminal(self, store, db):
        pending = await TaskFactory.create(store)
        failed = await TaskFactory.create(store)
        await store.start_processing(failed.id)
        await store.fail(failed.id, "boom")
        await backdate(db, failed.id, started_at=timedelta(hours=1))

        assert await store.reset_stuck_tasks(timedelta(minutes=10)) == 0
        assert (await store.get(pending.id)).status == TaskStatus.PENDING
        assert (await store.get(failed.id)).status == TaskStatus.FAILED

    async def test_reclaim_stuck_tasks_returns_what_it_reset(self, store, db):
        batch_id, siblings = await TaskFactory.create_batch(store, 2)
        for task in siblings:
            await store.start_processing(task.id)
            await backdate(db, task.id, started_at=timedelta(minutes=30))

        reclaimed = await store.reclaim_stuck_tasks(timedelta(minutes=10))

        assert sorted(r.id for r in reclaimed) == sorted(t.id for t in siblings)
        assert all(r.batch_id == batch_id for r in reclaimed)
        assert all(r.input_data["prompt"] for r in reclaimed)

    async def test_cleanup_deletes_old_completed_and_failed(self, store, db):
        old_done = await TaskFactory.create(store)
        old_failed = await TaskFactory.create(store)
        fresh_done = await TaskFactory.create(store)
        old_cancelled = await TaskFactory.create(store, owner_id="owner-1")
        pending = await TaskFactory.create(store, task_type=TaskType.SINGLE)

        await store.complete(old_done.id, {"success": True})
        await store.fail(old_failed.id, "boom")
        await store.complete(fresh_done.id, {"success": True})
        await store.cancel(old_cancelled.id, "owner-1")
        for task in (old_done, old_failed, old_cancelled):
            await backdate(db, task.id, completed_at=timedelta(days=8))

        deleted = await store.cleanup(retention_days=7)

        assert deleted == 2
        assert await store.get(old_done.id) is None
        assert await store.get(old_failed.id) is None
        assert await store.get(fresh_done.id) is not None
        assert await store.get(old_cancelled.id) is not None
        assert await store.get(pending.id) is not None
