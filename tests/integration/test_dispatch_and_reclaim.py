"""
Integration tests for broker deliveries, the polling fallback and the
stuck-task reclaimer.
"""

import asyncio
from datetime import timedelta

import pytest

from taskengine.features.tasks.dispatcher import PollingDispatcher, QueueDispatcher
from taskengine.features.tasks.reclaimer import StuckTaskReclaimer
from taskengine.models.task import TaskStatus, TaskType
from taskengine.schemas.task import Delivery, DeliveryAction, QueueMessage
from tests.factories import InputFactory, TaskFactory, backdate
from tests.fakes import RecordingEnqueuer


class CrashingProcessor:
    """Claims the task, then dies the way a lost database connection would."""

    def __init__(self, store):
        self.store = store

    async def process(self, task_id: str):
        await self.store.start_processing(task_id)
        raise ConnectionError("connection reset by peer")


@pytest.mark.integration
class TestBrokerDeliveries:
    async def test_three_failing_deliveries_end_failed_and_acknowledged(self, store):
        task = await TaskFactory.create(store)
        dispatcher = QueueDispatcher(CrashingProcessor(store), store, max_attempts=3, retry_base_seconds=10)
        message = QueueMessage(task_id=task.id, type=task.type)

        outcomes = [
            await dispatcher.handle(Delivery(message=message, attempts=attempt))
            for attempt in (1, 2, 3)
        ]

        assert [o.action for o in outcomes] == [DeliveryAction.RETRY, DeliveryAction.RETRY, DeliveryAction.ACK]
        assert [o.delay_seconds for o in outcomes[:2]] == [10, 20]
        assert outcomes[-1].dead_lettered is True

        loaded = await store.get(task.id)
        assert loaded.status == TaskStatus.FAILED
        assert loaded.error_message == "connection reset by peer"

    async def test_successful_delivery_processes_task(self, engine, store):
        task = await TaskFactory.create(store)

        outcome = await engine.dispatcher.handle(
            Delivery(message=QueueMessage(task_id=task.id, type=task.type), attempts=1)
        )

        assert outcome.action is DeliveryAction.ACK
        assert (await store.get(task.id)).status == TaskStatus.COMPLETED

    async def test_redelivery_of_finished_task_is_harmless(self, engine, store, generator):
        task = await TaskFactory.create(store)
        delivery = Delivery(message=QueueMessage(task_id=task.id, type=task.type), attempts=1)

        await engine.dispatcher.handle(delivery)
        outcome = await engine.dispatcher.handle(delivery)

        assert outcome.action is DeliveryAction.ACK
        assert len(generator.requests) == 1


@pytest.mark.integration
class TestPollingDispatcher:
    async def test_sweep_takes_batch_size_oldest_pending(self, engine, store, generator):
        tasks = [await TaskFactory.create(store) for _ in range(7)]
        poller = PollingDispatcher(engine.processor, store, batch_size=5, concurrency=3, jitter_max_ms=0)

        completed = await poller.run_once()

        assert completed == 5
        assert generator.max_in_flight <= 3
        statuses = [(await store.get(t.id)).status for t in tasks]
        assert statuses == [TaskStatus.COMPLETED] * 5 + [TaskStatus.PENDING] * 2

    async def test_failed_tasks_not_counted(self, engine, store, generator):
        generator.error = RuntimeError("nope")
        await TaskFactory.create(store)

        poller = PollingDispatcher(engine.processor, store, jitter_max_ms=0)

        assert await poller.run_once() == 0

    async def test_empty_sweep(self, engine, store):
        assert await PollingDispatcher(engine.processor, store).run_once() == 0

    async def test_sweep_leaves_batch_siblings_to_their_batch_run(self, engine, store, generator):
        batch_id, siblings = await TaskFactory.create_batch(store, 6)
        generator.delay = 0.05
        poller = PollingDispatcher(engine.processor, store, batch_size=5, concurrency=3, jitter_max_ms=0)

        batch_run = asyncio.create_task(engine.batch.run_batch(batch_id, 2, engine.processor.process))
        await asyncio.sleep(0.02)

        assert await poller.run_once() == 0
        await batch_run

        assert generator.max_in_flight <= 2
        assert len(generator.requests) == 6
        assert all((await store.get(t.id)).status == TaskStatus.COMPLETED for t in siblings)


@pytest.mark.integration
class TestStuckTaskReclaimer:
    async def test_reclaimed_task_is_processed_again(self, engine, store, db):
        task = await TaskFactory.create(store)
        await store.start_processing(task.id)
        await backdate(db, task.id, started_at=timedelta(minutes=11))
        reclaimer = StuckTaskReclaimer(store, threshold=timedelta(minutes=10))

        assert await reclaimer.reclaim() == 1
        assert (await store.get(task.id)).status == TaskStatus.PENDING

        await engine.processor.process(task.id)
        assert (await store.get(task.id)).status == TaskStatus.COMPLETED

    async def test_recent_processing_left_alone(self, store):
        task = await TaskFactory.create(store)
        await store.start_processing(task.id)

        assert await StuckTaskReclaimer(store, threshold=timedelta(minutes=10)).reclaim() == 0
        assert (await store.get(task.id)).status == TaskStatus.PROCESSING

    async def test_cleanup_uses_retention_window(self, store, db):
        task = await TaskFactory.create(store)
        await store.complete(task.id, {"success": True})
        await backdate(db, task.id, completed_at=timedelta(days=3))

        assert await StuckTaskReclaimer(store, retention_days=7).cleanup() == 0
        assert await StuckTaskReclaimer(store, retention_days=2).cleanup() == 1

    async def test_reclaimed_tasks_are_dispatched_again(self, store, db):
        standalone = await TaskFactory.create(store)
        batch_id = "batch-1"
        shots = [
            await TaskFactory.create(
                store,
                TaskType.PRODUCT_SHOT,
                batch_id=batch_id,
                input_data=InputFactory.product_shot(angle=angle, concurrency=2),
            )
            for angle in ("front", "side")
        ]
        for task in [standalone, *shots]:
            await store.start_processing(task.id)
            await backdate(db, task.id, started_at=timedelta(minutes=30))
        enqueuer = RecordingEnqueuer()

        reclaimer = StuckTaskReclaimer(store, threshold=timedelta(minutes=10), enqueuer=enqueuer)

        assert await reclaimer.reclaim() == 3
        assert [m.task_id for m in enqueuer.messages] == [standalone.id]
        assert enqueuer.messages[0].type is TaskType.SINGLE
        assert enqueuer.batches == [(batch_id, 2)]

    async def test_redispatch_failure_does_not_abort_sweep(self, store, db):
        first = await TaskFactory.create(store)
        second = await TaskFactory.create(store)
        for task in (first, second):
            await store.start_processing(task.id)
            await backdate(db, task.id, started_at=timedelta(minutes=30))

        class FlakyEnqueuer(RecordingEnqueuer):
            async def enqueue(self, message):
                if message.task_id == first.id:
                    raise ConnectionError("broker unavailable")
                await super().enqueue(message)

        enqueuer = FlakyEnqueuer()

        assert await StuckTaskReclaimer(store, threshold=timedelta(minutes=10), enqueuer=enqueuer).reclaim() == 2
        assert [m.task_id for m in enqueuer.messages] == [second.id]
