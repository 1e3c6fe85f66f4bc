"""
Pytest fixtures for all tests.

Provides:
- A temporary SQLite task store per test
- Fake generation/storage collaborators
- Recording status publisher and enqueuer
- In-memory counter store for rate limiting
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio

from taskengine.config import Settings
from taskengine.core.database import DatabaseManager
from taskengine.core.rate_limit import RateLimiter
from taskengine.features.tasks.engine import Engine, build_engine
from taskengine.features.tasks.store import TaskStore
from tests.fakes import (
    FakeGenerator,
    FakeStorage,
    InMemoryCounterStore,
    RecordingEnqueuer,
    RecordingPublisher,
)


@pytest.fixture
def test_settings() -> Settings:
    """Settings with jitter disabled so tests run fast and deterministic."""
    return Settings(
        queue_backend="inline",
        batch_jitter_max_ms=0,
        poll_jitter_max_ms=0,
        rate_limit_enabled=True,
    )


@pytest_asyncio.fixture
async def db(tmp_path) -> AsyncGenerator[DatabaseManager, None]:
    """
    File-backed SQLite database, created fresh for each test.

    A file rather than :memory: so that every session sees the same data.
    """
    manager = DatabaseManager()
    manager.init(f"sqlite+aiosqlite:///{tmp_path / 'tasks.db'}")
    await manager.create_all()

    yield manager

    await manager.close()


@pytest.fixture
def store(db: DatabaseManager) -> TaskStore:
    return TaskStore(db.session_factory)


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def enqueuer() -> RecordingEnqueuer:
    return RecordingEnqueuer()


@pytest.fixture
def counter_store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def rate_limiter(counter_store: InMemoryCounterStore) -> RateLimiter:
    return RateLimiter(counter_store)


@pytest.fixture
def engine(
    store: TaskStore,
    generator: FakeGenerator,
    storage: FakeStorage,
    publisher: RecordingPublisher,
    enqueuer: RecordingEnqueuer,
    rate_limiter: RateLimiter,
    test_settings: Settings,
) -> Engine:
    """
    Fully wired engine over fakes.

    Usage:
        async def test_something(engine, generator):
            submission = await engine.service.submit_single("user-1", {...})
    """
    return build_engine(
        store=store,
        generator=generator,
        storage=storage,
        publisher=publisher,
        rate_limiter=rate_limiter,
        enqueuer=enqueuer,
        config=test_settings,
    )
