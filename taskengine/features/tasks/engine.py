"""
Engine wiring.

Builds the component graph once per process: the API process and each
Celery worker call build_engine() with the collaborators they use.
"""

from dataclasses import dataclass

from taskengine.config import Settings, settings as default_settings
from taskengine.core.cache import cache_manager
from taskengine.core.database import db_manager
from taskengine.core.rate_limit import RateLimiter
from taskengine.features.tasks.batch import BatchCoordinator
from taskengine.features.tasks.collaborators import (
    GenerationCollaborator,
    HttpGenerationCollaborator,
    LocalArtifactStorage,
    PlaceholderTemplateResolver,
    StorageCollaborator,
    TemplateResolver,
)
from taskengine.features.tasks.dispatcher import PollingDispatcher, QueueDispatcher
from taskengine.features.tasks.hub import StatusPublisher
from taskengine.features.tasks.processor import TaskProcessor
from taskengine.features.tasks.reclaimer import StuckTaskReclaimer
from taskengine.features.tasks.service import (
    CeleryEnqueuer,
    Enqueuer,
    InlineEnqueuer,
    TaskService,
)
from taskengine.features.tasks.store import TaskStore


@dataclass
class Engine:
    store: TaskStore
    batch: BatchCoordinator
    processor: TaskProcessor
    dispatcher: QueueDispatcher
    poller: PollingDispatcher
    reclaimer: StuckTaskReclaimer
    service: TaskService
    enqueuer: Enqueuer


def build_engine(
    store: TaskStore | None = None,
    generator: GenerationCollaborator | None = None,
    storage: StorageCollaborator | None = None,
    resolver: TemplateResolver | None = None,
    publisher: StatusPublisher | None = None,
    rate_limiter: RateLimiter | None = None,
    enqueuer: Enqueuer | None = None,
    config: Settings | None = None,
) -> Engine:
    """
    Assemble the engine.

    Anything not supplied comes from settings and the global database and
    cache managers, which must already be initialized. Tests pass fakes
    for every collaborator.
    """
    config = config or default_settings

    store = store or TaskStore(db_manager.session_factory)
    generator = generator or HttpGenerationCollaborator(
        base_url=config.generation_api_url,
        api_key=config.generation_api_key,
        timeout=config.generation_timeout_seconds,
    )
    storage = storage or LocalArtifactStorage(config.artifact_dir, config.artifact_base_url)
    resolver = resolver or PlaceholderTemplateResolver()

    batch = BatchCoordinator(store, resolver, jitter_max_ms=config.batch_jitter_max_ms)
    processor = TaskProcessor(
        store,
        generator,
        storage,
        resolver,
        batch,
        publisher=publisher,
        default_concurrency=config.batch_default_concurrency,
        max_concurrency=config.batch_max_concurrency,
    )

    if enqueuer is None:
        enqueuer = CeleryEnqueuer() if config.uses_broker else InlineEnqueuer(processor, batch)

    if rate_limiter is None and config.rate_limit_enabled:
        rate_limiter = RateLimiter(cache_manager)

    return Engine(
        store=store,
        batch=batch,
        processor=processor,
        dispatcher=QueueDispatcher(
            processor,
            store,
            max_attempts=config.queue_max_attempts,
            retry_base_seconds=config.queue_retry_base_seconds,
        ),
        poller=PollingDispatcher(
            processor,
            store,
            batch_size=config.poll_batch_size,
            concurrency=config.poll_concurrency,
            jitter_max_ms=config.poll_jitter_max_ms,
        ),
        reclaimer=StuckTaskReclaimer(
            store,
            retention_days=config.task_retention_days,
            enqueuer=enqueuer,
            default_concurrency=config.batch_default_concurrency,
        ),
        service=TaskService(
            store,
            batch,
            enqueuer,
            rate_limiter=rate_limiter,
            default_concurrency=config.batch_default_concurrency,
            max_concurrency=config.batch_max_concurrency,
        ),
        enqueuer=enqueuer,
    )
