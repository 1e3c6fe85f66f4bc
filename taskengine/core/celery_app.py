"""
Celery application configuration.

Celery handles:
- Broker delivery of queue messages to workers
- Retry with backoff (countdown decided by the queue dispatcher)
- Periodic sweeps via beat (reclaim, retention cleanup)
"""

import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import task_failure, task_retry, worker_process_init

from taskengine.config import settings

logger = logging.getLogger(__name__)

celery_app = Celery(
    "taskengine",
    broker=str(settings.redis_url),
    backend=str(settings.redis_url),
    include=[
        "taskengine.features.tasks.tasks",
    ]
)

celery_app.conf.update(
    # Task execution
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Every engine task goes to the generation queue
    task_routes={
        "taskengine.*": {"queue": settings.queue_name},
    },
    task_default_queue=settings.queue_name,

    # Result backend
    result_expires=3600,

    # A message is only acknowledged once its handler returns
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Monitoring
    worker_send_task_events=True,
    task_send_sent_event=True,
)


@worker_process_init.connect
def configure_worker_logging(**kwargs):
    """Structured logging in every worker process."""
    from taskengine.core.logging_config import setup_logging

    setup_logging()


@task_retry.connect
def task_retry_handler(sender=None, request=None, reason=None, **kwargs):
    """Log broker redeliveries."""
    logger.warning(f"Task retry scheduled: {sender.name} - {reason}")


@task_failure.connect
def task_failure_handler(sender=None, exception=None, **kwargs):
    """Log task failures."""
    logger.error(f"Task failed: {sender.name} - {exception}")


celery_app.conf.beat_schedule = {
    "reclaim-stuck-tasks": {
        "task": "taskengine.reclaim_stuck_tasks",
        "schedule": crontab(),  # Every minute
    },
    "cleanup-old-tasks": {
        "task": "taskengine.cleanup_tasks",
        "schedule": crontab(hour=3, minute=0),  # Daily 03:00 UTC
    },
}
