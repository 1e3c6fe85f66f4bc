"""
Worker management utilities.

Usage:
    python scripts/manage_workers.py worker --concurrency 4
    python scripts/manage_workers.py beat
    python scripts/manage_workers.py purge
"""

import subprocess
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from taskengine.config import settings  # noqa: E402

CELERY_APP = "taskengine.core.celery_app"


def start_worker(concurrency: int = 4, queues: str = settings.queue_name):
    """Start a Celery worker consuming generation messages."""
    cmd = [
        "celery", "-A", CELERY_APP,
        "worker",
        f"--loglevel={settings.log_level.lower()}",
        f"--concurrency={concurrency}",
        f"--queues={queues}",
    ]

    print(f"Starting worker with command: {' '.join(cmd)}")
    subprocess.run(cmd)


def start_beat():
    """Start Celery beat (stuck-task reclaim and daily cleanup)."""
    cmd = [
        "celery", "-A", CELERY_APP,
        "beat",
        f"--loglevel={settings.log_level.lower()}",
    ]

    print(f"Starting beat scheduler: {' '.join(cmd)}")
    subprocess.run(cmd)


def purge_queue(queue: str = settings.queue_name):
    """Drop every undelivered message from a queue."""
    cmd = [
        "celery", "-A", CELERY_APP,
        "purge",
        "-Q", queue,
        "-f",
    ]

    print(f"Purging queue: {queue}")
    subprocess.run(cmd)


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Manage task engine workers")
    parser.add_argument("command", choices=["worker", "beat", "purge"])
    parser.add_argument("--concurrency", type=int, default=4)
    parser.add_argument("--queues", default=settings.queue_name)
    parser.add_argument("--queue", default=settings.queue_name, help="Queue to purge")

    args = parser.parse_args()

    if args.command == "worker":
        start_worker(args.concurrency, args.queues)
    elif args.command == "beat":
        start_beat()
    elif args.command == "purge":
        purge_queue(args.queue)
