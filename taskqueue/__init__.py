"""
Durable Task Queue Engine

An asyncio task-queue engine with immediate, delayed and cron-style recurring jobs,
lease-based at-least-once delivery, retry with backoff, deduplication and
graceful drain-on-shutdown.
"""

__version__ = "1.0.0"

from taskqueue.engine import TaskQueue  # noqa: E402

__all__ = ["TaskQueue", "__version__"]
