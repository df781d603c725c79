"""
Standalone task queue process.

Runs an engine with the built-in handlers until SIGTERM or SIGINT, then shuts
down gracefully. Applications embedding the engine register their own
handlers and call ``TaskQueue.start()`` themselves.
"""

import asyncio
import logging

from prometheus_client import start_http_server

from taskqueue.config import get_settings
from taskqueue.engine import TaskQueue
from taskqueue.observability.logging import setup_logging
from taskqueue.observability.metrics import setup_metrics
from taskqueue.observability.tracing import setup_tracing
from taskqueue.worker.handlers import register_builtin_handlers

logger = logging.getLogger(__name__)


async def run_async() -> None:
    """Run the task queue asynchronously."""
    settings = get_settings()
    setup_logging(settings)
    setup_metrics()
    setup_tracing()

    if settings.metrics_port is not None:
        start_http_server(settings.metrics_port)
        logger.info(f"Serving metrics on port {settings.metrics_port}")

    engine = TaskQueue(settings)
    register_builtin_handlers(engine.registry)
    await engine.start()

    # Handle shutdown signals
    engine.shutdown_controller.install_signal_handlers()

    await engine.shutdown_controller.wait_released()


def run() -> None:
    """Run the task queue."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
