"""
Job handler registry and built-in handlers.

Job handlers must be idempotent - delivery is at-least-once, so a handler may
run more than once for the same job when a worker crashes or its lease expires.

A handler receives a JobContext. Returning ``JobResult(success=False)`` or
raising marks the attempt as failed (raise HandlerError for a plain message);
any other return value is a success and becomes the result output. Coroutine handlers are awaited on the event loop,
plain functions run in a worker thread.
"""

import asyncio
import inspect
import logging
import random
import time
from collections.abc import Awaitable, Callable
from typing import Any

from taskqueue.errors import HandlerError, RegistryFrozenError
from taskqueue.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[Any] | Any]


def _is_async(handler: Any) -> bool:
    return inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
        getattr(handler, "__call__", None)
    )


class HandlerRegistry:
    """
    Maps a job type to its handler.

    Populated before the engine starts and frozen afterwards, so dispatch never
    races with registration.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, job_type: str, handler: JobHandler | Any) -> JobHandler:
        """
        Register ``handler`` for ``job_type``.

        ``handler`` is either a callable taking a JobContext or an object with
        an ``execute(context)`` method.

        Raises:
            RegistryFrozenError: If the engine has already started.
        """
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register {job_type!r}: registry is frozen")
        if not callable(handler) and hasattr(handler, "execute"):
            handler = handler.execute
        if not callable(handler):
            raise TypeError(f"Handler for {job_type!r} is not callable")
        if job_type in self._handlers:
            logger.warning(f"Replacing handler for job type: {job_type}")
        self._handlers[job_type] = handler
        logger.info(f"Registered handler for job type: {job_type}")
        return handler

    def handler(self, job_type: str) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Example:
            @registry.handler("send_email")
            async def handle_send_email(context: JobContext) -> JobResult:
                ...
        """

        def decorator(fn: JobHandler) -> JobHandler:
            self.register(job_type, fn)
            return fn

        return decorator

    def freeze(self) -> None:
        self._frozen = True

    def get(self, job_type: str) -> JobHandler | None:
        """Get the handler for a job type, or None."""
        return self._handlers.get(job_type)

    def list_handlers(self) -> list[str]:
        """List all registered job types."""
        return list(self._handlers.keys())

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    async def execute(self, context: JobContext, timeout: float | None = None) -> JobResult:
        """
        Run the handler for ``context.job_type``.

        Handler exceptions and timeouts are converted into failed results;
        only cancellation propagates.

        Args:
            context: The job context.
            timeout: Optional limit on handler run time in seconds.

        Returns:
            JobResult from the handler.
        """
        handler = self.get(context.job_type)

        if handler is None:
            logger.error(
                f"No handler for job type: {context.job_type}",
                extra={"job_id": str(context.job_id)},
            )
            return JobResult(
                success=False,
                error=f"No handler registered for job type: {context.job_type}",
            )

        start = time.monotonic()
        try:
            if _is_async(handler):
                call = handler(context)
            else:
                call = asyncio.to_thread(handler, context)
            outcome = await asyncio.wait_for(call, timeout) if timeout else await call
        except TimeoutError:
            logger.warning(
                "Handler timed out",
                extra={"job_id": str(context.job_id), "timeout": timeout},
            )
            outcome = JobResult(success=False, error=f"Handler timed out after {timeout}s")
        except HandlerError as e:
            logger.warning(
                "Handler reported failure",
                extra={"job_id": str(context.job_id), "error": str(e)},
            )
            outcome = JobResult(success=False, error=str(e))
        except Exception as e:
            logger.exception(
                "Handler raised exception",
                extra={"job_id": str(context.job_id), "error": str(e)},
            )
            outcome = JobResult(success=False, error=f"Handler exception: {e!r}")

        if isinstance(outcome, JobResult):
            result = outcome
        else:
            result = JobResult(success=True, output=outcome)

        result.duration_ms = (time.monotonic() - start) * 1000
        return result


# ============================================================================
# Built-in job handlers
# ============================================================================


async def handle_echo(context: JobContext) -> JobResult:
    """
    Echo handler for testing.

    Simply returns the input payload as output.
    """
    logger.info(
        "Echo job executing",
        extra={"job_id": str(context.job_id), "attempt": context.attempt},
    )

    return JobResult(success=True, output={"echo": context.payload})


async def handle_sleep(context: JobContext) -> JobResult:
    """
    Sleep handler for testing delays and drain behaviour.

    Payload may contain:
    - duration_seconds: How long to sleep
    """
    duration = float(context.payload.get("duration_seconds", 1))

    try:
        await asyncio.wait_for(context.cancel_event.wait(), timeout=duration)
    except TimeoutError:
        return JobResult(success=True, output={"slept_for": duration})

    return JobResult(success=False, error="Cancelled before completion")


async def handle_failing_job(context: JobContext) -> JobResult:
    """Handler that always fails - for testing retry logic."""
    return JobResult(
        success=False,
        error=f"Intentional failure on attempt {context.attempt}",
    )


async def handle_random_failure(context: JobContext) -> JobResult:
    """
    Handler that randomly fails - for testing retry behavior.

    Payload may contain:
    - failure_rate: Probability of failure (0.0 to 1.0)
    """
    failure_rate = float(context.payload.get("failure_rate", 0.5))

    if random.random() < failure_rate:
        return JobResult(
            success=False,
            error=f"Random failure on attempt {context.attempt}",
        )

    return JobResult(success=True, output={"message": "Succeeded this time!"})


BUILTIN_HANDLERS: dict[str, JobHandler] = {
    "echo": handle_echo,
    "sleep": handle_sleep,
    "failing_job": handle_failing_job,
    "random_failure": handle_random_failure,
}


def register_builtin_handlers(registry: HandlerRegistry) -> HandlerRegistry:
    """Register the built-in diagnostic handlers on ``registry``."""
    for job_type, handler in BUILTIN_HANDLERS.items():
        registry.register(job_type, handler)
    return registry
