"""
Dead-letter sinks.

Every job that exhausts its attempts is published exactly once to the
configured sink. Where the records end up (a queue, a table, a log) is up to
the sink.
"""

import asyncio
from typing import Protocol, runtime_checkable

from taskqueue.observability.logging import get_logger
from taskqueue.types.job import DeadLetterRecord


@runtime_checkable
class DeadLetterSink(Protocol):
    """Destination for dead-lettered jobs."""

    async def publish(self, record: DeadLetterRecord) -> None: ...


class LoggingDeadLetterSink:
    """Writes dead-letter records to the structured log."""

    def __init__(self, logger_name: str = "taskqueue.deadletter"):
        self._logger = get_logger(logger_name)

    async def publish(self, record: DeadLetterRecord) -> None:
        self._logger.error(
            "Job dead-lettered",
            job_id=str(record.job_id),
            job_type=record.job_type,
            attempts=record.attempts,
            final_error=record.final_error,
        )


class InMemoryDeadLetterSink:
    """Keeps dead-letter records in memory for inspection."""

    def __init__(self) -> None:
        self.records: list[DeadLetterRecord] = []
        self._event = asyncio.Event()

    async def publish(self, record: DeadLetterRecord) -> None:
        self.records.append(record)
        self._event.set()

    async def wait_for(self, count: int = 1, timeout: float = 5.0) -> list[DeadLetterRecord]:
        """Wait until at least ``count`` records were published."""
        async with asyncio.timeout(timeout):
            while len(self.records) < count:
                self._event.clear()
                await self._event.wait()
        return list(self.records)

    def __len__(self) -> int:
        return len(self.records)
