"""
Ready queue.

FIFO handoff of job ids that are due now, from the scheduler (and immediate
enqueues) to the worker pool. Holds ids only; the store keeps the bodies.
"""

import asyncio
from uuid import UUID


class ReadyQueue:
    """FIFO of due job ids, closable for drain-on-shutdown."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[UUID | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, job_id: UUID) -> bool:
        """
        Hand a due job id to the workers.

        Returns:
            False if the queue is closed and the id was not accepted.
        """
        if self._closed:
            return False
        self._queue.put_nowait(job_id)
        return True

    async def get(self) -> UUID | None:
        """
        Wait for the next job id.

        Returns:
            None once the queue is closed and drained.
        """
        if self._closed and self._queue.empty():
            return None
        job_id = await self._queue.get()
        if job_id is None:
            # Wake the next waiter too
            self._queue.put_nowait(None)
        return job_id

    def close(self) -> None:
        """Stop accepting ids. Already queued ids are still handed out."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def qsize(self) -> int:
        size = self._queue.qsize()
        return size - 1 if self._closed and size > 0 else size

    def __len__(self) -> int:
        return self.qsize()
