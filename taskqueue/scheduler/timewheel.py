"""
Time-ordered structure of scheduled job ids.

A binary heap keyed by ``(run_at, sequence)``. Rescheduling or discarding a job
invalidates its old heap entry lazily instead of searching the heap, so every
operation stays O(log n).
"""

import heapq
import itertools
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID


@dataclass(order=True)
class _Entry:
    run_at: datetime
    sequence: int
    job_id: UUID = field(compare=False)
    valid: bool = field(default=True, compare=False)


class TimeWheel:
    """Min-heap of job ids ordered by next run time, one live entry per job."""

    def __init__(self) -> None:
        self._heap: list[_Entry] = []
        self._entries: dict[UUID, _Entry] = {}
        self._counter = itertools.count()

    def push(self, job_id: UUID, run_at: datetime) -> None:
        """Track ``job_id`` at ``run_at``, replacing any earlier entry."""
        self.discard(job_id)
        entry = _Entry(run_at=run_at, sequence=next(self._counter), job_id=job_id)
        self._entries[job_id] = entry
        heapq.heappush(self._heap, entry)

    def discard(self, job_id: UUID) -> bool:
        """Stop tracking ``job_id``. Returns True if it was tracked."""
        entry = self._entries.pop(job_id, None)
        if entry is None:
            return False
        entry.valid = False
        return True

    def pop_due(self, now: datetime) -> list[tuple[UUID, datetime]]:
        """Remove and return every entry with ``run_at <= now``, earliest first."""
        due: list[tuple[UUID, datetime]] = []
        while self._heap and self._heap[0].run_at <= now:
            entry = heapq.heappop(self._heap)
            if not entry.valid:
                continue
            del self._entries[entry.job_id]
            due.append((entry.job_id, entry.run_at))
        return due

    def peek(self) -> datetime | None:
        """Earliest live run time, if any."""
        while self._heap and not self._heap[0].valid:
            heapq.heappop(self._heap)
        return self._heap[0].run_at if self._heap else None

    def run_at(self, job_id: UUID) -> datetime | None:
        entry = self._entries.get(job_id)
        return entry.run_at if entry else None

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
