"""
Deduplication index.

Maps a dedup key to the single job that currently holds it. The engine
reserves the key before inserting the job and releases it immediately if the
insert fails, so no reservation outlives a job that never existed. Keys are
released when the job reaches a terminal state. With a positive window the key
keeps blocking duplicates for that long after release.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from uuid import UUID

from taskqueue.errors import AlreadyReservedError, ResourceClosedError
from taskqueue.types.job import Job

logger = logging.getLogger(__name__)


@dataclass
class Reservation:
    job_id: UUID
    released_at: float | None = None


class DedupIndex:
    """
    In-process dedup index.

    Only the index mutates its reservations; other components go through
    ``reserve``/``release``/``lookup``.
    """

    def __init__(
        self,
        window_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the index.

        Args:
            window_seconds: How long a released key keeps rejecting duplicates.
            clock: Monotonic clock, injectable for tests.
        """
        self._window = window_seconds
        self._clock = clock
        self._reservations: dict[str, Reservation] = {}
        self._lock = threading.Lock()
        self._closed = False

    def reserve(self, dedup_key: str, job_id: UUID) -> None:
        """
        Reserve ``dedup_key`` for ``job_id``.

        Raises:
            AlreadyReservedError: If another job holds the key.
        """
        with self._lock:
            self._ensure_open()
            existing = self._live(dedup_key)
            if existing is not None and existing.job_id != job_id:
                raise AlreadyReservedError(dedup_key, existing.job_id)
            self._reservations[dedup_key] = Reservation(job_id=job_id)

    def release(self, dedup_key: str, job_id: UUID | None = None) -> bool:
        """
        Release ``dedup_key``.

        When ``job_id`` is given the key is only released if that job holds it.

        Returns:
            True if a reservation was released.
        """
        with self._lock:
            self._ensure_open()
            reservation = self._reservations.get(dedup_key)
            if reservation is None or reservation.released_at is not None:
                return False
            if job_id is not None and reservation.job_id != job_id:
                logger.warning(
                    "Dedup release by non-owner ignored",
                    extra={
                        "dedup_key": dedup_key,
                        "job_id": str(job_id),
                        "owner_job_id": str(reservation.job_id),
                    },
                )
                return False

            if self._window > 0:
                reservation.released_at = self._clock()
            else:
                del self._reservations[dedup_key]
            return True

    def lookup(self, dedup_key: str) -> UUID | None:
        """Job id currently holding ``dedup_key``, if any."""
        with self._lock:
            self._ensure_open()
            reservation = self._live(dedup_key)
            return reservation.job_id if reservation else None

    def rebuild(self, jobs: Iterable[Job]) -> int:
        """
        Re-reserve keys for active jobs loaded from the store.

        Returns:
            Number of keys reserved.
        """
        count = 0
        with self._lock:
            self._ensure_open()
            for job in jobs:
                if job.dedup_key and job.is_active:
                    self._reservations[job.dedup_key] = Reservation(job_id=job.id)
                    count += 1
        return count

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._reservations.clear()

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for key in list(self._reservations) if self._live(key) is not None)

    def _live(self, dedup_key: str) -> Reservation | None:
        reservation = self._reservations.get(dedup_key)
        if reservation is None:
            return None
        if reservation.released_at is None:
            return reservation
        if self._clock() - reservation.released_at < self._window:
            return reservation
        del self._reservations[dedup_key]
        return None

    def _ensure_open(self) -> None:
        if self._closed:
            raise ResourceClosedError("Dedup index is closed")
