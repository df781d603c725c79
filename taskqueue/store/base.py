"""
Job store interface.

The store is the single source of truth for job state. Every other component
reads through it and mutates only via ``transition``, a compare-and-swap on the
job's state. A concrete backend only has to satisfy this contract.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from taskqueue.constants import ALLOWED_TRANSITIONS, JobState
from taskqueue.errors import InvariantViolationError, ResourceClosedError
from taskqueue.types.job import IMMUTABLE_JOB_FIELDS, JOB_FIELDS, Job


class JobStore(ABC):
    """Abstract durable job store."""

    def __init__(self) -> None:
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    async def insert(self, job: Job) -> UUID:
        """
        Persist a new job.

        Raises:
            DuplicateError: If a job with the same id already exists.
        """

    @abstractmethod
    async def get(self, job_id: UUID) -> Job:
        """
        Load a copy of a job.

        Raises:
            JobNotFoundError: If the job does not exist.
        """

    @abstractmethod
    async def transition(
        self,
        job_id: UUID,
        expected: JobState,
        new: JobState,
        fields: Mapping[str, Any] | None = None,
        *,
        lease_owner: str | None = None,
    ) -> Job:
        """
        Compare-and-swap the job's state, applying ``fields`` on success.

        When ``lease_owner`` is given the current lease owner must match too.

        Returns:
            A copy of the updated job.

        Raises:
            JobNotFoundError: If the job does not exist.
            ConflictError: If the current state (or owner) does not match.
            InvariantViolationError: If the edge is not part of the state
                machine or the write would push attempt past max_attempts.
        """

    @abstractmethod
    async def list_due(self, before: datetime) -> list[UUID]:
        """Ids of pending or retrying jobs due at or before ``before``, oldest first."""

    @abstractmethod
    async def list_expired_leases(self, now: datetime) -> list[Job]:
        """Leased jobs whose lease expired before ``now``."""

    @abstractmethod
    async def list_by_state(self, *states: JobState) -> list[Job]:
        """All jobs currently in any of ``states``."""

    @abstractmethod
    async def count_by_state(self) -> dict[str, int]:
        """Number of jobs per state."""

    async def close(self) -> None:
        """Release the store. Every later call raises ResourceClosedError."""
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise ResourceClosedError("Job store is closed")

    @staticmethod
    def _check_transition(
        job_id: UUID,
        expected: JobState,
        new: JobState,
        fields: Mapping[str, Any],
    ) -> None:
        if new not in ALLOWED_TRANSITIONS[expected]:
            raise InvariantViolationError(
                f"Illegal transition {expected} -> {new} for job {job_id}"
            )
        unknown = set(fields) - JOB_FIELDS
        if unknown:
            raise InvariantViolationError(f"Unknown job fields: {sorted(unknown)}")
        immutable = set(fields) & IMMUTABLE_JOB_FIELDS
        if immutable:
            raise InvariantViolationError(
                f"Fields {sorted(immutable)} cannot be changed by a transition"
            )

    @staticmethod
    def _check_attempts(job_id: UUID, attempt: int, max_attempts: int) -> None:
        if attempt < 0 or attempt > max_attempts:
            raise InvariantViolationError(
                f"Job {job_id} attempt {attempt} outside [0, {max_attempts}]"
            )

    async def __aenter__(self) -> "JobStore":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


def sort_due(jobs: Sequence[Job]) -> list[Job]:
    """Order jobs by due time, then creation time."""
    return sorted(jobs, key=lambda job: (job.scheduled_at or job.created_at, job.created_at))
