"""
In-memory job store.

Keeps jobs in a dict guarded by an asyncio lock. Callers always receive copies,
so no component can mutate a job except through ``transition``.
"""

import asyncio
import logging
from collections import Counter
from collections.abc import Mapping
from datetime import datetime
from typing import Any
from uuid import UUID

from taskqueue.constants import SCHEDULABLE_STATES, JobState
from taskqueue.errors import ConflictError, DuplicateError, JobNotFoundError
from taskqueue.store.base import JobStore, sort_due
from taskqueue.types.job import Job
from taskqueue.utils import utcnow

logger = logging.getLogger(__name__)


class InMemoryJobStore(JobStore):
    """Job store backed by process memory."""

    def __init__(self) -> None:
        super().__init__()
        self._jobs: dict[UUID, Job] = {}
        self._lock = asyncio.Lock()

    async def insert(self, job: Job) -> UUID:
        self._ensure_open()
        self._check_attempts(job.id, job.attempt, job.max_attempts)
        async with self._lock:
            if job.id in self._jobs:
                raise DuplicateError(f"Job {job.id} already exists", existing_job_id=job.id)
            self._jobs[job.id] = job.copy()
        logger.debug("Inserted job", extra={"job_id": str(job.id), "kind": job.kind.value})
        return job.id

    async def get(self, job_id: UUID) -> Job:
        self._ensure_open()
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job.copy()

    async def transition(
        self,
        job_id: UUID,
        expected: JobState,
        new: JobState,
        fields: Mapping[str, Any] | None = None,
        *,
        lease_owner: str | None = None,
    ) -> Job:
        self._ensure_open()
        fields = dict(fields or {})
        self._check_transition(job_id, expected, new, fields)

        async with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            if current.state != expected:
                raise ConflictError(job_id, expected.value, current.state.value)
            if lease_owner is not None and current.lease_owner != lease_owner:
                raise ConflictError(
                    job_id,
                    expected.value,
                    current.state.value,
                    detail=f"lease held by {current.lease_owner}",
                )

            updated = current.copy(**{**fields, "state": new, "updated_at": utcnow()})
            self._check_attempts(job_id, updated.attempt, updated.max_attempts)
            self._jobs[job_id] = updated
            return updated.copy()

    async def list_due(self, before: datetime) -> list[UUID]:
        self._ensure_open()
        async with self._lock:
            due = [
                job
                for job in self._jobs.values()
                if job.state in SCHEDULABLE_STATES
                and (job.scheduled_at is None or job.scheduled_at <= before)
            ]
        return [job.id for job in sort_due(due)]

    async def list_expired_leases(self, now: datetime) -> list[Job]:
        self._ensure_open()
        async with self._lock:
            return [
                job.copy()
                for job in self._jobs.values()
                if job.state == JobState.LEASED
                and job.lease_expires_at is not None
                and job.lease_expires_at < now
            ]

    async def list_by_state(self, *states: JobState) -> list[Job]:
        self._ensure_open()
        async with self._lock:
            return [job.copy() for job in self._jobs.values() if job.state in states]

    async def count_by_state(self) -> dict[str, int]:
        self._ensure_open()
        async with self._lock:
            counts = Counter(job.state.value for job in self._jobs.values())
        return dict(counts)
