"""
Job-related type definitions for internal use.
"""

import asyncio
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from taskqueue.constants import (
    ACTIVE_STATES,
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_MAX_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    TERMINAL_STATES,
    BackoffStrategy,
    JobKind,
    JobState,
)
from taskqueue.utils import utcnow


class BackoffPolicy(BaseModel):
    """
    Retry delay policy attached to each job.

    Linear delays grow as ``base * (attempt + 1)``; exponential delays as
    ``base * 2 ** attempt`` capped at ``max_seconds``. A positive
    ``jitter_seconds`` adds a uniform random offset in ``[0, jitter_seconds]``.
    """

    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_seconds: float = Field(default=DEFAULT_BACKOFF_BASE_SECONDS, ge=0)
    max_seconds: float = Field(default=DEFAULT_BACKOFF_MAX_SECONDS, ge=0)
    jitter_seconds: float = Field(default=0.0, ge=0)


@dataclass
class Job:
    """
    The durable job record.

    Owned by the job store; everything else holds copies or ids.
    ``scheduled_at`` is the next time the job is due: the absolute run time for
    delayed jobs, the next computed occurrence for recurring jobs, and the end
    of the backoff delay while retrying.
    """

    job_type: str
    payload: dict[str, Any]
    kind: JobKind = JobKind.IMMEDIATE
    id: UUID = field(default_factory=uuid4)
    state: JobState = JobState.PENDING
    dedup_key: str | None = None
    scheduled_at: datetime | None = None
    cron: str | None = None
    attempt: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    last_error: str | None = None
    run_count: int = 0
    last_run_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        """Pending, leased or retrying."""
        return self.state in ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_recurring(self) -> bool:
        return self.kind == JobKind.RECURRING

    def copy(self, **changes: Any) -> "Job":
        """Return a detached copy, optionally with changed fields."""
        changes.setdefault("payload", dict(self.payload))
        return replace(self, **changes)

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, type={self.job_type}, kind={self.kind}, "
            f"state={self.state}, attempt={self.attempt}/{self.max_attempts})"
        )


JOB_FIELDS: frozenset[str] = frozenset(f.name for f in fields(Job))

# Fields a transition may never rewrite
IMMUTABLE_JOB_FIELDS: frozenset[str] = frozenset({"id", "state", "kind", "created_at"})


class JobSnapshot(BaseModel):
    """Point-in-time view of a job, returned by ``status()``."""

    id: UUID
    job_type: str
    kind: JobKind
    state: JobState
    dedup_key: str | None
    payload: dict[str, Any]
    attempt: int
    max_attempts: int
    scheduled_at: datetime | None
    cron: str | None
    lease_owner: str | None
    lease_expires_at: datetime | None
    last_error: str | None
    run_count: int
    last_run_at: datetime | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    @classmethod
    def from_job(cls, job: Job) -> "JobSnapshot":
        return cls(
            id=job.id,
            job_type=job.job_type,
            kind=job.kind,
            state=job.state,
            dedup_key=job.dedup_key,
            payload=dict(job.payload),
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            scheduled_at=job.scheduled_at,
            cron=job.cron,
            lease_owner=job.lease_owner,
            lease_expires_at=job.lease_expires_at,
            last_error=job.last_error,
            run_count=job.run_count,
            last_run_at=job.last_run_at,
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
        )


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: Any = None
    error: str | None = None
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.

    ``attempt`` is 1-based for the attempt currently running. Handlers that run
    for a long time should check ``cancel_event``; it is set when the engine
    gives up waiting for them during shutdown.
    """

    job_id: UUID
    job_type: str
    attempt: int
    max_attempts: int
    payload: dict[str, Any]
    lease_owner: str
    lease_expires_at: datetime
    scheduled_at: datetime | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class DeadLetterRecord(BaseModel):
    """
    Record emitted to the dead-letter sink.
    Produced exactly once per job that exhausts its attempts.
    """

    job_id: UUID
    job_type: str
    payload: dict[str, Any]
    final_error: str | None
    attempts: int
    dead_lettered_at: datetime
