"""
Exception hierarchy for the task-queue engine.

Caller-facing errors (DuplicateError, JobNotFoundError, AlreadyRunningError,
IntakeClosedError) are raised from the enqueue API. ConflictError and
LeaseExpiredError are internal and recovered by the engine. Handler failures
never escape the worker pool; they become state transitions.
"""

from uuid import UUID


class TaskQueueError(Exception):
    """Base class for all engine errors."""


class DuplicateError(TaskQueueError):
    """A job with the same id or an active job with the same dedup key exists."""

    def __init__(
        self,
        message: str,
        existing_job_id: UUID | None = None,
        dedup_key: str | None = None,
    ):
        super().__init__(message)
        self.existing_job_id = existing_job_id
        self.dedup_key = dedup_key


class AlreadyReservedError(TaskQueueError):
    """The dedup key is held by another job."""

    def __init__(self, dedup_key: str, existing_job_id: UUID):
        super().__init__(f"Dedup key {dedup_key!r} is reserved by job {existing_job_id}")
        self.dedup_key = dedup_key
        self.existing_job_id = existing_job_id


class ConflictError(TaskQueueError):
    """A compare-and-swap transition lost against the current state."""

    def __init__(self, job_id: UUID, expected: str, actual: str, detail: str = ""):
        message = f"Job {job_id} is {actual}, expected {expected}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.job_id = job_id
        self.expected = expected
        self.actual = actual


class JobNotFoundError(TaskQueueError):
    """No job exists with the given id."""

    def __init__(self, job_id: UUID):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class AlreadyRunningError(TaskQueueError):
    """The job is leased by a worker and cannot be cancelled."""

    def __init__(self, job_id: UUID):
        super().__init__(f"Job {job_id} is already running")
        self.job_id = job_id


class HandlerError(TaskQueueError):
    """
    Raised by a job handler to fail the attempt with a clean message.

    Other exceptions fail the attempt too, but their repr becomes the error.
    """


class LeaseExpiredError(TaskQueueError):
    """A worker lost its lease before it could finalize the job."""


class IntakeClosedError(TaskQueueError):
    """The engine is shutting down and no longer accepts new jobs."""


class ResourceClosedError(TaskQueueError):
    """The job store or dedup index has been closed."""


class InvariantViolationError(TaskQueueError):
    """Engine-internal state is inconsistent. Fatal: intake must halt."""


class InvalidScheduleError(TaskQueueError, ValueError):
    """A delay or recurrence rule cannot be scheduled."""


class UnknownJobTypeError(TaskQueueError):
    """No handler is registered for the job type."""


class RegistryFrozenError(TaskQueueError):
    """Handlers cannot be registered once the engine has started."""
