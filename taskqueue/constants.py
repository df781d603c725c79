"""
Engine constants.
Centralized location for the job state machine, policy enums and metric names.
"""

from enum import StrEnum


class JobKind(StrEnum):
    """How a job is scheduled."""

    IMMEDIATE = "immediate"
    DELAYED = "delayed"
    RECURRING = "recurring"


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> LEASED (worker acquired the lease)
    - PENDING -> CANCELLED
    - LEASED -> LEASED (lease heartbeat)
    - LEASED -> SUCCEEDED (success, non-recurring)
    - LEASED -> PENDING (lease expired, or next recurring occurrence)
    - LEASED -> RETRYING (failure with attempts left)
    - LEASED -> DEAD_LETTERED (attempts exhausted)
    - RETRYING -> PENDING (backoff delay elapsed)
    - RETRYING -> CANCELLED
    """

    PENDING = "pending"
    LEASED = "leased"
    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"


class BackoffStrategy(StrEnum):
    """Retry delay growth."""

    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class DedupPolicy(StrEnum):
    """What an enqueue does when its dedup key is already active."""

    REJECT = "reject"
    COALESCE = "coalesce"


class MissedRunPolicy(StrEnum):
    """What a recurring job does with occurrences that passed while it ran."""

    SKIP = "skip"
    CATCH_UP = "catch_up"


ACTIVE_STATES: frozenset[JobState] = frozenset(
    {JobState.PENDING, JobState.LEASED, JobState.RETRYING}
)

TERMINAL_STATES: frozenset[JobState] = frozenset(
    {JobState.SUCCEEDED, JobState.DEAD_LETTERED, JobState.CANCELLED}
)

# States the scheduler tracks in its time wheel
SCHEDULABLE_STATES: frozenset[JobState] = frozenset(
    {JobState.PENDING, JobState.RETRYING}
)

ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.LEASED, JobState.CANCELLED}),
    JobState.LEASED: frozenset(
        {
            JobState.LEASED,
            JobState.SUCCEEDED,
            JobState.PENDING,
            JobState.RETRYING,
            JobState.DEAD_LETTERED,
        }
    ),
    JobState.RETRYING: frozenset({JobState.PENDING, JobState.CANCELLED}),
    JobState.SUCCEEDED: frozenset(),
    JobState.DEAD_LETTERED: frozenset(),
    JobState.CANCELLED: frozenset(),
}

# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_LEASE_DURATION_SECONDS = 30.0
DEFAULT_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_BACKOFF_MAX_SECONDS = 300.0

# Metrics names
METRIC_READY_QUEUE_DEPTH = "taskqueue_ready_queue_depth"
METRIC_SCHEDULED_JOBS = "taskqueue_scheduled_jobs"
METRIC_JOBS_ENQUEUED = "taskqueue_jobs_enqueued_total"
METRIC_JOBS_COMPLETED = "taskqueue_jobs_completed_total"
METRIC_JOB_DURATION = "taskqueue_job_duration_seconds"
METRIC_JOB_RETRIES = "taskqueue_job_retries_total"
METRIC_DEAD_LETTERED = "taskqueue_dead_lettered_total"
METRIC_DEDUP_HITS = "taskqueue_dedup_hits_total"
METRIC_LEASE_EXPIRED = "taskqueue_lease_expired_total"
METRIC_LEASE_ACQUIRED = "taskqueue_lease_acquired_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_ACQUIRE_LEASE = "acquire_lease"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_SCHEDULER_TICK = "scheduler_tick"
