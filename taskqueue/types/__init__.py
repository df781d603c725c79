"""
Type definitions for the task-queue engine.
"""

from taskqueue.types.job import (
    BackoffPolicy,
    DeadLetterRecord,
    Job,
    JobContext,
    JobResult,
    JobSnapshot,
)

__all__ = [
    "BackoffPolicy",
    "DeadLetterRecord",
    "Job",
    "JobContext",
    "JobResult",
    "JobSnapshot",
]
