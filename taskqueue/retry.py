"""
Retry and backoff handling.

Decides what happens to a leased job whose handler failed: another attempt
after a backoff delay, or the dead-letter sink once the attempt budget is
spent. Recurring jobs follow the same rules for the occurrence that failed.
"""

import logging
import random
from datetime import datetime, timedelta

from taskqueue.constants import BackoffStrategy, JobState
from taskqueue.dedup import DedupIndex
from taskqueue.deadletter import DeadLetterSink
from taskqueue.observability.metrics import get_metrics
from taskqueue.scheduler.main import Scheduler
from taskqueue.store.base import JobStore
from taskqueue.types.job import BackoffPolicy, DeadLetterRecord, Job
from taskqueue.utils import utcnow

logger = logging.getLogger(__name__)


def compute_delay(
    policy: BackoffPolicy,
    attempt: int,
    rng: random.Random | None = None,
) -> float:
    """
    Backoff delay in seconds before the next attempt.

    Args:
        policy: The job's backoff policy.
        attempt: Attempts made before the one that just failed (0 for the first failure).
        rng: Random source for jitter.

    Returns:
        Delay in seconds.
    """
    if policy.strategy == BackoffStrategy.LINEAR:
        delay = policy.base_seconds * (attempt + 1)
    else:
        delay = min(policy.base_seconds * (2**attempt), policy.max_seconds)

    if policy.jitter_seconds > 0:
        delay += (rng or random).uniform(0, policy.jitter_seconds)

    return delay


class RetryManager:
    """
    Routes failed attempts to retry or dead-letter.

    Both paths start from a leased job and are guarded on the lease owner, so a
    worker whose lease was reaped cannot overwrite the job.
    """

    def __init__(
        self,
        store: JobStore,
        scheduler: Scheduler,
        dedup: DedupIndex,
        sink: DeadLetterSink,
        rng: random.Random | None = None,
    ):
        self._store = store
        self._scheduler = scheduler
        self._dedup = dedup
        self._sink = sink
        self._rng = rng or random.Random()
        self._metrics = get_metrics()

    def should_dead_letter(self, job: Job) -> bool:
        return job.attempt + 1 >= job.max_attempts

    async def handle_failure(
        self,
        job: Job,
        error: str,
        lease_owner: str | None = None,
        now: datetime | None = None,
    ) -> Job:
        """
        Retry or dead-letter a failed attempt.

        Args:
            job: The job as leased by the worker.
            error: Failure description.
            lease_owner: Lease token the caller must still hold.
            now: Current time.

        Returns:
            The updated job.

        Raises:
            ConflictError: If the lease was lost in the meantime.
        """
        if self.should_dead_letter(job):
            return await self.dead_letter(job, error, lease_owner=lease_owner, now=now)

        now = now or utcnow()
        delay = compute_delay(job.backoff, job.attempt, self._rng)
        run_at = now + timedelta(seconds=delay)

        updated = await self._store.transition(
            job.id,
            JobState.LEASED,
            JobState.RETRYING,
            {
                "attempt": job.attempt + 1,
                "scheduled_at": run_at,
                "last_error": error,
                "lease_owner": None,
                "lease_expires_at": None,
            },
            lease_owner=lease_owner,
        )
        self._scheduler.schedule(job.id, run_at)
        self._metrics.record_retry(job.job_type)

        logger.info(
            "Job queued for retry",
            extra={
                "job_id": str(job.id),
                "attempt": updated.attempt,
                "max_attempts": updated.max_attempts,
                "delay_seconds": round(delay, 3),
            },
        )
        return updated

    async def dead_letter(
        self,
        job: Job,
        error: str,
        lease_owner: str | None = None,
        now: datetime | None = None,
    ) -> Job:
        """
        Move a leased job to the dead-letter state and publish it.

        Raises:
            ConflictError: If the lease was lost in the meantime.
        """
        now = now or utcnow()
        updated = await self._store.transition(
            job.id,
            JobState.LEASED,
            JobState.DEAD_LETTERED,
            {
                "attempt": job.attempt + 1,
                "last_error": error,
                "completed_at": now,
                "lease_owner": None,
                "lease_expires_at": None,
            },
            lease_owner=lease_owner,
        )

        if job.dedup_key:
            self._dedup.release(job.dedup_key, job.id)
        self._metrics.record_dead_lettered(job.job_type)

        logger.warning(
            f"Job moved to dead letter after {updated.attempt} attempts",
            extra={"job_id": str(job.id), "error": error},
        )

        record = DeadLetterRecord(
            job_id=updated.id,
            job_type=updated.job_type,
            payload=updated.payload,
            final_error=error,
            attempts=updated.attempt,
            dead_lettered_at=now,
        )
        try:
            await self._sink.publish(record)
        except Exception:
            # The job is already terminal in the store; the record stays queryable there
            logger.exception("Dead-letter sink failed", extra={"job_id": str(job.id)})
        return updated
