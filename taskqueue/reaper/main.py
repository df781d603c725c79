"""
Lease reaper for recovering expired job leases.

The reaper runs periodically to find leased jobs whose lease expired (the
worker crashed or hung) and returns them to pending with the attempt counter
incremented. This is what makes delivery at-least-once: the job may run again
on another worker, so handlers must be idempotent.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from taskqueue.config import Settings, get_settings
from taskqueue.constants import JobState
from taskqueue.errors import (
    ConflictError,
    InvariantViolationError,
    JobNotFoundError,
    ResourceClosedError,
)
from taskqueue.observability.metrics import get_metrics
from taskqueue.retry import RetryManager
from taskqueue.scheduler.main import Scheduler
from taskqueue.store.base import JobStore
from taskqueue.types.job import Job
from taskqueue.utils import utcnow

logger = logging.getLogger(__name__)


class Reaper:
    """
    Lease reaper that recovers expired job leases.

    Runs periodically to:
    1. Find jobs in LEASED state with an expired lease
    2. Return them to PENDING with attempt + 1, due immediately
    3. Dead-letter them instead when that was their last attempt
    """

    def __init__(
        self,
        store: JobStore,
        scheduler: Scheduler,
        retry_manager: RetryManager,
        settings: Settings | None = None,
        on_fatal: Callable[[BaseException], None] | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            store: The job store.
            scheduler: Scheduler that re-tracks recovered jobs.
            retry_manager: Used to dead-letter jobs out of attempts.
            settings: Engine settings; the interval defaults to the scheduler tick.
            on_fatal: Called when the store reports an invariant violation.
        """
        settings = settings or get_settings()
        self.interval = settings.effective_reaper_interval
        self._store = store
        self._scheduler = scheduler
        self._retry = retry_manager
        self._on_fatal = on_fatal
        self._running = False
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._running = True

        while self._running:
            try:
                recovered = await self.run_once()

                if recovered > 0:
                    logger.info(f"Recovered {recovered} expired leases")

            except ResourceClosedError:
                break
            except InvariantViolationError as e:
                logger.critical(f"Invariant violation in reaper: {e}")
                if self._on_fatal is not None:
                    self._on_fatal(e)
                break
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        self._running = False

    async def run_once(self, now: datetime | None = None) -> int:
        """
        Sweep once for expired leases.

        Returns:
            Number of jobs recovered.
        """
        now = now or utcnow()
        expired = await self._store.list_expired_leases(now)

        recovered = 0
        for job in expired:
            if await self.expire(job, reason="Lease expired", now=now) is not None:
                recovered += 1
        return recovered

    async def expire(
        self,
        job: Job,
        reason: str = "Lease expired",
        now: datetime | None = None,
    ) -> Job | None:
        """
        Treat a leased job as if its worker crashed.

        Returns:
            The updated job, or None if the job was finalized first.
        """
        now = now or utcnow()
        try:
            if self._retry.should_dead_letter(job):
                updated = await self._retry.dead_letter(
                    job, reason, lease_owner=job.lease_owner, now=now
                )
            else:
                updated = await self._store.transition(
                    job.id,
                    JobState.LEASED,
                    JobState.PENDING,
                    {
                        "attempt": job.attempt + 1,
                        "scheduled_at": now,
                        "last_error": reason,
                        "lease_owner": None,
                        "lease_expires_at": None,
                    },
                    lease_owner=job.lease_owner,
                )
                self._scheduler.schedule(job.id, now)
        except (ConflictError, JobNotFoundError):
            # The worker finalized the job before the sweep got to it
            return None

        self._metrics.record_lease_expired()
        logger.warning(
            "Lease expired",
            extra={
                "job_id": str(job.id),
                "lease_owner": job.lease_owner,
                "attempt": updated.attempt,
                "state": updated.state.value,
            },
        )
        return updated
