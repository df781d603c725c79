"""
Scheduler tick loop.

A single periodic tick over the time wheel replaces per-job timers. Each tick
pops every entry whose run time has passed and hands the job id to the ready
queue. The scheduler never leases jobs; it only moves retrying jobs back to
pending once their backoff delay has elapsed.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from taskqueue.config import Settings, get_settings
from taskqueue.constants import SPAN_SCHEDULER_TICK, JobState
from taskqueue.errors import (
    ConflictError,
    InvariantViolationError,
    JobNotFoundError,
    ResourceClosedError,
)
from taskqueue.observability.metrics import get_metrics
from taskqueue.observability.tracing import get_tracer
from taskqueue.queue import ReadyQueue
from taskqueue.scheduler.cron import next_occurrence
from taskqueue.scheduler.timewheel import TimeWheel
from taskqueue.store.base import JobStore
from taskqueue.types.job import Job
from taskqueue.utils import utcnow

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Owns the time wheel of delayed, recurring and retrying jobs.

    Other components add and remove entries through ``schedule`` and
    ``discard``; only the scheduler touches the wheel itself.
    """

    def __init__(
        self,
        store: JobStore,
        ready_queue: ReadyQueue,
        settings: Settings | None = None,
        on_fatal: Callable[[BaseException], None] | None = None,
    ):
        """
        Initialize the scheduler.

        Args:
            store: The job store.
            ready_queue: Destination for due job ids.
            settings: Engine settings.
            on_fatal: Called when the store reports an invariant violation.
        """
        self._settings = settings or get_settings()
        self._store = store
        self._ready_queue = ready_queue
        self._on_fatal = on_fatal
        self._wheel = TimeWheel()
        self.interval = self._settings.scheduler_tick_seconds
        self._running = False
        self._promoting = True
        self._metrics = get_metrics()

    @property
    def promoting(self) -> bool:
        return self._promoting

    @property
    def pending_count(self) -> int:
        """Number of jobs tracked in the time wheel."""
        return len(self._wheel)

    def schedule(self, job_id: UUID, run_at: datetime) -> None:
        """Track ``job_id`` to be promoted at ``run_at``."""
        self._wheel.push(job_id, run_at)

    def discard(self, job_id: UUID) -> bool:
        """Stop tracking ``job_id``."""
        return self._wheel.discard(job_id)

    def is_scheduled(self, job_id: UUID) -> bool:
        return job_id in self._wheel

    def next_run(self, job: Job, now: datetime | None = None) -> datetime:
        """
        Next occurrence of a recurring job.

        Computed from the job's previous scheduled time, applying the
        configured missed-run policy.
        """
        now = now or utcnow()
        previous = job.scheduled_at or now
        return next_occurrence(job.cron, previous, now, self._settings.missed_run_policy)

    def pause_promotion(self) -> None:
        """Stop moving due jobs into the ready queue (shutdown phase 1)."""
        if self._promoting:
            self._promoting = False
            logger.info("Scheduler promotion paused")

    async def tick(self, now: datetime | None = None) -> int:
        """
        Promote every due job to the ready queue.

        Returns:
            Number of job ids handed to the ready queue.
        """
        if not self._promoting:
            return 0

        now = now or utcnow()
        due = self._wheel.pop_due(now)
        promoted = 0

        if due:
            with get_tracer().start_as_current_span(SPAN_SCHEDULER_TICK) as span:
                span.set_attribute("due_count", len(due))
                for job_id, _run_at in due:
                    if await self._promote(job_id):
                        promoted += 1

        self._metrics.update_queue_gauges(self._ready_queue.qsize(), len(self._wheel))

        if promoted:
            logger.debug(f"Promoted {promoted} due jobs", extra={"promoted": promoted})
        return promoted

    async def _promote(self, job_id: UUID) -> bool:
        try:
            job = await self._store.get(job_id)
        except JobNotFoundError:
            return False

        if job.state == JobState.RETRYING:
            try:
                await self._store.transition(job_id, JobState.RETRYING, JobState.PENDING)
            except ConflictError:
                # Cancelled between the read and the swap
                return False
        elif job.state != JobState.PENDING:
            return False

        if not self._ready_queue.put(job_id):
            logger.debug("Ready queue closed, job left pending", extra={"job_id": str(job_id)})
            return False
        return True

    async def recover(self) -> int:
        """
        Re-track pending and retrying jobs found in the store.

        Returns:
            Number of jobs scheduled.
        """
        jobs = await self._store.list_by_state(JobState.PENDING, JobState.RETRYING)
        for job in jobs:
            self.schedule(job.id, job.scheduled_at or job.created_at)
        if jobs:
            logger.info(f"Recovered {len(jobs)} scheduled jobs", extra={"count": len(jobs)})
        return len(jobs)

    async def start(self) -> None:
        """Run the tick loop until stopped."""
        logger.info(f"Scheduler starting with tick {self.interval}s")
        self._running = True

        while self._running:
            try:
                await self.tick()
            except ResourceClosedError:
                break
            except InvariantViolationError as e:
                logger.critical(f"Invariant violation in scheduler: {e}")
                if self._on_fatal is not None:
                    self._on_fatal(e)
                break
            except Exception as e:
                logger.exception(f"Error in scheduler loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Scheduler stopped")

    async def stop(self) -> None:
        """Stop the tick loop."""
        self._running = False
