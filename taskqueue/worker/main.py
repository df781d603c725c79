"""
Worker pool for executing jobs.

A fixed number of slots pull job ids from the ready queue, lease them with a
compare-and-swap, run the registered handler and finalize the outcome. Handler
failures never escape a slot; they become retry or dead-letter transitions.
"""

import asyncio
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from uuid import UUID, uuid4

from taskqueue.config import Settings, get_settings
from taskqueue.constants import SPAN_ACQUIRE_LEASE, SPAN_EXECUTE_JOB, JobState
from taskqueue.dedup import DedupIndex
from taskqueue.errors import (
    ConflictError,
    InvariantViolationError,
    JobNotFoundError,
    LeaseExpiredError,
    ResourceClosedError,
)
from taskqueue.observability.logging import bind_context, clear_context, job_log_context
from taskqueue.observability.metrics import get_metrics
from taskqueue.observability.tracing import get_tracer
from taskqueue.queue import ReadyQueue
from taskqueue.retry import RetryManager
from taskqueue.scheduler.main import Scheduler
from taskqueue.store.base import JobStore
from taskqueue.types.job import Job, JobContext, JobResult
from taskqueue.utils import utcnow
from taskqueue.worker.handlers import HandlerRegistry

logger = logging.getLogger(__name__)


@dataclass
class InFlight:
    """A job currently leased and running in one of the pool's slots."""

    job: Job
    context: JobContext
    slot: asyncio.Task
    started: float = field(default_factory=time.monotonic)
    renewing: bool = True

    @property
    def lease_token(self) -> str:
        return self.job.lease_owner


class WorkerPool:
    """
    Bounded pool of concurrent job executors.

    Features:
    - Compare-and-swap leasing; losing a race is silent
    - Heartbeat to extend leases for long-running jobs
    - Drain with a deadline on shutdown
    - Retry and dead-letter handling through the RetryManager
    """

    def __init__(
        self,
        store: JobStore,
        ready_queue: ReadyQueue,
        registry: HandlerRegistry,
        scheduler: Scheduler,
        retry_manager: RetryManager,
        dedup: DedupIndex,
        settings: Settings | None = None,
        worker_id: str | None = None,
        on_fatal: Callable[[BaseException], None] | None = None,
    ):
        """
        Initialize the worker pool.

        Args:
            store: The job store.
            ready_queue: Source of due job ids.
            registry: Handlers by job type.
            scheduler: Re-tracks recurring jobs after success.
            retry_manager: Routes failed attempts.
            dedup: Released when a job succeeds.
            settings: Engine settings.
            worker_id: Lease owner identity. Defaults to hostname + PID.
            on_fatal: Called when the store reports an invariant violation.
        """
        settings = settings or get_settings()
        prefix = settings.worker_id_prefix or os.uname().nodename

        self.worker_id = worker_id or f"{prefix}-{os.getpid()}-{uuid4().hex[:6]}"
        self.concurrency = settings.worker_concurrency
        self.lease_duration = timedelta(seconds=settings.lease_duration_seconds)
        self.heartbeat_interval = settings.heartbeat_interval_seconds
        self.handler_timeout = settings.handler_timeout_seconds
        self.max_run_seconds = settings.max_run_seconds

        self._store = store
        self._ready_queue = ready_queue
        self._registry = registry
        self._scheduler = scheduler
        self._retry = retry_manager
        self._dedup = dedup
        self._on_fatal = on_fatal

        self._running = False
        self._slots: list[asyncio.Task] = []
        # Keyed by lease token; a job id can briefly appear twice after its lease was reaped
        self._current_jobs: dict[str, InFlight] = {}
        self._heartbeat_task: asyncio.Task | None = None
        self._metrics = get_metrics()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> list[UUID]:
        """Ids of jobs currently executing."""
        return [inflight.job.id for inflight in self._current_jobs.values()]

    def start(self) -> None:
        """Start the slots and the heartbeat."""
        if self._running:
            return
        logger.info(
            "Worker pool starting",
            extra={"worker_id": self.worker_id, "concurrency": self.concurrency},
        )
        self._running = True
        self._slots = [
            asyncio.create_task(self._slot_loop(index), name=f"taskqueue-slot-{index}")
            for index in range(self.concurrency)
        ]
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _slot_loop(self, index: int) -> None:
        bind_context(worker_id=self.worker_id, slot=index)
        while True:
            job_id = await self._ready_queue.get()
            if job_id is None:
                break

            try:
                await self.process(job_id)
            except ResourceClosedError:
                break
            except InvariantViolationError as e:
                logger.critical(
                    f"Invariant violation while processing job: {e}",
                    extra={"job_id": str(job_id)},
                )
                if self._on_fatal is not None:
                    self._on_fatal(e)
            except Exception as e:
                logger.exception(
                    f"Error in worker slot: {e}",
                    extra={"worker_id": self.worker_id, "slot": index},
                )

        logger.debug("Worker slot exited", extra={"slot": index})
        clear_context()

    async def process(self, job_id: UUID) -> bool:
        """
        Lease and execute one job.

        Returns:
            False if the lease could not be acquired (the id was stale or
            another consumer won the race).
        """
        job = await self._acquire_lease(job_id)
        if job is None:
            return False

        context = JobContext(
            job_id=job.id,
            job_type=job.job_type,
            attempt=job.attempt + 1,
            max_attempts=job.max_attempts,
            payload=dict(job.payload),
            lease_owner=job.lease_owner,
            lease_expires_at=job.lease_expires_at,
            scheduled_at=job.scheduled_at,
        )
        inflight = InFlight(job=job, context=context, slot=asyncio.current_task())
        self._current_jobs[inflight.lease_token] = inflight
        try:
            with (
                job_log_context(job.id, job.job_type, context.attempt),
                get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span,
            ):
                logger.info(
                    "Executing job",
                    extra={"job_id": str(job.id), "attempt": context.attempt},
                )
                span.set_attribute("job_id", str(job.id))
                span.set_attribute("job_type", job.job_type)
                span.set_attribute("attempt", context.attempt)

                result = await self._registry.execute(context, timeout=self.handler_timeout)
                span.set_attribute("success", result.success)

                await self._finalize(job, result)

        except LeaseExpiredError as e:
            logger.warning(str(e), extra={"job_id": str(job.id)})

        finally:
            self._current_jobs.pop(inflight.lease_token, None)

        return True

    def _new_lease_token(self) -> str:
        """Owner value unique to one lease, so a reaped lease can never be reused."""
        return f"{self.worker_id}:{uuid4().hex}"

    async def _acquire_lease(self, job_id: UUID) -> Job | None:
        now = utcnow()
        try:
            with get_tracer().start_as_current_span(SPAN_ACQUIRE_LEASE):
                job = await self._store.transition(
                    job_id,
                    JobState.PENDING,
                    JobState.LEASED,
                    {
                        "lease_owner": self._new_lease_token(),
                        "lease_expires_at": now + self.lease_duration,
                    },
                )
        except (ConflictError, JobNotFoundError):
            logger.debug("Discarded stale ready entry", extra={"job_id": str(job_id)})
            return None

        self._metrics.record_lease_acquired(self.worker_id)
        return job

    async def _finalize(self, job: Job, result: JobResult) -> Job:
        """
        Record the outcome of an attempt.

        Raises:
            LeaseExpiredError: If the lease was reaped before the outcome
                could be written.
        """
        now = utcnow()
        duration = (result.duration_ms or 0.0) / 1000

        try:
            if not result.success:
                updated = await self._retry.handle_failure(
                    job,
                    result.error or "Unknown error",
                    lease_owner=job.lease_owner,
                    now=now,
                )
            elif job.is_recurring:
                next_run = self._scheduler.next_run(job, now)
                updated = await self._store.transition(
                    job.id,
                    JobState.LEASED,
                    JobState.PENDING,
                    {
                        "attempt": 0,
                        "scheduled_at": next_run,
                        "run_count": job.run_count + 1,
                        "last_run_at": now,
                        "last_error": None,
                        "lease_owner": None,
                        "lease_expires_at": None,
                    },
                    lease_owner=job.lease_owner,
                )
                self._scheduler.schedule(job.id, next_run)
            else:
                updated = await self._store.transition(
                    job.id,
                    JobState.LEASED,
                    JobState.SUCCEEDED,
                    {
                        "attempt": job.attempt + 1,
                        "completed_at": now,
                        "last_error": None,
                        "lease_owner": None,
                        "lease_expires_at": None,
                    },
                    lease_owner=job.lease_owner,
                )
                if job.dedup_key:
                    self._dedup.release(job.dedup_key, job.id)
        except ConflictError as e:
            raise LeaseExpiredError(f"Lease on job {job.id} lost before completion") from e

        self._metrics.record_job_completed(
            job_type=job.job_type,
            state=updated.state.value,
            duration_seconds=duration,
        )

        if result.success:
            logger.info(
                "Job completed successfully",
                extra={
                    "job_id": str(job.id),
                    "duration": f"{duration:.2f}s",
                    "next_run": updated.scheduled_at.isoformat() if job.is_recurring else None,
                },
            )
        else:
            logger.warning(
                "Job failed",
                extra={
                    "job_id": str(job.id),
                    "error": result.error,
                    "state": updated.state.value,
                },
            )
        return updated

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on running jobs.

        This prevents jobs from being reclaimed by the reaper
        while they're still being executed. A job running longer than
        ``max_run_seconds`` is treated as hung: its lease is left to expire
        so the reaper re-queues it.
        """
        while self._running:
            try:
                await asyncio.sleep(self.heartbeat_interval)

                for inflight in list(self._current_jobs.values()):
                    if self._overran(inflight):
                        continue
                    await self._extend_lease(inflight)

            except asyncio.CancelledError:
                break
            except ResourceClosedError:
                break
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")

    def _overran(self, inflight: InFlight) -> bool:
        if not inflight.renewing:
            return True
        if self.max_run_seconds is None:
            return False
        if time.monotonic() - inflight.started < self.max_run_seconds:
            return False
        inflight.renewing = False
        logger.warning(
            "Job exceeded max run time, lease no longer renewed",
            extra={"job_id": str(inflight.job.id), "max_run_seconds": self.max_run_seconds},
        )
        return True

    async def _extend_lease(self, inflight: InFlight) -> bool:
        job_id = inflight.job.id
        try:
            await self._store.transition(
                job_id,
                JobState.LEASED,
                JobState.LEASED,
                {"lease_expires_at": utcnow() + self.lease_duration},
                lease_owner=inflight.lease_token,
            )
        except (ConflictError, JobNotFoundError):
            inflight.renewing = False
            logger.warning("Lease lost during heartbeat", extra={"job_id": str(job_id)})
            return False

        logger.debug("Extended lease", extra={"job_id": str(job_id)})
        return True

    async def drain(self, timeout: float) -> list[Job]:
        """
        Wait for the slots to finish the remaining ready jobs.

        The ready queue must already be closed, otherwise the slots never exit.

        Args:
            timeout: Seconds to wait.

        Returns:
            Jobs still executing when the deadline passed.
        """
        if not self._slots:
            return []

        _done, pending = await asyncio.wait(self._slots, timeout=timeout)
        if not pending:
            logger.info("Worker pool drained", extra={"worker_id": self.worker_id})
            return []

        stragglers = [inflight.job for inflight in self._current_jobs.values()]
        logger.warning(
            f"Drain deadline passed with {len(stragglers)} jobs still running",
            extra={"worker_id": self.worker_id},
        )
        return stragglers

    async def stop(self) -> None:
        """Signal cancellation to running handlers and stop every slot."""
        self._running = False

        for inflight in self._current_jobs.values():
            inflight.context.cancel_event.set()

        tasks = [task for task in self._slots if not task.done()]
        if self._heartbeat_task is not None:
            tasks.append(self._heartbeat_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._slots = []
        self._heartbeat_task = None
        logger.info("Worker pool stopped", extra={"worker_id": self.worker_id})
