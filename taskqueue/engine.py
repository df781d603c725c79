"""
Task queue engine.

Wires the job store, dedup index, scheduler, ready queue, worker pool, retry
manager, reaper and shutdown controller together and exposes the enqueue API.

Delivery is at-least-once: a job may execute more than once when a worker
crashes or its lease expires, so handlers must be idempotent.

Dedup policy is fixed per engine (``dedup_policy``): REJECT raises
DuplicateError for a second enqueue with an active key, COALESCE returns the
id of the job already holding the key. Missed recurring occurrences are
skipped by default (``missed_run_policy``).
"""

import asyncio
import logging
import random
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from taskqueue.config import Settings, get_settings
from taskqueue.constants import (
    SPAN_ENQUEUE_JOB,
    DedupPolicy,
    JobKind,
    JobState,
)
from taskqueue.dedup import DedupIndex
from taskqueue.deadletter import DeadLetterSink, LoggingDeadLetterSink
from taskqueue.errors import (
    AlreadyReservedError,
    AlreadyRunningError,
    ConflictError,
    DuplicateError,
    IntakeClosedError,
    InvalidScheduleError,
    UnknownJobTypeError,
)
from taskqueue.observability.metrics import get_metrics
from taskqueue.observability.tracing import get_tracer
from taskqueue.queue import ReadyQueue
from taskqueue.reaper.main import Reaper
from taskqueue.retry import RetryManager
from taskqueue.scheduler.cron import first_occurrence, validate_cron
from taskqueue.scheduler.main import Scheduler
from taskqueue.shutdown import ShutdownController
from taskqueue.store import create_store
from taskqueue.store.base import JobStore
from taskqueue.types.job import BackoffPolicy, Job, JobSnapshot
from taskqueue.utils import as_timedelta, ensure_utc, utcnow
from taskqueue.worker.handlers import HandlerRegistry, JobHandler
from taskqueue.worker.main import WorkerPool

logger = logging.getLogger(__name__)


class TaskQueue:
    """
    Durable task queue.

    Register handlers, ``await start()``, enqueue jobs, and ``await shutdown()``
    when done. Also usable as an async context manager.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: JobStore | None = None,
        dead_letter_sink: DeadLetterSink | None = None,
        registry: HandlerRegistry | None = None,
        worker_id: str | None = None,
        rng: random.Random | None = None,
    ):
        """
        Initialize the engine.

        Args:
            settings: Engine settings. Defaults to environment configuration.
            store: Job store. Built from ``store_backend`` on start if omitted.
            dead_letter_sink: Destination for dead-lettered jobs. Logs by default.
            registry: Handler registry. A fresh one if omitted.
            worker_id: Lease owner identity of this engine's worker pool.
            rng: Random source for backoff jitter.
        """
        self.settings = settings or get_settings()
        self.registry = registry or HandlerRegistry()
        self.dedup = DedupIndex(window_seconds=self.settings.dedup_window_seconds)
        self.ready_queue = ReadyQueue()
        self.dead_letter_sink = dead_letter_sink or LoggingDeadLetterSink()

        self._store = store
        self._worker_id = worker_id
        self._rng = rng
        self._started = False
        self._metrics = get_metrics()

        self.scheduler: Scheduler | None = None
        self.retry_manager: RetryManager | None = None
        self.reaper: Reaper | None = None
        self.worker_pool: WorkerPool | None = None
        self.shutdown_controller: ShutdownController | None = None

    @property
    def store(self) -> JobStore:
        self._ensure_started()
        return self._store

    @property
    def started(self) -> bool:
        return self._started

    @property
    def accepting(self) -> bool:
        return self._started and self.shutdown_controller.accepting

    # ------------------------------------------------------------------
    # Handler registration
    # ------------------------------------------------------------------

    def register_handler(self, job_type: str, handler: JobHandler | Any) -> JobHandler:
        """Register a handler for ``job_type``. Only allowed before start."""
        return self.registry.register(job_type, handler)

    def handler(self, job_type: str) -> Callable[[JobHandler], JobHandler]:
        """Decorator form of ``register_handler``."""
        return self.registry.handler(job_type)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Start the engine.

        Freezes the handler registry, rebuilds the dedup index and the
        scheduler from the store, then starts the worker pool, scheduler and
        reaper loops.
        """
        if self._started:
            return

        if self._store is None:
            self._store = await create_store(self.settings)

        self.scheduler = Scheduler(
            self._store, self.ready_queue, self.settings, on_fatal=self._on_fatal
        )
        self.retry_manager = RetryManager(
            self._store, self.scheduler, self.dedup, self.dead_letter_sink, rng=self._rng
        )
        self.reaper = Reaper(
            self._store, self.scheduler, self.retry_manager, self.settings, on_fatal=self._on_fatal
        )
        self.worker_pool = WorkerPool(
            self._store,
            self.ready_queue,
            self.registry,
            self.scheduler,
            self.retry_manager,
            self.dedup,
            self.settings,
            worker_id=self._worker_id,
            on_fatal=self._on_fatal,
        )
        self.shutdown_controller = ShutdownController(
            self._store,
            self.dedup,
            self.scheduler,
            self.ready_queue,
            self.worker_pool,
            self.reaper,
            self.settings,
        )

        self.registry.freeze()

        active = await self._store.list_by_state(
            JobState.PENDING, JobState.LEASED, JobState.RETRYING
        )
        reserved = self.dedup.rebuild(active)
        recovered = await self.scheduler.recover()

        self.worker_pool.start()
        self.shutdown_controller.attach(
            asyncio.create_task(self.scheduler.start(), name="taskqueue-scheduler"),
            asyncio.create_task(self.reaper.start(), name="taskqueue-reaper"),
        )
        self._started = True

        logger.info(
            "Task queue started",
            extra={
                "worker_id": self.worker_pool.worker_id,
                "handlers": self.registry.list_handlers(),
                "recovered": recovered,
                "dedup_keys": reserved,
            },
        )

    async def shutdown(self, drain_timeout: float | None = None) -> list[UUID]:
        """
        Stop accepting work, drain in-flight jobs and release resources.

        Returns:
            Ids of jobs force-expired because they outlived the drain deadline.
        """
        if not self._started:
            return []
        return await self.shutdown_controller.shutdown(drain_timeout)

    async def __aenter__(self) -> "TaskQueue":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Enqueue API
    # ------------------------------------------------------------------

    async def enqueue_immediate(
        self,
        job_type: str,
        payload: Mapping[str, Any] | None = None,
        dedup_key: str | None = None,
        *,
        max_attempts: int | None = None,
        backoff: BackoffPolicy | None = None,
    ) -> UUID:
        """
        Enqueue a job to run as soon as a worker is free.

        Returns:
            The job id (or the existing job's id under COALESCE).

        Raises:
            DuplicateError: Dedup key active under the REJECT policy.
            IntakeClosedError: The engine is shutting down.
        """
        now = utcnow()
        return await self._enqueue(
            job_type,
            payload,
            JobKind.IMMEDIATE,
            dedup_key=dedup_key,
            scheduled_at=now,
            max_attempts=max_attempts,
            backoff=backoff,
        )

    async def enqueue_delayed(
        self,
        job_type: str,
        payload: Mapping[str, Any] | None = None,
        delay: float | timedelta | None = None,
        dedup_key: str | None = None,
        *,
        run_at: datetime | None = None,
        max_attempts: int | None = None,
        backoff: BackoffPolicy | None = None,
    ) -> UUID:
        """
        Enqueue a job to run once after ``delay`` seconds (or at ``run_at``).

        Raises:
            InvalidScheduleError: Neither or both of delay and run_at given.
        """
        if (delay is None) == (run_at is None):
            raise InvalidScheduleError("Give exactly one of delay or run_at")

        scheduled_at = ensure_utc(run_at) if run_at is not None else utcnow() + as_timedelta(delay)
        return await self._enqueue(
            job_type,
            payload,
            JobKind.DELAYED,
            dedup_key=dedup_key,
            scheduled_at=scheduled_at,
            max_attempts=max_attempts,
            backoff=backoff,
        )

    async def enqueue_recurring(
        self,
        job_type: str,
        payload: Mapping[str, Any] | None = None,
        cron: str = "",
        dedup_key: str | None = None,
        *,
        max_attempts: int | None = None,
        backoff: BackoffPolicy | None = None,
    ) -> UUID:
        """
        Enqueue a job that runs on every occurrence of a 5-field cron rule.

        The job keeps its id across occurrences and never terminates on
        success; cancel it to stop the recurrence.

        Raises:
            InvalidScheduleError: The cron rule is invalid.
        """
        rule = validate_cron(cron)
        return await self._enqueue(
            job_type,
            payload,
            JobKind.RECURRING,
            dedup_key=dedup_key,
            scheduled_at=first_occurrence(rule, utcnow()),
            cron=rule,
            max_attempts=max_attempts,
            backoff=backoff,
        )

    async def _enqueue(
        self,
        job_type: str,
        payload: Mapping[str, Any] | None,
        kind: JobKind,
        *,
        dedup_key: str | None,
        scheduled_at: datetime,
        cron: str | None = None,
        max_attempts: int | None = None,
        backoff: BackoffPolicy | None = None,
    ) -> UUID:
        self._ensure_accepting()
        if job_type not in self.registry:
            raise UnknownJobTypeError(f"No handler registered for job type: {job_type}")

        max_attempts = self.settings.default_max_attempts if max_attempts is None else max_attempts
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

        job = Job(
            job_type=job_type,
            payload=dict(payload or {}),
            kind=kind,
            dedup_key=dedup_key,
            scheduled_at=scheduled_at,
            cron=cron,
            max_attempts=max_attempts,
            backoff=backoff or self._default_backoff(),
        )

        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            span.set_attribute("job_type", job_type)
            span.set_attribute("kind", kind.value)

            if dedup_key is not None:
                try:
                    self.dedup.reserve(dedup_key, job.id)
                except AlreadyReservedError as e:
                    return self._on_duplicate(e)

            try:
                await self._store.insert(job)
            except BaseException:
                if dedup_key is not None:
                    self.dedup.release(dedup_key, job.id)
                raise

            span.set_attribute("job_id", str(job.id))

        if kind == JobKind.IMMEDIATE:
            if not self.ready_queue.put(job.id):
                await self._withdraw(job)
                raise IntakeClosedError("Task queue is shutting down; new jobs are rejected")
        else:
            self.scheduler.schedule(job.id, scheduled_at)

        self._metrics.record_job_enqueued(job_type, kind.value)
        logger.info(
            "Enqueued job",
            extra={
                "job_id": str(job.id),
                "job_type": job_type,
                "kind": kind.value,
                "scheduled_at": scheduled_at.isoformat(),
                "dedup_key": dedup_key,
            },
        )
        return job.id

    def _on_duplicate(self, error: AlreadyReservedError) -> UUID:
        policy = self.settings.dedup_policy
        self._metrics.record_dedup_hit(policy.value)

        if policy == DedupPolicy.COALESCE:
            logger.info(
                "Coalesced duplicate enqueue",
                extra={"dedup_key": error.dedup_key, "job_id": str(error.existing_job_id)},
            )
            return error.existing_job_id

        raise DuplicateError(
            f"An active job already holds dedup key {error.dedup_key!r}",
            existing_job_id=error.existing_job_id,
            dedup_key=error.dedup_key,
        ) from error

    def _default_backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            strategy=self.settings.backoff_strategy,
            base_seconds=self.settings.backoff_base_seconds,
            max_seconds=self.settings.backoff_max_seconds,
            jitter_seconds=self.settings.backoff_jitter_seconds,
        )

    # ------------------------------------------------------------------
    # Cancel and status
    # ------------------------------------------------------------------

    async def cancel(self, job_id: UUID) -> bool:
        """
        Cancel a pending or retrying job.

        Returns:
            True if the job was cancelled, False if it had already finished
            (succeeded, dead-lettered or cancelled).

        Raises:
            JobNotFoundError: No such job.
            AlreadyRunningError: The job is leased by a worker.
        """
        self._ensure_started()

        while True:
            job = await self._store.get(job_id)
            if job.is_terminal:
                return False
            if job.state == JobState.LEASED:
                raise AlreadyRunningError(job_id)

            try:
                await self._store.transition(
                    job_id, job.state, JobState.CANCELLED, {"completed_at": utcnow()}
                )
            except ConflictError:
                # The state moved between the read and the swap; decide again
                continue

            self.scheduler.discard(job_id)
            if job.dedup_key:
                self.dedup.release(job.dedup_key, job_id)
            logger.info("Cancelled job", extra={"job_id": str(job_id)})
            return True

    async def _withdraw(self, job: Job) -> None:
        """Cancel a job inserted after the ready queue closed, so it never runs half-accepted."""
        await self._store.transition(
            job.id,
            JobState.PENDING,
            JobState.CANCELLED,
            {"completed_at": utcnow(), "last_error": "Enqueued while shutting down"},
        )
        if job.dedup_key:
            self.dedup.release(job.dedup_key, job.id)
        logger.warning("Withdrew job enqueued during shutdown", extra={"job_id": str(job.id)})

    async def status(self, job_id: UUID) -> JobSnapshot:
        """
        Snapshot of a job.

        Raises:
            JobNotFoundError: No such job.
        """
        self._ensure_started()
        return JobSnapshot.from_job(await self._store.get(job_id))

    async def wait_for(
        self,
        job_id: UUID,
        *states: JobState,
        timeout: float = 10.0,
        poll_interval: float = 0.01,
    ) -> JobSnapshot:
        """
        Poll until the job reaches one of ``states``.

        Raises:
            TimeoutError: The job did not get there in time.
        """
        async with asyncio.timeout(timeout):
            while True:
                snapshot = await self.status(job_id)
                if snapshot.state in states:
                    return snapshot
                await asyncio.sleep(poll_interval)

    async def stats(self) -> dict[str, Any]:
        """Counts by state plus queue and pool gauges."""
        self._ensure_started()
        return {
            "states": await self._store.count_by_state(),
            "ready": self.ready_queue.qsize(),
            "scheduled": self.scheduler.pending_count,
            "in_flight": len(self.worker_pool.in_flight),
            "accepting": self.accepting,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_started(self) -> None:
        if not self._started:
            raise RuntimeError("Task queue not started. Call start() first.")

    def _ensure_accepting(self) -> None:
        self._ensure_started()
        if not self.shutdown_controller.accepting:
            raise IntakeClosedError("Task queue is shutting down; new jobs are rejected")

    def _on_fatal(self, error: BaseException) -> None:
        logger.critical(f"Fatal engine error, halting intake: {error}")
        self.shutdown_controller.halt_intake(error)
