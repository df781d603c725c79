"""
Integration tests for the task queue engine.
"""

import asyncio
import time
from datetime import timedelta

import pytest

from taskqueue.constants import DedupPolicy, JobKind, JobState
from taskqueue.deadletter import InMemoryDeadLetterSink
from taskqueue.errors import (
    AlreadyRunningError,
    ConflictError,
    DuplicateError,
    InvalidScheduleError,
    JobNotFoundError,
    RegistryFrozenError,
    UnknownJobTypeError,
)
from taskqueue.store import InMemoryJobStore
from taskqueue.types.job import Job, JobContext, JobResult
from taskqueue.utils import utcnow
from taskqueue.worker import register_builtin_handlers


async def wait_until(predicate, timeout: float = 5.0) -> None:
    async with asyncio.timeout(timeout):
        while not await predicate():
            await asyncio.sleep(0.01)


class RacingCancelStore(InMemoryJobStore):
    """Store where the first few cancel swaps lose to a concurrent writer."""

    def __init__(self, losses: int):
        super().__init__()
        self.losses = losses

    async def transition(self, job_id, expected, new, fields=None, *, lease_owner=None):
        if new == JobState.CANCELLED and self.losses > 0:
            self.losses -= 1
            raise ConflictError(job_id, expected.value, expected.value, detail="concurrent writer")
        return await super().transition(job_id, expected, new, fields, lease_owner=lease_owner)


class TestEnqueue:
    """Tests for the enqueue API."""

    async def test_immediate_job_succeeds(self, make_engine):
        engine = make_engine()
        register_builtin_handlers(engine.registry)
        await engine.start()

        job_id = await engine.enqueue_immediate("echo", {"message": "hi"})
        snapshot = await engine.wait_for(job_id, JobState.SUCCEEDED)

        assert snapshot.kind == JobKind.IMMEDIATE
        assert snapshot.attempt == 1
        assert snapshot.completed_at is not None
        assert snapshot.lease_owner is None

    async def test_delayed_job_waits_for_its_time(self, make_engine):
        """Test a delayed job is pending before its delay and succeeds after."""
        engine = make_engine()
        register_builtin_handlers(engine.registry)
        await engine.start()

        job_id = await engine.enqueue_delayed("echo", {}, delay=0.3)
        await asyncio.sleep(0.1)

        assert (await engine.status(job_id)).state == JobState.PENDING

        snapshot = await engine.wait_for(job_id, JobState.SUCCEEDED)
        assert snapshot.completed_at >= snapshot.scheduled_at

    async def test_delayed_requires_exactly_one_of_delay_or_run_at(self, make_engine):
        engine = make_engine()
        register_builtin_handlers(engine.registry)
        await engine.start()

        with pytest.raises(InvalidScheduleError):
            await engine.enqueue_delayed("echo", {})
        with pytest.raises(InvalidScheduleError):
            await engine.enqueue_delayed("echo", {}, delay=1, run_at=utcnow())
        with pytest.raises(InvalidScheduleError):
            await engine.enqueue_delayed("echo", {}, delay=-1)

    async def test_run_at_in_the_past_runs_now(self, make_engine):
        engine = make_engine()
        register_builtin_handlers(engine.registry)
        await engine.start()

        job_id = await engine.enqueue_delayed("echo", {}, run_at=utcnow() - timedelta(hours=1))

        await engine.wait_for(job_id, JobState.SUCCEEDED)

    async def test_unknown_job_type_rejected(self, make_engine):
        engine = make_engine()
        await engine.start()

        with pytest.raises(UnknownJobTypeError):
            await engine.enqueue_immediate("nope", {})

    async def test_invalid_max_attempts_rejected(self, make_engine):
        engine = make_engine()
        register_builtin_handlers(engine.registry)
        await engine.start()

        with pytest.raises(ValueError):
            await engine.enqueue_immediate("echo", {}, max_attempts=0)

    async def test_invalid_cron_rejected(self, make_engine):
        engine = make_engine()
        register_builtin_handlers(engine.registry)
        await engine.start()

        with pytest.raises(InvalidScheduleError):
            await engine.enqueue_recurring("echo", {}, cron="every minute")

    async def test_engine_must_be_started(self, make_engine):
        engine = make_engine()
        register_builtin_handlers(engine.registry)

        with pytest.raises(RuntimeError, match="not started"):
            await engine.enqueue_immediate("echo", {})

    async def test_registry_frozen_after_start(self, make_engine):
        engine = make_engine()
        await engine.start()

        with pytest.raises(RegistryFrozenError):
            engine.register_handler("late", lambda context: None)


class TestRetries:
    """Tests for retry and dead-letter behaviour."""

    async def test_failing_job_dead_lettered_after_max_attempts(
        self,
        make_engine,
        dead_letters: InMemoryDeadLetterSink,
    ):
        """Test exactly max_attempts runs at increasing intervals, then one DLQ record."""
        engine = make_engine()
        started: list[float] = []

        @engine.handler("always_fails")
        async def always_fails(context: JobContext) -> JobResult:
            started.append(time.monotonic())
            return JobResult(success=False, error=f"boom {context.attempt}")

        await engine.start()

        job_id = await engine.enqueue_immediate("always_fails", {"n": 1}, max_attempts=3)
        snapshot = await engine.wait_for(job_id, JobState.DEAD_LETTERED)
        records = await dead_letters.wait_for(1)

        assert len(started) == 3
        first_gap = started[1] - started[0]
        second_gap = started[2] - started[1]
        assert first_gap >= 0.05
        assert second_gap > first_gap

        assert snapshot.attempt == 3
        assert snapshot.last_error == "boom 3"
        assert len(records) == 1
        assert records[0].job_id == job_id
        assert records[0].attempts == 3
        assert records[0].payload == {"n": 1}

        await asyncio.sleep(0.1)
        assert len(dead_letters) == 1

    async def test_job_succeeds_after_a_failure(self, make_engine):
        engine = make_engine()

        @engine.handler("flaky")
        async def flaky(context: JobContext) -> JobResult:
            if context.attempt == 1:
                return JobResult(success=False, error="first try")
            return JobResult(success=True)

        await engine.start()

        job_id = await engine.enqueue_immediate("flaky", {})
        snapshot = await engine.wait_for(job_id, JobState.SUCCEEDED)

        assert snapshot.attempt == 2
        assert snapshot.last_error is None

    async def test_handler_exception_is_a_failure(self, make_engine):
        engine = make_engine()

        @engine.handler("raises")
        def raises(context: JobContext) -> None:
            raise RuntimeError("handler blew up")

        await engine.start()

        job_id = await engine.enqueue_immediate("raises", {}, max_attempts=1)
        snapshot = await engine.wait_for(job_id, JobState.DEAD_LETTERED)

        assert "handler blew up" in snapshot.last_error
        assert snapshot.attempt == 1


class TestDedup:
    """Tests for deduplication."""

    async def test_reject_policy_raises(self, make_engine):
        engine = make_engine(dedup_policy=DedupPolicy.REJECT)
        register_builtin_handlers(engine.registry)
        await engine.start()

        first = await engine.enqueue_delayed("echo", {}, delay=60, dedup_key="report")

        with pytest.raises(DuplicateError) as exc_info:
            await engine.enqueue_immediate("echo", {}, dedup_key="report")

        assert exc_info.value.existing_job_id == first

    async def test_coalesce_policy_returns_existing_id(self, make_engine):
        engine = make_engine(dedup_policy=DedupPolicy.COALESCE)
        register_builtin_handlers(engine.registry)
        await engine.start()

        first = await engine.enqueue_delayed("echo", {}, delay=60, dedup_key="report")
        second = await engine.enqueue_delayed("echo", {}, delay=60, dedup_key="report")

        assert second == first
        assert (await engine.stats())["states"] == {"pending": 1}

    async def test_key_released_after_success(self, make_engine):
        engine = make_engine()
        register_builtin_handlers(engine.registry)
        await engine.start()

        first = await engine.enqueue_immediate("echo", {}, dedup_key="once")
        await engine.wait_for(first, JobState.SUCCEEDED)

        second = await engine.enqueue_immediate("echo", {}, dedup_key="once")

        assert second != first
        await engine.wait_for(second, JobState.SUCCEEDED)

    async def test_key_released_after_cancel(self, make_engine):
        engine = make_engine()
        register_builtin_handlers(engine.registry)
        await engine.start()

        first = await engine.enqueue_delayed("echo", {}, delay=60, dedup_key="once")
        assert await engine.cancel(first) is True

        second = await engine.enqueue_delayed("echo", {}, delay=60, dedup_key="once")
        assert second != first


class TestCancel:
    """Tests for cancellation."""

    async def test_cancel_pending_job(self, make_engine):
        engine = make_engine()
        register_builtin_handlers(engine.registry)
        await engine.start()

        job_id = await engine.enqueue_delayed("echo", {}, delay=60)

        assert await engine.cancel(job_id) is True
        snapshot = await engine.status(job_id)
        assert snapshot.state == JobState.CANCELLED
        assert not engine.scheduler.is_scheduled(job_id)

    async def test_cancel_terminal_job_returns_false(self, make_engine):
        engine = make_engine()
        register_builtin_handlers(engine.registry)
        await engine.start()

        job_id = await engine.enqueue_immediate("echo", {})
        await engine.wait_for(job_id, JobState.SUCCEEDED)

        assert await engine.cancel(job_id) is False
        assert (await engine.status(job_id)).state == JobState.SUCCEEDED

    async def test_cancel_running_job_raises(self, make_engine):
        engine = make_engine()
        register_builtin_handlers(engine.registry)
        await engine.start()

        job_id = await engine.enqueue_immediate("sleep", {"duration_seconds": 5})
        await engine.wait_for(job_id, JobState.LEASED)

        with pytest.raises(AlreadyRunningError):
            await engine.cancel(job_id)

    async def test_cancel_unknown_job_raises(self, make_engine):
        engine = make_engine()
        await engine.start()

        with pytest.raises(JobNotFoundError):
            await engine.cancel(Job(job_type="echo", payload={}).id)

    async def test_cancel_retries_lost_races(self, make_engine):
        store = RacingCancelStore(losses=8)
        engine = make_engine(store=store)
        register_builtin_handlers(engine.registry)
        await engine.start()

        job_id = await engine.enqueue_delayed("echo", {}, delay=60)

        assert await engine.cancel(job_id) is True
        assert store.losses == 0
        assert (await engine.status(job_id)).state == JobState.CANCELLED

    async def test_cancel_recurring_job_stops_recurrence(self, make_engine):
        engine = make_engine()
        register_builtin_handlers(engine.registry)
        await engine.start()

        job_id = await engine.enqueue_recurring("echo", {}, cron="*/5 * * * *")

        assert await engine.cancel(job_id) is True
        assert not engine.scheduler.is_scheduled(job_id)


class TestRecurring:
    """Tests for cron-scheduled jobs."""

    async def test_recurring_job_reschedules_after_each_run(self, make_engine):
        engine = make_engine()
        register_builtin_handlers(engine.registry)
        await engine.start()

        job_id = await engine.enqueue_recurring("echo", {"report": "daily"}, cron="* * * * *")
        first = await engine.status(job_id)

        assert first.kind == JobKind.RECURRING
        assert first.scheduled_at > utcnow()
        assert engine.scheduler.is_scheduled(job_id)

        # Fast-forward the wheel to the first occurrence
        await engine.scheduler.tick(first.scheduled_at)

        async def ran_once() -> bool:
            return (await engine.status(job_id)).run_count == 1

        await wait_until(ran_once)

        snapshot = await engine.status(job_id)
        assert snapshot.state == JobState.PENDING
        assert snapshot.attempt == 0
        assert snapshot.scheduled_at > first.scheduled_at
        assert snapshot.last_run_at is not None
        assert engine.scheduler.is_scheduled(job_id)


class TestLeaseRecovery:
    """Tests for at-least-once delivery through lease expiry."""

    async def test_expired_lease_is_rerun(self, make_engine):
        """Test a job leased by a crashed worker runs again with attempt incremented."""
        store = InMemoryJobStore()
        job = Job(
            job_type="echo",
            payload={},
            state=JobState.LEASED,
            lease_owner="crashed-worker",
            lease_expires_at=utcnow() - timedelta(seconds=1),
        )
        await store.insert(job)

        engine = make_engine(store=store)
        register_builtin_handlers(engine.registry)
        await engine.start()

        snapshot = await engine.wait_for(job.id, JobState.SUCCEEDED)

        assert snapshot.attempt == 2
        assert snapshot.lease_owner is None


class TestSqlBackend:
    """Tests running the engine on the SQL store."""

    async def test_jobs_survive_restart(self, make_engine, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"

        first = make_engine(store_backend="sql", database_url=url)
        register_builtin_handlers(first.registry)
        await first.start()
        job_id = await first.enqueue_delayed("echo", {"n": 7}, delay=1.0, dedup_key="nightly")
        await first.shutdown()

        second = make_engine(store_backend="sql", database_url=url)
        register_builtin_handlers(second.registry)
        await second.start()

        with pytest.raises(DuplicateError):
            await second.enqueue_immediate("echo", {}, dedup_key="nightly")

        snapshot = await second.wait_for(job_id, JobState.SUCCEEDED)
        assert snapshot.payload == {"n": 7}
        assert snapshot.attempt == 1

    async def test_retries_on_sql_store(self, make_engine, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"
        engine = make_engine(store_backend="sql", database_url=url)

        @engine.handler("flaky")
        async def flaky(context: JobContext) -> JobResult:
            return JobResult(success=context.attempt > 1, error="not yet")

        await engine.start()

        job_id = await engine.enqueue_immediate("flaky", {})
        snapshot = await engine.wait_for(job_id, JobState.SUCCEEDED)

        assert snapshot.attempt == 2


class TestWorkerPool:
    """Tests for slot bounds and lease fencing."""

    async def test_concurrency_is_bounded(self, make_engine):
        """Test no more than worker_concurrency handlers run at once."""
        engine = make_engine(worker_concurrency=2)
        running = 0
        peak = 0

        @engine.handler("counted")
        async def counted(context: JobContext) -> JobResult:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.05)
            running -= 1
            return JobResult(success=True)

        await engine.start()

        job_ids = [await engine.enqueue_immediate("counted", {"n": n}) for n in range(5)]
        for job_id in job_ids:
            await engine.wait_for(job_id, JobState.SUCCEEDED)

        assert peak == 2

    async def test_reaped_lease_cannot_finalize_newer_lease(self, make_engine):
        """Test a slot whose lease was reaped cannot finish the job under a newer lease."""
        engine = make_engine(
            lease_duration_seconds=0.2,
            heartbeat_interval_seconds=30.0,
            worker_concurrency=2,
        )
        runs: list[int] = []
        finished: list[int] = []

        @engine.handler("slow_first")
        async def slow_first(context: JobContext) -> JobResult:
            runs.append(context.attempt)
            if context.attempt == 1:
                await asyncio.sleep(0.35)
                finished.append(context.attempt)
                return JobResult(success=True)
            await asyncio.sleep(5)
            return JobResult(success=True)

        await engine.start()
        job_id = await engine.enqueue_immediate("slow_first", {})

        async def first_run_returned() -> bool:
            return finished == [1]

        await wait_until(first_run_returned)
        await asyncio.sleep(0.05)

        snapshot = await engine.status(job_id)
        assert runs == [1, 2]
        assert snapshot.state == JobState.LEASED
        assert snapshot.attempt == 1
        assert engine.worker_pool.in_flight == [job_id]

        # The running attempt is still tracked, so the drain deadline expires it
        assert await engine.shutdown(drain_timeout=0.1) == [job_id]

    async def test_hung_handler_is_requeued(self, make_engine):
        """Test a handler that never returns stops renewing its lease and the job reruns."""
        engine = make_engine(
            lease_duration_seconds=0.2,
            heartbeat_interval_seconds=0.05,
            max_run_seconds=0.3,
        )
        never = asyncio.Event()

        @engine.handler("hangs_once")
        async def hangs_once(context: JobContext) -> JobResult:
            if context.attempt == 1:
                await never.wait()
            return JobResult(success=True)

        await engine.start()
        started = time.monotonic()

        job_id = await engine.enqueue_immediate("hangs_once", {})
        snapshot = await engine.wait_for(job_id, JobState.SUCCEEDED, timeout=5)

        # Renewed while under the limit, then left to expire
        assert time.monotonic() - started >= 0.3
        assert snapshot.attempt == 2
