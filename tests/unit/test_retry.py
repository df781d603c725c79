"""
Unit tests for backoff computation and the retry manager.
"""

import random
from datetime import timedelta

import pytest
import pytest_asyncio

from taskqueue.config import Settings
from taskqueue.constants import BackoffStrategy, JobState
from taskqueue.deadletter import InMemoryDeadLetterSink
from taskqueue.dedup import DedupIndex
from taskqueue.errors import ConflictError
from taskqueue.queue import ReadyQueue
from taskqueue.retry import RetryManager, compute_delay
from taskqueue.scheduler.main import Scheduler
from taskqueue.store import InMemoryJobStore
from taskqueue.types.job import BackoffPolicy, Job
from taskqueue.utils import utcnow


class TestComputeDelay:
    """Tests for compute_delay."""

    @pytest.mark.parametrize("attempt,expected", [(0, 2.0), (1, 4.0), (2, 6.0)])
    def test_linear(self, attempt: int, expected: float):
        policy = BackoffPolicy(strategy=BackoffStrategy.LINEAR, base_seconds=2.0)

        assert compute_delay(policy, attempt) == expected

    @pytest.mark.parametrize("attempt,expected", [(0, 1.0), (1, 2.0), (2, 4.0), (3, 8.0)])
    def test_exponential(self, attempt: int, expected: float):
        policy = BackoffPolicy(strategy=BackoffStrategy.EXPONENTIAL, base_seconds=1.0)

        assert compute_delay(policy, attempt) == expected

    def test_exponential_capped(self):
        policy = BackoffPolicy(base_seconds=1.0, max_seconds=10.0)

        assert compute_delay(policy, 20) == 10.0

    def test_jitter_within_bound(self):
        policy = BackoffPolicy(base_seconds=1.0, jitter_seconds=0.5)
        rng = random.Random(7)

        delays = [compute_delay(policy, 0, rng) for _ in range(50)]

        assert all(1.0 <= delay <= 1.5 for delay in delays)
        assert len(set(delays)) > 1


class TestRetryManager:
    """Tests for RetryManager."""

    @pytest_asyncio.fixture
    async def setup(self, memory_store: InMemoryJobStore, test_settings: Settings):
        dedup = DedupIndex()
        sink = InMemoryDeadLetterSink()
        scheduler = Scheduler(memory_store, ReadyQueue(), test_settings)
        manager = RetryManager(memory_store, scheduler, dedup, sink)
        return manager, scheduler, dedup, sink

    async def _leased(self, store: InMemoryJobStore, **kwargs) -> Job:
        job = Job(job_type="failing_job", payload={"n": 1}, **kwargs)
        await store.insert(job)
        return await store.transition(
            job.id, JobState.PENDING, JobState.LEASED, {"lease_owner": "w"}
        )

    async def test_failure_schedules_retry(self, setup, memory_store: InMemoryJobStore):
        """Test a failure with attempts left moves the job to retrying after a backoff."""
        manager, scheduler, _, sink = setup
        job = await self._leased(
            memory_store, max_attempts=3, backoff=BackoffPolicy(base_seconds=1.0)
        )
        now = utcnow()

        updated = await manager.handle_failure(job, "boom", lease_owner="w", now=now)

        assert updated.state == JobState.RETRYING
        assert updated.attempt == 1
        assert updated.last_error == "boom"
        assert updated.lease_owner is None
        assert updated.scheduled_at == now + timedelta(seconds=1)
        assert scheduler.is_scheduled(job.id)
        assert len(sink) == 0

    async def test_last_attempt_dead_letters(self, setup, memory_store: InMemoryJobStore):
        """Test dead-lettering happens when attempt + 1 reaches max_attempts."""
        manager, scheduler, dedup, sink = setup
        job = await self._leased(memory_store, max_attempts=2, dedup_key="k")
        dedup.reserve("k", job.id)
        job = await memory_store.transition(
            job.id, JobState.LEASED, JobState.LEASED, {"attempt": 1}, lease_owner="w"
        )

        updated = await manager.handle_failure(job, "final", lease_owner="w")

        assert updated.state == JobState.DEAD_LETTERED
        assert updated.attempt == 2
        assert updated.completed_at is not None
        assert not scheduler.is_scheduled(job.id)
        assert dedup.lookup("k") is None
        assert len(sink) == 1
        record = sink.records[0]
        assert record.job_id == job.id
        assert record.payload == {"n": 1}
        assert record.final_error == "final"
        assert record.attempts == 2

    async def test_lost_lease_conflicts(self, setup, memory_store: InMemoryJobStore):
        """Test a worker that lost its lease cannot retry or dead-letter the job."""
        manager, _, _, sink = setup
        job = await self._leased(memory_store, max_attempts=1)

        with pytest.raises(ConflictError):
            await manager.handle_failure(job, "late", lease_owner="someone-else")

        assert (await memory_store.get(job.id)).state == JobState.LEASED
        assert len(sink) == 0
