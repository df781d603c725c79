"""
Unit tests for the dedup index.
"""

from uuid import uuid4

import pytest

from taskqueue.constants import JobState
from taskqueue.dedup import DedupIndex
from taskqueue.errors import AlreadyReservedError, ResourceClosedError
from taskqueue.types.job import Job


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestDedupIndex:
    """Tests for DedupIndex."""

    def test_reserve_and_lookup(self):
        index = DedupIndex()
        job_id = uuid4()

        index.reserve("report:42", job_id)

        assert index.lookup("report:42") == job_id
        assert len(index) == 1

    def test_second_reserve_rejected(self):
        """Test a held key reports the job that holds it."""
        index = DedupIndex()
        first, second = uuid4(), uuid4()
        index.reserve("k", first)

        with pytest.raises(AlreadyReservedError) as exc_info:
            index.reserve("k", second)

        assert exc_info.value.existing_job_id == first
        assert index.lookup("k") == first

    def test_reserve_same_job_is_idempotent(self):
        index = DedupIndex()
        job_id = uuid4()

        index.reserve("k", job_id)
        index.reserve("k", job_id)

        assert index.lookup("k") == job_id

    def test_release_frees_key(self):
        index = DedupIndex()
        job_id = uuid4()
        index.reserve("k", job_id)

        assert index.release("k", job_id) is True

        assert index.lookup("k") is None
        index.reserve("k", uuid4())

    def test_release_by_non_owner_ignored(self):
        """Test a stale job cannot release a key re-reserved by another job."""
        index = DedupIndex()
        owner = uuid4()
        index.reserve("k", owner)

        assert index.release("k", uuid4()) is False

        assert index.lookup("k") == owner

    def test_release_unknown_key(self):
        assert DedupIndex().release("missing") is False

    def test_window_keeps_key_after_release(self):
        """Test a released key keeps blocking duplicates until the window passes."""
        clock = FakeClock()
        index = DedupIndex(window_seconds=10, clock=clock)
        first = uuid4()
        index.reserve("k", first)
        index.release("k", first)

        clock.now += 5
        with pytest.raises(AlreadyReservedError):
            index.reserve("k", uuid4())

        clock.now += 6
        second = uuid4()
        index.reserve("k", second)
        assert index.lookup("k") == second

    def test_rebuild_from_active_jobs(self):
        index = DedupIndex()
        active = Job(job_type="echo", payload={}, dedup_key="a", state=JobState.RETRYING, attempt=1)
        finished = Job(job_type="echo", payload={}, dedup_key="b", state=JobState.SUCCEEDED)
        keyless = Job(job_type="echo", payload={})

        reserved = index.rebuild([active, finished, keyless])

        assert reserved == 1
        assert index.lookup("a") == active.id
        assert index.lookup("b") is None

    def test_closed_index(self):
        index = DedupIndex()
        index.close()

        with pytest.raises(ResourceClosedError):
            index.reserve("k", uuid4())
