"""
Pytest configuration and shared fixtures.
"""

from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio

from taskqueue.config import Settings
from taskqueue.deadletter import InMemoryDeadLetterSink
from taskqueue.engine import TaskQueue
from taskqueue.store import InMemoryJobStore, JobStore, SqlAlchemyJobStore
from taskqueue.store.connection import create_engine, create_schema
from taskqueue.types.job import Job

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def test_settings() -> Settings:
    """Settings with short intervals so scenarios finish quickly."""
    return Settings(
        store_backend="memory",
        database_url=TEST_DATABASE_URL,
        worker_concurrency=4,
        lease_duration_seconds=5.0,
        heartbeat_interval_seconds=1.0,
        scheduler_tick_seconds=0.02,
        backoff_base_seconds=0.05,
        backoff_max_seconds=1.0,
        drain_timeout_seconds=2.0,
        log_level="DEBUG",
        log_format="console",
    )


@pytest_asyncio.fixture
async def memory_store() -> AsyncGenerator[InMemoryJobStore]:
    store = InMemoryJobStore()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def sql_store(test_settings: Settings) -> AsyncGenerator[SqlAlchemyJobStore]:
    """SQL store over a fresh in-memory SQLite database."""
    engine = create_engine(TEST_DATABASE_URL, settings=test_settings)
    await create_schema(engine)
    store = SqlAlchemyJobStore(engine)
    yield store
    await store.close()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request: pytest.FixtureRequest, test_settings: Settings) -> AsyncGenerator[JobStore]:
    """Every store implementation, for contract tests."""
    if request.param == "memory":
        job_store: JobStore = InMemoryJobStore()
    else:
        engine = create_engine(TEST_DATABASE_URL, settings=test_settings)
        await create_schema(engine)
        job_store = SqlAlchemyJobStore(engine)
    yield job_store
    await job_store.close()


@pytest.fixture
def dead_letters() -> InMemoryDeadLetterSink:
    return InMemoryDeadLetterSink()


@pytest_asyncio.fixture
async def make_engine(
    test_settings: Settings,
    dead_letters: InMemoryDeadLetterSink,
) -> AsyncGenerator[Any]:
    """
    Factory for engines sharing the test settings and dead-letter sink.

    Engines still running at teardown are shut down.
    """
    engines: list[TaskQueue] = []

    def factory(**overrides: Any) -> TaskQueue:
        store = overrides.pop("store", None)
        settings = test_settings.model_copy(update=overrides)
        engine = TaskQueue(settings, store=store, dead_letter_sink=dead_letters)
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        await engine.shutdown(drain_timeout=0.5)


@pytest.fixture
def sample_job() -> Job:
    return Job(job_type="echo", payload={"message": "Hello, World!"})
