"""
Job store module.
Contains the store interface and its in-memory and SQLAlchemy implementations.
"""

from taskqueue.config import Settings
from taskqueue.store.base import JobStore
from taskqueue.store.memory import InMemoryJobStore
from taskqueue.store.sql import SqlAlchemyJobStore


async def create_store(settings: Settings) -> JobStore:
    """Build the job store selected by ``settings.store_backend``."""
    if settings.store_backend == "memory":
        return InMemoryJobStore()
    if settings.store_backend == "sql":
        return await SqlAlchemyJobStore.from_settings(settings, create_tables=True)
    raise ValueError(f"Unknown store backend: {settings.store_backend!r}")


__all__ = [
    "JobStore",
    "InMemoryJobStore",
    "SqlAlchemyJobStore",
    "create_store",
]
