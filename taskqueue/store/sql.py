"""
SQLAlchemy-backed job store.

Transitions are conditional UPDATEs (``WHERE id = :id AND state = :expected``)
so concurrent writers cannot both win. Works with asyncpg in production and
aiosqlite for local development and tests.
"""

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from taskqueue.config import Settings
from taskqueue.constants import SCHEDULABLE_STATES, JobState
from taskqueue.errors import (
    ConflictError,
    DuplicateError,
    InvariantViolationError,
    JobNotFoundError,
)
from taskqueue.store.base import JobStore
from taskqueue.store.connection import create_engine, create_session_factory, create_schema
from taskqueue.store.models import JobRow
from taskqueue.types.job import BackoffPolicy, Job
from taskqueue.utils import utcnow

logger = logging.getLogger(__name__)


def _to_job(row: JobRow) -> Job:
    return Job(
        id=row.id,
        job_type=row.job_type,
        payload=dict(row.payload or {}),
        kind=row.kind,
        state=row.state,
        dedup_key=row.dedup_key,
        scheduled_at=row.scheduled_at,
        cron=row.cron,
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        backoff=BackoffPolicy.model_validate(row.backoff or {}),
        lease_owner=row.lease_owner,
        lease_expires_at=row.lease_expires_at,
        last_error=row.last_error,
        run_count=row.run_count,
        last_run_at=row.last_run_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
    )


def _column_values(fields: Mapping[str, Any]) -> dict[str, Any]:
    values = dict(fields)
    if isinstance(values.get("backoff"), BackoffPolicy):
        values["backoff"] = values["backoff"].model_dump(mode="json")
    return values


class SqlAlchemyJobStore(JobStore):
    """
    Job store backed by a relational database.

    Each operation runs in its own short session and commits before returning,
    so no caller ever holds a job row across operations.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        """
        Initialize the store.

        Args:
            engine: The async engine; disposed on close.
            session_factory: Optional session factory. Built from the engine if omitted.
        """
        super().__init__()
        self._engine = engine
        self._session_factory = session_factory or create_session_factory(engine)

    @classmethod
    async def from_settings(
        cls,
        settings: Settings,
        create_tables: bool = False,
    ) -> "SqlAlchemyJobStore":
        """Build a store from configuration, optionally creating the schema."""
        engine = create_engine(settings=settings)
        if create_tables:
            await create_schema(engine)
        logger.info("SQL job store initialized")
        return cls(engine)

    async def insert(self, job: Job) -> UUID:
        self._ensure_open()
        self._check_attempts(job.id, job.attempt, job.max_attempts)
        row = JobRow(
            id=job.id,
            job_type=job.job_type,
            kind=job.kind,
            state=job.state,
            payload=dict(job.payload),
            dedup_key=job.dedup_key,
            scheduled_at=job.scheduled_at,
            cron=job.cron,
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            backoff=job.backoff.model_dump(mode="json"),
            lease_owner=job.lease_owner,
            lease_expires_at=job.lease_expires_at,
            last_error=job.last_error,
            run_count=job.run_count,
            last_run_at=job.last_run_at,
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
        )

        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateError(
                    f"Job {job.id} already exists", existing_job_id=job.id
                ) from e

        logger.debug("Inserted job", extra={"job_id": str(job.id), "kind": job.kind.value})
        return job.id

    async def get(self, job_id: UUID) -> Job:
        self._ensure_open()
        async with self._session_factory() as session:
            row = await session.get(JobRow, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            return _to_job(row)

    async def transition(
        self,
        job_id: UUID,
        expected: JobState,
        new: JobState,
        fields: Mapping[str, Any] | None = None,
        *,
        lease_owner: str | None = None,
    ) -> Job:
        self._ensure_open()
        fields = dict(fields or {})
        self._check_transition(job_id, expected, new, fields)

        conditions = [JobRow.id == job_id, JobRow.state == expected]
        if lease_owner is not None:
            conditions.append(JobRow.lease_owner == lease_owner)
        if "attempt" in fields:
            conditions.append(JobRow.max_attempts >= fields["attempt"])

        values = _column_values(fields)
        values["state"] = new
        values["updated_at"] = utcnow()

        stmt = (
            update(JobRow)
            .where(and_(*conditions))
            .values(**values)
            .returning(JobRow)
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            if row is not None:
                job = _to_job(row)
                await session.commit()
                return job

            await session.rollback()
            current = await session.get(JobRow, job_id)

        if current is None:
            raise JobNotFoundError(job_id)
        if current.state != expected:
            raise ConflictError(job_id, expected.value, current.state.value)
        if lease_owner is not None and current.lease_owner != lease_owner:
            raise ConflictError(
                job_id,
                expected.value,
                current.state.value,
                detail=f"lease held by {current.lease_owner}",
            )
        self._check_attempts(job_id, fields.get("attempt", current.attempt), current.max_attempts)
        raise InvariantViolationError(f"Transition of job {job_id} matched no row")

    async def list_due(self, before: datetime) -> list[UUID]:
        self._ensure_open()
        stmt = (
            select(JobRow.id)
            .where(
                and_(
                    JobRow.state.in_(list(SCHEDULABLE_STATES)),
                    or_(JobRow.scheduled_at <= before, JobRow.scheduled_at.is_(None)),
                )
            )
            .order_by(func.coalesce(JobRow.scheduled_at, JobRow.created_at), JobRow.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_expired_leases(self, now: datetime) -> list[Job]:
        self._ensure_open()
        stmt = select(JobRow).where(
            and_(
                JobRow.state == JobState.LEASED,
                JobRow.lease_expires_at < now,
            )
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_job(row) for row in result.scalars().all()]

    async def list_by_state(self, *states: JobState) -> list[Job]:
        self._ensure_open()
        stmt = select(JobRow).where(JobRow.state.in_(list(states))).order_by(JobRow.created_at)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_job(row) for row in result.scalars().all()]

    async def count_by_state(self) -> dict[str, int]:
        self._ensure_open()
        stmt = select(JobRow.state, func.count()).group_by(JobRow.state)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return {state.value: count for state, count in result.all()}

    async def close(self) -> None:
        if self.closed:
            return
        await super().close()
        await self._engine.dispose()
        logger.info("SQL job store closed")
