"""Durable bookkeeping for every unit of work pushed through the queue fabric.

Rows are keyed by the fabric-assigned job id and only ever move forward:
PENDING -> ACTIVE -> COMPLETED | FAILED, with FAILED -> ACTIVE allowed when the
fabric redelivers a job. COMPLETED is absorbing. Worker-side hooks are
best-effort; a ledger outage never fails the job it describes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import UUID

from sqlalchemy import and_, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql.elements import ColumnElement

from assetflow.core import metrics
from assetflow.core.errors import LedgerWriteFailure
from assetflow.models.asset import JobStatus, TranscodingJob
from assetflow.schemas.queue import QueueJob

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 2000

# Source statuses from which each target may be reached.
_ALLOWED_FROM: dict[JobStatus, tuple[JobStatus, ...]] = {
    JobStatus.ACTIVE: (JobStatus.PENDING, JobStatus.ACTIVE, JobStatus.FAILED),
    JobStatus.COMPLETED: (JobStatus.PENDING, JobStatus.ACTIVE, JobStatus.FAILED),
    JobStatus.FAILED: (JobStatus.PENDING, JobStatus.ACTIVE, JobStatus.FAILED),
}


@dataclass(slots=True)
class JobListFilters:
    page: int = 1
    limit: int = 24
    status: str = ""
    worker_name: str = ""
    asset_id: UUID | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return current in _ALLOWED_FROM.get(target, ())


class JobLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record_enqueued(self, *, job_id: str, asset_id: UUID, worker_name: str) -> bool:
        """Insert a PENDING row unless one already exists for ``job_id``.

        Returns True when a row was inserted. Raises ``LedgerWriteFailure`` on storage errors.
        """
        values = {
            "job_id": job_id,
            "asset_id": asset_id,
            "worker_name": worker_name,
            "status": JobStatus.PENDING,
            "event_name": "enqueued",
            "attempt": 0,
        }
        try:
            async with self._session_factory() as session:
                dialect = session.get_bind().dialect.name
                table = TranscodingJob.__table__
                if dialect == "postgresql":
                    stmt = pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=["job_id"])
                elif dialect == "sqlite":
                    stmt = sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=["job_id"])
                else:
                    existing = await session.scalar(select(TranscodingJob.id).where(TranscodingJob.job_id == job_id))
                    if existing is not None:
                        return False
                    session.add(TranscodingJob(**values))
                    await session.commit()
                    return True
                result = await session.execute(stmt)
                await session.commit()
                return bool(result.rowcount)
        except SQLAlchemyError as exc:
            raise LedgerWriteFailure(f"record_enqueued failed for {job_id}: {exc}", job_id=job_id) from exc

    async def mark(
        self,
        job_id: str,
        status: JobStatus,
        *,
        event_name: str,
        attempt: int | None = None,
        error: str | None = None,
    ) -> bool:
        """Move a row to ``status`` if that is a forward transition.

        The check and the write are one conditional UPDATE, so two workers racing on a
        redelivered job cannot regress a COMPLETED row. Returns True when a row changed.
        """
        allowed = _ALLOWED_FROM.get(status)
        if not allowed:
            raise ValueError(f"Ledger rows cannot be moved to {status.value}")

        values: dict[str, Any] = {"status": status, "event_name": (event_name or "event")[:64], "updated_at": _now()}
        if attempt is not None:
            values["attempt"] = int(attempt)
        if status == JobStatus.ACTIVE:
            values["started_at"] = _now()
            values["finished_at"] = None
            values["error_message"] = None
        else:
            values["finished_at"] = _now()
        if status == JobStatus.FAILED:
            values["error_message"] = (error or "")[:_MAX_ERROR_LENGTH] or None

        stmt = (
            update(TranscodingJob)
            .where(TranscodingJob.job_id == job_id, TranscodingJob.status.in_(allowed))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise LedgerWriteFailure(f"mark {status.value} failed for {job_id}: {exc}", job_id=job_id) from exc
        changed = bool(result.rowcount)
        if not changed:
            logger.info("ledger_transition_skipped", extra={"queue_job_id": job_id, "target_status": status.value})
        return changed

    async def _best_effort(self, action: str, job_id: str, write: Callable[[], Awaitable[bool]]) -> bool:
        try:
            return await write()
        except LedgerWriteFailure as exc:
            metrics.record_ledger_write_failure()
            logger.warning("ledger_write_failed", extra={"action": action, "queue_job_id": job_id, "error": exc.message})
            return False

    async def on_enqueued(self, job: QueueJob, *, asset_id: UUID) -> bool:
        return await self._best_effort(
            "enqueued",
            job.id,
            lambda: self.record_enqueued(job_id=job.id, asset_id=asset_id, worker_name=job.queue),
        )

    async def on_active(self, job: QueueJob) -> bool:
        return await self._best_effort(
            "active",
            job.id,
            lambda: self.mark(job.id, JobStatus.ACTIVE, event_name="active", attempt=job.attempt),
        )

    async def on_completed(self, job: QueueJob) -> bool:
        return await self._best_effort(
            "completed",
            job.id,
            lambda: self.mark(job.id, JobStatus.COMPLETED, event_name="completed", attempt=job.attempt),
        )

    async def on_failed(self, job: QueueJob, error: str) -> bool:
        return await self._best_effort(
            "failed",
            job.id,
            lambda: self.mark(job.id, JobStatus.FAILED, event_name="failed", attempt=job.attempt, error=error),
        )

    async def on_dead_lettered(self, job: QueueJob, error: str) -> bool:
        return await self._best_effort(
            "dead_lettered",
            job.id,
            lambda: self.mark(job.id, JobStatus.FAILED, event_name="dead_lettered", attempt=job.attempt, error=error),
        )

    async def get(self, job_id: str) -> TranscodingJob | None:
        async with self._session_factory() as session:
            return await session.scalar(select(TranscodingJob).where(TranscodingJob.job_id == job_id))

    async def list_jobs(self, filters: JobListFilters) -> tuple[list[TranscodingJob], dict[str, int]]:
        clauses: list[ColumnElement[bool]] = []
        if filters.status:
            clauses.append(TranscodingJob.status == JobStatus(filters.status))
        if filters.worker_name:
            clauses.append(TranscodingJob.worker_name == filters.worker_name)
        if filters.asset_id:
            clauses.append(TranscodingJob.asset_id == filters.asset_id)
        if filters.created_from:
            clauses.append(TranscodingJob.created_at >= filters.created_from)
        if filters.created_to:
            clauses.append(TranscodingJob.created_at <= filters.created_to)

        limit = max(1, int(filters.limit))
        page = max(1, int(filters.page))
        stmt = select(TranscodingJob)
        count_stmt = select(func.count()).select_from(TranscodingJob)
        if clauses:
            stmt = stmt.where(and_(*clauses))
            count_stmt = count_stmt.where(and_(*clauses))

        stmt = stmt.order_by(TranscodingJob.created_at.desc(), TranscodingJob.id.desc()).offset((page - 1) * limit).limit(limit)
        async with self._session_factory() as session:
            total_items = int((await session.scalar(count_stmt)) or 0)
            total_pages = max(1, (total_items + limit - 1) // limit) if total_items else 1
            rows = (await session.execute(stmt)).scalars().all()
        return list(rows), {"total_items": total_items, "total_pages": total_pages, "page": page, "limit": limit}

    async def count_by(self, column: str, *, asset_ids: Any = None) -> dict[str, int]:
        """Count ledger rows grouped by ``status`` or ``worker_name``."""
        col = {"status": TranscodingJob.status, "worker_name": TranscodingJob.worker_name}[column]
        stmt = select(col, func.count()).group_by(col)
        if asset_ids is not None:
            stmt = stmt.where(TranscodingJob.asset_id.in_(asset_ids))
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        counts: dict[str, int] = {}
        for key, count in rows:
            counts[getattr(key, "value", str(key))] = int(count or 0)
        return counts
