"""Ingestion job persistence and progress tracking."""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy import select

from obracalc.catalog.store import SessionFactory
from obracalc.db.connection import get_session
from obracalc.db.models import IngestionJobModel
from obracalc.models import IngestionJob, JobLog, JobStatus, utcnow

logger = logging.getLogger(__name__)

# Progress bands per stage (start, end)
STAGE_PROGRESS = {
    JobStatus.QUEUED: (0, 0),
    JobStatus.EXTRACTING: (0, 40),
    JobStatus.EMBEDDING: (40, 80),
    JobStatus.PERSISTING: (80, 100),
    JobStatus.COMPLETED: (100, 100),
}


def stage_progress(status: JobStatus, fraction: float = 0.0) -> int:
    start, end = STAGE_PROGRESS.get(status, (0, 0))
    fraction = max(0.0, min(1.0, fraction))
    return int(start + (end - start) * fraction)


class IngestionJobRepository:
    """Stores IngestionJob snapshots in the ``ingestion_jobs`` table."""

    def __init__(self, session_factory: SessionFactory = get_session):
        self._session_factory = session_factory

    async def save(self, job: IngestionJob) -> None:
        data = job.model_dump(mode="json")
        async with self._session_factory() as session:
            row = await session.get(IngestionJobModel, job.id)
            if row is None:
                row = IngestionJobModel(id=job.id, created_at=job.created_at)
                session.add(row)
            row.status = job.status.value
            row.file_name = job.file_name
            row.year = job.year
            row.logs = data["logs"]
            row.total_items = job.total_items
            row.processed_items = job.processed_items
            row.skipped_items = job.skipped_items
            row.dropped_items = job.dropped_items
            row.progress = job.progress
            row.error = job.error
            row.updated_at = job.updated_at

    async def get(self, job_id: str) -> IngestionJob | None:
        async with self._session_factory() as session:
            row = await session.get(IngestionJobModel, job_id)
            if row is None:
                return None
            return IngestionJob(
                id=row.id,
                status=JobStatus(row.status),
                file_name=row.file_name,
                year=row.year,
                created_at=row.created_at,
                updated_at=row.updated_at,
                logs=[JobLog.model_validate(entry) for entry in row.logs or []],
                total_items=row.total_items,
                processed_items=row.processed_items,
                skipped_items=row.skipped_items,
                dropped_items=row.dropped_items,
                progress=row.progress,
                error=row.error,
            )

    async def list_recent(self, limit: int = 20) -> list[IngestionJob]:
        async with self._session_factory() as session:
            stmt = select(IngestionJobModel.id).order_by(IngestionJobModel.created_at.desc()).limit(limit)
            ids = (await session.execute(stmt)).scalars().all()
        jobs = [await self.get(job_id) for job_id in ids]
        return [job for job in jobs if job is not None]


class JobTracker:
    """Mutates one job and persists each change.

    Writes are serialized so concurrent batches never interleave snapshots.
    """

    def __init__(self, job: IngestionJob, repository: IngestionJobRepository):
        self.job = job
        self.repository = repository
        self._lock = asyncio.Lock()

    async def _save(self) -> None:
        self.job.updated_at = utcnow()
        await self.repository.save(self.job)

    async def log(self, message: str, level: str = "info") -> None:
        async with self._lock:
            self.job.logs.append(JobLog(level=level, message=message))
            await self._save()
        log_fn = logger.error if level == "error" else logger.warning if level == "warning" else logger.info
        log_fn(f"[job {self.job.id[:8]}] {message}")

    async def update(self, **fields) -> None:
        async with self._lock:
            for name, value in fields.items():
                setattr(self.job, name, value)
            await self._save()

    async def increment(self, **deltas: int) -> None:
        """Add to counters under the lock, so concurrent batches never lose a count."""
        async with self._lock:
            for name, delta in deltas.items():
                setattr(self.job, name, getattr(self.job, name) + delta)
            await self._save()

    async def advance(self, status: JobStatus, fraction: float = 0.0, **fields) -> None:
        await self.update(status=status, progress=stage_progress(status, fraction), **fields)
