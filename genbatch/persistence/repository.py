"""Repository abstraction for job progress persistence."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol

from ..errors import JobClaimError, JobExistsError, JobNotFoundError
from .models import Job, JobStatus, utcnow

logger = logging.getLogger(__name__)


class JobStore(Protocol):
    """Protocol for job progress backends.

    ``checkpoint`` must be durable when it returns; callers move on to the next
    item only afterwards.
    """

    async def create(
        self, job_id: str, source: str | None = None, total_items: int | None = None
    ) -> Job:
        """Persist a new ``pending`` job."""

    async def load(self, job_id: str) -> Job:
        """Return the job or raise ``JobNotFoundError``."""

    async def checkpoint(
        self,
        job_id: str,
        processed_ids: Iterable[str] = (),
        failed_ids: Iterable[str] = (),
    ) -> Job:
        """Add ids to the processed/failed sets. Never removes entries."""

    async def mark_status(
        self, job_id: str, status: JobStatus, error_message: str | None = None
    ) -> Job:
        """Set the status unconditionally (operator action)."""

    async def claim(self, job_id: str, expected: JobStatus = JobStatus.PENDING) -> Job:
        """Compare-and-set ``expected`` -> ``processing``."""

    async def set_total(self, job_id: str, total_items: int) -> Job:
        """Record the discovered item total."""

    async def next_job(self) -> Job | None:
        """Oldest ``processing`` job, else the oldest ``pending`` one."""

    async def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        """Return persisted jobs, oldest first."""


class DocumentJobStore:
    """Job store over whole-document reads and writes.

    Subclasses provide ``_get``, ``_put`` and ``_all``; every operation is a
    read-modify-write of one job document.
    """

    async def _get(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    async def _put(self, job: Job) -> None:
        raise NotImplementedError

    async def _all(self) -> list[Job]:
        raise NotImplementedError

    async def _require(self, job_id: str) -> Job:
        job = await self._get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def create(
        self, job_id: str, source: str | None = None, total_items: int | None = None
    ) -> Job:
        if await self._get(job_id) is not None:
            raise JobExistsError(job_id)
        job = Job(job_id=job_id, source=source, total_items=total_items)
        await self._put(job)
        return job.model_copy(deep=True)

    async def load(self, job_id: str) -> Job:
        return (await self._require(job_id)).model_copy(deep=True)

    async def checkpoint(
        self,
        job_id: str,
        processed_ids: Iterable[str] = (),
        failed_ids: Iterable[str] = (),
    ) -> Job:
        job = await self._require(job_id)
        job.processed_ids.update(processed_ids)
        job.failed_ids.update(failed_ids)
        job.last_updated = utcnow()
        await self._put(job)
        return job.model_copy(deep=True)

    async def mark_status(
        self, job_id: str, status: JobStatus, error_message: str | None = None
    ) -> Job:
        job = await self._require(job_id)
        job.status = status
        job.error_message = error_message
        job.last_updated = utcnow()
        await self._put(job)
        return job.model_copy(deep=True)

    async def claim(self, job_id: str, expected: JobStatus = JobStatus.PENDING) -> Job:
        job = await self._require(job_id)
        if job.status is not expected:
            raise JobClaimError(job_id, expected.value, job.status.value)
        job.status = JobStatus.PROCESSING
        job.last_updated = utcnow()
        await self._put(job)
        return job.model_copy(deep=True)

    async def set_total(self, job_id: str, total_items: int) -> Job:
        job = await self._require(job_id)
        job.total_items = total_items
        job.last_updated = utcnow()
        await self._put(job)
        return job.model_copy(deep=True)

    async def next_job(self) -> Job | None:
        jobs = await self._all()
        for status in (JobStatus.PROCESSING, JobStatus.PENDING):
            candidates = [job for job in jobs if job.status is status]
            if candidates:
                oldest = min(candidates, key=lambda job: (job.created_at, job.job_id))
                return oldest.model_copy(deep=True)
        return None

    async def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        jobs = sorted(await self._all(), key=lambda job: (job.created_at, job.job_id))
        return [
            job.model_copy(deep=True)
            for job in jobs
            if status is None or job.status is status
        ]


async def resume_job(store: JobStore, job_id: str) -> Job:
    """Put a job back into ``processing`` from any state.

    The stored ``processed_ids`` and ``failed_ids`` are kept as they are; the
    worker filters on them so only the remaining delta is touched.
    """
    job = await store.load(job_id)
    if job.status is not JobStatus.PROCESSING or job.error_message:
        job = await store.mark_status(job_id, JobStatus.PROCESSING)
    logger.info(
        f"Resuming job {job_id}: {len(job.processed_ids)} processed, "
        f"{len(job.outstanding_failures)} failed to retry"
    )
    return job
