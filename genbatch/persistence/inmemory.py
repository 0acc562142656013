"""In-memory implementation of the job store."""

from __future__ import annotations

from typing import Dict, Optional

from .models import Job
from .repository import DocumentJobStore


class InMemoryJobStore(DocumentJobStore):
    """Store job progress in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}

    async def _get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    async def _put(self, job: Job) -> None:
        self._jobs[job.job_id] = job

    async def _all(self) -> list[Job]:
        return list(self._jobs.values())
