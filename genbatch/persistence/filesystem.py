"""JSON checkpoint files on local disk."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ..errors import JobStoreUnavailableError
from .models import Job
from .repository import DocumentJobStore

logger = logging.getLogger(__name__)


def write_atomic(path: Path, data: dict) -> None:
    """Write JSON to ``path`` via a temp file and rename.

    Readers see either the previous complete file or the new one, never a
    truncated write.
    """
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise


def read_checkpoint(path: Path) -> Optional[Job]:
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return Job.from_checkpoint(json.load(handle))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise JobStoreUnavailableError(f"Checkpoint {path} is unreadable: {exc}") from exc


class FileJobStore(DocumentJobStore):
    """One checkpoint file per job, ``<directory>/<job_id>.json``."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise JobStoreUnavailableError(
                f"Cannot create checkpoint directory {self.directory}: {exc}"
            ) from exc

    def _path(self, job_id: str) -> Path:
        return self.directory / f"{job_id}.json"

    async def _get(self, job_id: str) -> Optional[Job]:
        return await asyncio.to_thread(read_checkpoint, self._path(job_id))

    async def _put(self, job: Job) -> None:
        try:
            await asyncio.to_thread(write_atomic, self._path(job.job_id), job.to_checkpoint())
        except OSError as exc:
            raise JobStoreUnavailableError(f"Cannot write checkpoint for {job.job_id}: {exc}") from exc

    async def _all(self) -> list[Job]:
        jobs = []
        for path in sorted(self.directory.glob("*.json")):
            job = await asyncio.to_thread(read_checkpoint, path)
            if job is not None:
                jobs.append(job)
        return jobs


class CheckpointFileStore(FileJobStore):
    """A single job kept in one named checkpoint file.

    Used by operator runs that track progress in e.g.
    ``.genbatch-progress.json``.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        super().__init__(self.path.parent)

    def _path(self, job_id: str) -> Path:
        return self.path

    async def _get(self, job_id: str) -> Optional[Job]:
        job = await asyncio.to_thread(read_checkpoint, self.path)
        if job is not None and job.job_id != job_id:
            return None
        return job

    async def _all(self) -> list[Job]:
        job = await asyncio.to_thread(read_checkpoint, self.path)
        return [job] if job is not None else []

    def reset(self) -> None:
        """Discard the checkpoint so the next run starts fresh."""
        if self.path.exists():
            logger.info(f"Discarding previous checkpoint {self.path}")
            self.path.unlink()
