"""Persistence layer for job progress."""

from __future__ import annotations

import os
from typing import Optional

from ..config import GenbatchConfig, load_config
from .filesystem import CheckpointFileStore, FileJobStore
from .inmemory import InMemoryJobStore
from .models import Job, JobStatus
from .repository import JobStore, resume_job
from .sqlite import SQLiteJobStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresJobStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresJobStore = None  # type: ignore

_store_instance: JobStore | None = None
_store_url: str | None = None


def get_job_store(
    database_url: Optional[str] = None, config: Optional[GenbatchConfig] = None
) -> JobStore:
    """Factory function to obtain a job store.

    The backend is selected from ``database_url``, which can be provided
    explicitly, via the ``GENBATCH_DATABASE_URL`` environment variable, or from
    loaded configuration. When nothing is configured an in-memory store is
    returned.
    """

    global _store_instance, _store_url
    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("GENBATCH_DATABASE_URL")
        or config.persistence.database_url
    )
    if _store_instance is not None and database_url == _store_url:
        return _store_instance

    _store_url = database_url
    if not database_url:
        _store_instance = InMemoryJobStore()
        return _store_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _store_instance = SQLiteJobStore(path)
    elif database_url.startswith("file://"):
        path = database_url.replace("file://", "", 1)
        _store_instance = FileJobStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresJobStore is None:
            raise RuntimeError("Postgres support not available; install genbatch[postgres]")
        _store_instance = PostgresJobStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "Job",
    "JobStatus",
    "JobStore",
    "InMemoryJobStore",
    "FileJobStore",
    "CheckpointFileStore",
    "SQLiteJobStore",
    "PostgresJobStore",
    "get_job_store",
    "resume_job",
]
