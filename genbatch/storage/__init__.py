"""Durable storage for reconciled records."""

from __future__ import annotations

import os
from typing import Optional

from ..config import GenbatchConfig, load_config
from .inmemory import InMemoryRecordStore
from .models import TargetRecord
from .repository import RecordStore
from .sqlite import SQLiteRecordStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresRecordStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresRecordStore = None  # type: ignore

_record_store_instance: RecordStore | None = None
_record_store_url: str | None = None


def get_record_store(
    database_url: Optional[str] = None, config: Optional[GenbatchConfig] = None
) -> RecordStore:
    """Factory function to obtain a record store.

    Selected from ``database_url``, ``GENBATCH_STORAGE_URL`` or configuration;
    defaults to an in-memory store.
    """

    global _record_store_instance, _record_store_url
    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("GENBATCH_STORAGE_URL")
        or config.storage.database_url
    )
    if _record_store_instance is not None and database_url == _record_store_url:
        return _record_store_instance

    _record_store_url = database_url
    if not database_url:
        _record_store_instance = InMemoryRecordStore()
    elif database_url.startswith("sqlite://"):
        _record_store_instance = SQLiteRecordStore(database_url.replace("sqlite://", "", 1))
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresRecordStore is None:
            raise RuntimeError("Postgres support not available; install genbatch[postgres]")
        _record_store_instance = PostgresRecordStore(database_url)
    else:
        raise ValueError(f"Unsupported storage backend: {database_url}")
    return _record_store_instance


__all__ = [
    "TargetRecord",
    "RecordStore",
    "InMemoryRecordStore",
    "SQLiteRecordStore",
    "PostgresRecordStore",
    "get_record_store",
]
