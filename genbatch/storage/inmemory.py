"""In-memory record store."""

from __future__ import annotations

import asyncio
import uuid
from typing import Dict

from .models import TargetRecord
from .repository import RecordStore


class InMemoryRecordStore(RecordStore):
    """Keep records in a dict keyed by natural key. Not persisted."""

    def __init__(self) -> None:
        self._records: Dict[tuple[str, str], TargetRecord] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, record: TargetRecord) -> tuple[str, bool]:
        async with self._lock:
            existing = self._records.get(record.natural_key)
            if existing is not None:
                return existing.record_id, False
            stored = record.model_copy(update={"record_id": uuid.uuid4().hex})
            self._records[record.natural_key] = stored
            return stored.record_id, True

    async def get(self, scope: str, slug: str) -> TargetRecord | None:
        return self._records.get((scope, slug))

    async def list_records(self, scope: str | None = None) -> list[TargetRecord]:
        return [r for r in self._records.values() if scope is None or r.scope == scope]

    async def count(self) -> int:
        return len(self._records)
