"""SQLite record store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from ..errors import RecordStoreError
from .models import TargetRecord
from .repository import RecordStore


class SQLiteRecordStore(RecordStore):
    """Persist records using SQLite with a unique ``(scope, slug)`` index."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS records (
                record_id TEXT PRIMARY KEY,
                scope TEXT NOT NULL,
                slug TEXT NOT NULL,
                kind TEXT NOT NULL,
                correlation_id TEXT NOT NULL,
                title TEXT,
                content TEXT,
                embedding TEXT,
                metadata TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (scope, slug)
            )
            """
        )
        self._conn.commit()

    @staticmethod
    def _to_record(row: sqlite3.Row) -> TargetRecord:
        return TargetRecord(
            record_id=row["record_id"],
            scope=row["scope"],
            slug=row["slug"],
            kind=row["kind"],
            correlation_id=row["correlation_id"],
            title=row["title"],
            content=row["content"],
            embedding=json.loads(row["embedding"]) if row["embedding"] else None,
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _upsert_sync(self, record: TargetRecord) -> tuple[str, bool]:
        record_id = uuid.uuid4().hex
        with self._conn:
            cur = self._conn.execute(
                """
                INSERT INTO records (record_id, scope, slug, kind, correlation_id,
                                     title, content, embedding, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (scope, slug) DO NOTHING
                """,
                (
                    record_id,
                    record.scope,
                    record.slug,
                    record.kind,
                    record.correlation_id,
                    record.title,
                    record.content,
                    json.dumps(record.embedding) if record.embedding is not None else None,
                    json.dumps(record.metadata),
                    record.created_at.isoformat(),
                ),
            )
        if cur.rowcount == 1:
            return record_id, True
        row = self._conn.execute(
            "SELECT record_id FROM records WHERE scope = ? AND slug = ?",
            (record.scope, record.slug),
        ).fetchone()
        return row["record_id"], False

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        return self._conn.execute(query, params).fetchall()

    async def upsert(self, record: TargetRecord) -> tuple[str, bool]:
        async with self._lock:
            try:
                return await asyncio.to_thread(self._upsert_sync, record)
            except sqlite3.Error as exc:
                raise RecordStoreError(
                    f"SQLite record store failed for {record.scope}/{record.slug}: {exc}"
                ) from exc

    async def get(self, scope: str, slug: str) -> TargetRecord | None:
        async with self._lock:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM records WHERE scope = ? AND slug = ?", scope, slug
            )
        return self._to_record(rows[0]) if rows else None

    async def list_records(self, scope: str | None = None) -> list[TargetRecord]:
        async with self._lock:
            if scope is None:
                rows = await asyncio.to_thread(
                    self._fetchall, "SELECT * FROM records ORDER BY created_at"
                )
            else:
                rows = await asyncio.to_thread(
                    self._fetchall,
                    "SELECT * FROM records WHERE scope = ? ORDER BY created_at",
                    scope,
                )
        return [self._to_record(row) for row in rows]

    async def count(self) -> int:
        async with self._lock:
            rows = await asyncio.to_thread(self._fetchall, "SELECT COUNT(*) AS n FROM records")
        return rows[0]["n"]

    def close(self) -> None:
        self._conn.close()
