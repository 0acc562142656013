"""PostgreSQL record store."""

from __future__ import annotations

import json
import uuid

import asyncpg

from ..errors import RecordStoreError
from .models import TargetRecord
from .repository import RecordStore


class PostgresRecordStore(RecordStore):
    """Persist records using PostgreSQL with a unique ``(scope, slug)`` constraint."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    record_id TEXT PRIMARY KEY,
                    scope TEXT NOT NULL,
                    slug TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    correlation_id TEXT NOT NULL,
                    title TEXT,
                    content TEXT,
                    embedding JSONB,
                    metadata JSONB,
                    created_at TIMESTAMPTZ NOT NULL,
                    UNIQUE (scope, slug)
                )
                """
            )
            self._initialized = True
        return conn

    @staticmethod
    def _to_record(row: asyncpg.Record) -> TargetRecord:
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
            created_at=row["created_at"],
        )

    async def upsert(self, record: TargetRecord) -> tuple[str, bool]:
        try:
            conn = await self._connect()
        except (OSError, asyncpg.PostgresError) as exc:
            raise RecordStoreError(f"Cannot reach record store: {exc}") from exc
        try:
            inserted = await conn.fetchval(
                """
                INSERT INTO records (record_id, scope, slug, kind, correlation_id,
                                     title, content, embedding, metadata, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (scope, slug) DO NOTHING
                RETURNING record_id
                """,
                uuid.uuid4().hex,
                record.scope,
                record.slug,
                record.kind,
                record.correlation_id,
                record.title,
                record.content,
                json.dumps(record.embedding) if record.embedding is not None else None,
                json.dumps(record.metadata),
                record.created_at,
            )
            if inserted is not None:
                return inserted, True
            existing = await conn.fetchval(
                "SELECT record_id FROM records WHERE scope = $1 AND slug = $2",
                record.scope,
                record.slug,
            )
            return existing, False
        except asyncpg.PostgresError as exc:
            raise RecordStoreError(
                f"Postgres record store failed for {record.scope}/{record.slug}: {exc}"
            ) from exc
        finally:
            await conn.close()

    async def get(self, scope: str, slug: str) -> TargetRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM records WHERE scope = $1 AND slug = $2", scope, slug
            )
            return self._to_record(row) if row else None
        finally:
            await conn.close()

    async def list_records(self, scope: str | None = None) -> list[TargetRecord]:
        conn = await self._connect()
        try:
            if scope is None:
                rows = await conn.fetch("SELECT * FROM records ORDER BY created_at")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM records WHERE scope = $1 ORDER BY created_at", scope
                )
            return [self._to_record(row) for row in rows]
        finally:
            await conn.close()

    async def count(self) -> int:
        conn = await self._connect()
        try:
            return await conn.fetchval("SELECT COUNT(*) FROM records")
        finally:
            await conn.close()
