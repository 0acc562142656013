"""PostgreSQL implementation of the job store."""

from __future__ import annotations

from typing import Iterable

import asyncpg

from ..errors import JobClaimError, JobExistsError, JobNotFoundError, JobStoreUnavailableError
from .models import Job, JobStatus, utcnow
from .repository import JobStore

PROCESSED = "processed"
FAILED = "failed"


class PostgresJobStore(JobStore):
    """Persist job progress using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresError) as exc:
            raise JobStoreUnavailableError(f"Cannot reach job store: {exc}") from exc
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                job_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                source TEXT,
                total_items INTEGER,
                error_message TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS job_items (
                job_id TEXT NOT NULL REFERENCES jobs(job_id),
                item_id TEXT NOT NULL,
                outcome TEXT NOT NULL,
                recorded_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (job_id, item_id, outcome)
            )
            """
        )

    async def _load(self, conn: asyncpg.Connection, job_id: str) -> Job:
        row = await conn.fetchrow("SELECT * FROM jobs WHERE job_id = $1", job_id)
        if row is None:
            raise JobNotFoundError(job_id)
        items = await conn.fetch(
            "SELECT item_id, outcome FROM job_items WHERE job_id = $1", job_id
        )
        return Job(
            job_id=row["job_id"],
            status=JobStatus(row["status"]),
            source=row["source"],
            total_items=row["total_items"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            last_updated=row["updated_at"],
            processed_ids={r["item_id"] for r in items if r["outcome"] == PROCESSED},
            failed_ids={r["item_id"] for r in items if r["outcome"] == FAILED},
        )

    async def _update(self, job_id: str, query: str, *params) -> Job:
        conn = await self._connect()
        try:
            result = await conn.execute(query, *params)
            if result.endswith(" 0"):
                raise JobNotFoundError(job_id)
            return await self._load(conn, job_id)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create(
        self, job_id: str, source: str | None = None, total_items: int | None = None
    ) -> Job:
        conn = await self._connect()
        now = utcnow()
        try:
            await conn.execute(
                "INSERT INTO jobs (job_id, status, source, total_items, created_at, updated_at) "
                "VALUES ($1, $2, $3, $4, $5, $6)",
                job_id,
                JobStatus.PENDING.value,
                source,
                total_items,
                now,
                now,
            )
            return await self._load(conn, job_id)
        except asyncpg.UniqueViolationError as exc:
            raise JobExistsError(job_id) from exc
        finally:
            await conn.close()

    async def load(self, job_id: str) -> Job:
        conn = await self._connect()
        try:
            return await self._load(conn, job_id)
        finally:
            await conn.close()

    async def checkpoint(
        self,
        job_id: str,
        processed_ids: Iterable[str] = (),
        failed_ids: Iterable[str] = (),
    ) -> Job:
        now = utcnow()
        rows = [(job_id, item, PROCESSED, now) for item in processed_ids] + [
            (job_id, item, FAILED, now) for item in failed_ids
        ]
        conn = await self._connect()
        try:
            async with conn.transaction():
                result = await conn.execute(
                    "UPDATE jobs SET updated_at = $1 WHERE job_id = $2", now, job_id
                )
                if result.endswith(" 0"):
                    raise JobNotFoundError(job_id)
                if rows:
                    await conn.executemany(
                        "INSERT INTO job_items (job_id, item_id, outcome, recorded_at) "
                        "VALUES ($1, $2, $3, $4) ON CONFLICT DO NOTHING",
                        rows,
                    )
            return await self._load(conn, job_id)
        finally:
            await conn.close()

    async def mark_status(
        self, job_id: str, status: JobStatus, error_message: str | None = None
    ) -> Job:
        return await self._update(
            job_id,
            "UPDATE jobs SET status = $1, error_message = $2, updated_at = $3 WHERE job_id = $4",
            status.value,
            error_message,
            utcnow(),
            job_id,
        )

    async def claim(self, job_id: str, expected: JobStatus = JobStatus.PENDING) -> Job:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE jobs SET status = $1, updated_at = $2 WHERE job_id = $3 AND status = $4",
                JobStatus.PROCESSING.value,
                utcnow(),
                job_id,
                expected.value,
            )
            job = await self._load(conn, job_id)
            if result.endswith(" 0"):
                raise JobClaimError(job_id, expected.value, job.status.value)
            return job
        finally:
            await conn.close()

    async def set_total(self, job_id: str, total_items: int) -> Job:
        return await self._update(
            job_id,
            "UPDATE jobs SET total_items = $1, updated_at = $2 WHERE job_id = $3",
            total_items,
            utcnow(),
            job_id,
        )

    async def next_job(self) -> Job | None:
        conn = await self._connect()
        try:
            for status in (JobStatus.PROCESSING, JobStatus.PENDING):
                row = await conn.fetchrow(
                    "SELECT job_id FROM jobs WHERE status = $1 ORDER BY created_at, job_id LIMIT 1",
                    status.value,
                )
                if row is not None:
                    return await self._load(conn, row["job_id"])
            return None
        finally:
            await conn.close()

    async def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        conn = await self._connect()
        try:
            if status is None:
                rows = await conn.fetch("SELECT job_id FROM jobs ORDER BY created_at, job_id")
            else:
                rows = await conn.fetch(
                    "SELECT job_id FROM jobs WHERE status = $1 ORDER BY created_at, job_id",
                    status.value,
                )
            return [await self._load(conn, row["job_id"]) for row in rows]
        finally:
            await conn.close()
