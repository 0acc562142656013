"""SQLite implementation of the job store."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from ..errors import JobClaimError, JobExistsError, JobNotFoundError, JobStoreUnavailableError
from .models import Job, JobStatus, utcnow
from .repository import JobStore

PROCESSED = "processed"
FAILED = "failed"


class SQLiteJobStore(JobStore):
    """Persist job progress using SQLite.

    Item ids live in ``job_items`` keyed by ``(job_id, item_id, outcome)`` so a
    checkpoint is an insert-or-ignore and never rewrites earlier entries.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise JobStoreUnavailableError(f"Cannot open {self.db_path}: {exc}") from exc
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                job_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                source TEXT,
                total_items INTEGER,
                error_message TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS job_items (
                job_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                outcome TEXT NOT NULL,
                recorded_at TEXT NOT NULL,
                PRIMARY KEY (job_id, item_id, outcome)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _load_sync(self, job_id: str) -> Job:
        row = self._fetchone("SELECT * FROM jobs WHERE job_id = ?", job_id)
        if row is None:
            raise JobNotFoundError(job_id)
        items = self._fetchall(
            "SELECT item_id, outcome FROM job_items WHERE job_id = ?", job_id
        )
        return self._to_job(row, items)

    @staticmethod
    def _to_job(row: sqlite3.Row, items: list[sqlite3.Row]) -> Job:
        return Job(
            job_id=row["job_id"],
            status=JobStatus(row["status"]),
            source=row["source"],
            total_items=row["total_items"],
            error_message=row["error_message"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_updated=datetime.fromisoformat(row["updated_at"]),
            processed_ids={r["item_id"] for r in items if r["outcome"] == PROCESSED},
            failed_ids={r["item_id"] for r in items if r["outcome"] == FAILED},
        )

    def _update_sync(self, job_id: str, query: str, *params: Any) -> Job:
        with self._conn:
            cur = self._conn.execute(query, params)
            if cur.rowcount == 0:
                raise JobNotFoundError(job_id)
        return self._load_sync(job_id)

    def _create_sync(self, job_id: str, source: str | None, total_items: int | None) -> Job:
        now = utcnow().isoformat()
        try:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO jobs (job_id, status, source, total_items, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (job_id, JobStatus.PENDING.value, source, total_items, now, now),
                )
        except sqlite3.IntegrityError as exc:
            raise JobExistsError(job_id) from exc
        return self._load_sync(job_id)

    def _checkpoint_sync(
        self, job_id: str, processed: list[str], failed: list[str]
    ) -> Job:
        now = utcnow().isoformat()
        with self._conn:
            cur = self._conn.execute(
                "UPDATE jobs SET updated_at = ? WHERE job_id = ?", (now, job_id)
            )
            if cur.rowcount == 0:
                raise JobNotFoundError(job_id)
            self._conn.executemany(
                "INSERT OR IGNORE INTO job_items (job_id, item_id, outcome, recorded_at) "
                "VALUES (?, ?, ?, ?)",
                [(job_id, item, PROCESSED, now) for item in processed]
                + [(job_id, item, FAILED, now) for item in failed],
            )
        return self._load_sync(job_id)

    def _claim_sync(self, job_id: str, expected: JobStatus) -> Job:
        with self._conn:
            cur = self._conn.execute(
                "UPDATE jobs SET status = ?, updated_at = ? WHERE job_id = ? AND status = ?",
                (JobStatus.PROCESSING.value, utcnow().isoformat(), job_id, expected.value),
            )
        if cur.rowcount == 0:
            current = self._load_sync(job_id)
            raise JobClaimError(job_id, expected.value, current.status.value)
        return self._load_sync(job_id)

    def _list_sync(self, status: JobStatus | None) -> list[Job]:
        if status is None:
            rows = self._fetchall("SELECT * FROM jobs ORDER BY created_at, job_id")
        else:
            rows = self._fetchall(
                "SELECT * FROM jobs WHERE status = ? ORDER BY created_at, job_id", status.value
            )
        return [
            self._to_job(
                row,
                self._fetchall(
                    "SELECT item_id, outcome FROM job_items WHERE job_id = ?", row["job_id"]
                ),
            )
            for row in rows
        ]

    async def _run(self, fn, *args: Any) -> Any:
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except sqlite3.OperationalError as exc:
                raise JobStoreUnavailableError(f"SQLite job store failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Repository API
    async def create(
        self, job_id: str, source: str | None = None, total_items: int | None = None
    ) -> Job:
        return await self._run(self._create_sync, job_id, source, total_items)

    async def load(self, job_id: str) -> Job:
        return await self._run(self._load_sync, job_id)

    async def checkpoint(
        self,
        job_id: str,
        processed_ids: Iterable[str] = (),
        failed_ids: Iterable[str] = (),
    ) -> Job:
        return await self._run(
            self._checkpoint_sync, job_id, list(processed_ids), list(failed_ids)
        )

    async def mark_status(
        self, job_id: str, status: JobStatus, error_message: str | None = None
    ) -> Job:
        return await self._run(
            self._update_sync,
            job_id,
            "UPDATE jobs SET status = ?, error_message = ?, updated_at = ? WHERE job_id = ?",
            status.value,
            error_message,
            utcnow().isoformat(),
            job_id,
        )

    async def claim(self, job_id: str, expected: JobStatus = JobStatus.PENDING) -> Job:
        return await self._run(self._claim_sync, job_id, expected)

    async def set_total(self, job_id: str, total_items: int) -> Job:
        return await self._run(
            self._update_sync,
            job_id,
            "UPDATE jobs SET total_items = ?, updated_at = ? WHERE job_id = ?",
            total_items,
            utcnow().isoformat(),
            job_id,
        )

    async def next_job(self) -> Job | None:
        for status in (JobStatus.PROCESSING, JobStatus.PENDING):
            jobs = await self._run(self._list_sync, status)
            if jobs:
                return jobs[0]
        return None

    async def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        return await self._run(self._list_sync, status)

    def close(self) -> None:
        self._conn.close()
