"""Reconcile completed remote batches into durable storage."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .batches.base import BaseBatchService
from .constants import TERMINAL_FAILURE_STATUSES
from .contracts import BatchStatus, ReconciledResult, ReconcileOutcome, RemoteBatchHandle
from .correlation import CorrelationId
from .errors import BatchNotRecoverableError, CorrelationIdError, GenbatchError
from .mappers import ResultMapper
from .storage.repository import RecordStore

logger = logging.getLogger(__name__)


class LineFailure(BaseModel):
    """A result line that could not be reconciled."""

    batch_id: str
    line: int
    correlation_id: Optional[str] = None
    error: str


class BatchRecovery(BaseModel):
    """Outcome for one remote batch."""

    batch_id: str
    status: Optional[BatchStatus] = None
    recovered: int = 0
    skipped: int = 0
    failed: int = 0
    pending: bool = False
    not_recoverable: bool = False
    error: Optional[str] = None
    results: List[ReconciledResult] = Field(default_factory=list)
    line_failures: List[LineFailure] = Field(default_factory=list)

    def add(self, result: ReconciledResult) -> None:
        self.results.append(result)
        if result.outcome is ReconcileOutcome.RECOVERED:
            self.recovered += 1
        elif result.outcome is ReconcileOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    def add_line_failure(self, failure: LineFailure) -> None:
        self.line_failures.append(failure)
        self.failed += 1


class RecoverySummary(BaseModel):
    """Aggregated counts across every batch touched by one recovery run."""

    batches: List[BatchRecovery] = Field(default_factory=list)

    @property
    def recovered(self) -> int:
        return sum(b.recovered for b in self.batches)

    @property
    def skipped(self) -> int:
        return sum(b.skipped for b in self.batches)

    @property
    def failed(self) -> int:
        return sum(b.failed for b in self.batches)

    @property
    def pending(self) -> List[str]:
        return [b.batch_id for b in self.batches if b.pending]

    @property
    def not_recoverable(self) -> List[str]:
        return [b.batch_id for b in self.batches if b.not_recoverable]

    @property
    def errors(self) -> Dict[str, str]:
        return {
            b.batch_id: b.error for b in self.batches if b.error and not b.not_recoverable
        }

    @property
    def failures(self) -> List[str]:
        """Human-readable failure lines, one per failed item or line."""
        lines: List[str] = []
        for batch in self.batches:
            for result in batch.results:
                if result.outcome is ReconcileOutcome.FAILED:
                    lines.append(f"{batch.batch_id} {result.correlation_id}: {result.error}")
            for failure in batch.line_failures:
                label = failure.correlation_id or f"line {failure.line}"
                lines.append(f"{batch.batch_id} {label}: {failure.error}")
        return lines


class RecoveryEngine:
    """Downloads completed batch output and upserts each result exactly once.

    Records are keyed by a natural key, so running twice over the same batch
    reports the second pass as skipped rather than creating duplicates.
    """

    def __init__(
        self,
        service: BaseBatchService,
        store: RecordStore,
        mapper: Optional[ResultMapper] = None,
        fan_out: int = 4,
    ) -> None:
        if fan_out < 1:
            raise ValueError("fan_out must be at least 1")
        self.service = service
        self.store = store
        self.mapper = mapper or ResultMapper()
        self.fan_out = fan_out

    async def recover(self, batch_id: Optional[str] = None) -> RecoverySummary:
        """Recover one batch, or every completed batch when ``batch_id`` is omitted.

        In the all-batches mode, batches that ended failed, cancelled or expired
        are listed as not recoverable; nothing is downloaded for them.
        """
        if batch_id is not None:
            batch_ids = [batch_id]
        else:
            handles = await self.service.list_batches(
                statuses={BatchStatus.COMPLETED.value, *TERMINAL_FAILURE_STATUSES}
            )
            batch_ids = [handle.batch_id for handle in handles]
        logger.info(f"[recover] Recovering {len(batch_ids)} batch(es), fan-out {self.fan_out}")

        semaphore = asyncio.Semaphore(self.fan_out)

        async def guarded(target: str) -> BatchRecovery:
            async with semaphore:
                return await self.recover_batch(target)

        batches = await asyncio.gather(*(guarded(target) for target in batch_ids))
        summary = RecoverySummary(batches=list(batches))
        logger.info(
            f"[recover] Done: {summary.recovered} recovered, {summary.skipped} skipped, "
            f"{summary.failed} failed"
        )
        return summary

    async def recover_batch(self, batch_id: str) -> BatchRecovery:
        report = BatchRecovery(batch_id=batch_id)
        try:
            handle = await self.service.get_batch(batch_id)
        except GenbatchError as exc:
            logger.error(f"[recover] Batch {batch_id}: could not fetch status: {exc}")
            report.error = str(exc)
            return report

        report.status = handle.status
        if handle.is_terminal_failure:
            report.not_recoverable = True
            report.error = str(BatchNotRecoverableError(batch_id, handle.status.value))
            logger.warning(f"[recover] {report.error}")
            return report
        if not handle.is_completed:
            report.pending = True
            logger.info(f"[recover] Batch {batch_id} still {handle.status.value}")
            return report

        try:
            if handle.output_ref:
                await self._reconcile_output(handle, report)
            if handle.error_ref:
                await self._reconcile_errors(handle, report)
        except GenbatchError as exc:
            logger.error(f"[recover] Batch {batch_id}: download failed: {exc}")
            report.error = str(exc)
        logger.info(
            f"[recover] Batch {batch_id}: {report.recovered} recovered, "
            f"{report.skipped} skipped, {report.failed} failed"
        )
        return report

    async def _reconcile_output(self, handle: RemoteBatchHandle, report: BatchRecovery) -> None:
        line_no = 0
        async for line in self.service.download_file(handle.output_ref):
            line_no += 1
            if not line.strip():
                continue
            parsed = self._parse_line(handle.batch_id, line_no, line, report)
            if parsed is None:
                continue
            cid, record = parsed
            result = await self._reconcile_one(handle, cid, record)
            report.add(result)

    async def _reconcile_errors(self, handle: RemoteBatchHandle, report: BatchRecovery) -> None:
        line_no = 0
        async for line in self.service.download_file(handle.error_ref):
            line_no += 1
            if not line.strip():
                continue
            parsed = self._parse_line(handle.batch_id, line_no, line, report)
            if parsed is None:
                continue
            cid, record = parsed
            report.add(_failed(cid, _describe_error(record)))

    def _parse_line(
        self, batch_id: str, line_no: int, line: str, report: BatchRecovery
    ) -> Optional[tuple[CorrelationId, dict]]:
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:
            report.add_line_failure(
                LineFailure(batch_id=batch_id, line=line_no, error=f"Invalid JSON: {exc}")
            )
            return None
        custom_id = record.get("custom_id") if isinstance(record, dict) else None
        if not custom_id:
            report.add_line_failure(
                LineFailure(batch_id=batch_id, line=line_no, error="Missing custom_id")
            )
            return None
        try:
            cid = CorrelationId.parse(custom_id)
        except CorrelationIdError as exc:
            report.add_line_failure(
                LineFailure(
                    batch_id=batch_id, line=line_no, correlation_id=str(custom_id), error=str(exc)
                )
            )
            return None
        return cid, record

    async def _reconcile_one(
        self, handle: RemoteBatchHandle, cid: CorrelationId, record: dict
    ) -> ReconciledResult:
        response = record.get("response") or {}
        if not isinstance(response, dict):
            return _failed(cid, f"Malformed response: {type(response).__name__}")
        if record.get("error") or response.get("status_code") != 200:
            return _failed(cid, _describe_error(record))
        body = response.get("body") or {}
        if not isinstance(body, dict):
            return _failed(cid, f"Malformed response body: {type(body).__name__}")
        try:
            target = self.mapper.map(
                cid,
                body,
                metadata={**handle.metadata, "batch_id": handle.batch_id},
            )
        except ValueError as exc:
            return _failed(cid, str(exc))
        try:
            record_id, created = await self.store.upsert(target)
        except GenbatchError as exc:
            logger.error(f"[recover] Could not store {target.scope}/{target.slug}: {exc}")
            return _failed(cid, str(exc))
        if not created:
            logger.info(f"[recover] Skipping duplicate entry: {target.scope}/{target.slug}")
        return ReconciledResult(
            correlation_id=str(cid),
            success=True,
            outcome=ReconcileOutcome.RECOVERED if created else ReconcileOutcome.SKIPPED,
            target_record_id=record_id,
        )


def _failed(cid: CorrelationId, error: str) -> ReconciledResult:
    return ReconciledResult(
        correlation_id=str(cid),
        success=False,
        outcome=ReconcileOutcome.FAILED,
        error=error,
    )


def _describe_error(record: dict) -> str:
    error = record.get("error")
    if isinstance(error, dict):
        return error.get("message") or error.get("code") or json.dumps(error)
    if error:
        return str(error)
    response = record.get("response")
    if not isinstance(response, dict):
        return "Missing response"
    body = response.get("body")
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"].get("message") or json.dumps(body["error"])
    return f"HTTP {response.get('status_code')}"


__all__ = ["RecoveryEngine", "RecoverySummary", "BatchRecovery", "LineFailure"]
