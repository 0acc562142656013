"""Rate-limited worker loop.

Each invocation makes bounded progress on one job: it takes a small slice of
unprocessed items, calls the downstream API for each under the sliding window,
and checkpoints after every item. Invocations are expected to be short-lived
and repeated (cron, queue trigger or an operator re-running the command).
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from .contracts import WorkItem, WorkItemStatus
from .downstream import ItemOutcome
from .errors import JobClaimError, SourceUnavailableError
from .persistence.models import Job, JobStatus
from .persistence.repository import JobStore, resume_job
from .ratelimit import SlidingWindowLimiter
from .sources import load_job_items

logger = logging.getLogger(__name__)

SourceLoader = Callable[[Job], List[WorkItem]]


class ItemCaller(Protocol):
    async def call(self, item: WorkItem) -> ItemOutcome:
        """Run the downstream request for one item."""


class InvocationReport(BaseModel):
    """Summary of one worker invocation."""

    job_id: Optional[str] = None
    status: Optional[JobStatus] = None
    attempted: int = 0
    succeeded: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    skipped: int = 0
    processed_count: int = 0
    total_items: Optional[int] = None
    outstanding_failures: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def idle(self) -> bool:
        return self.job_id is None

    @property
    def done(self) -> bool:
        return self.status is JobStatus.DONE

    @property
    def fatal(self) -> bool:
        return self.error is not None


class Worker:
    """Drives jobs from the store through the downstream API."""

    def __init__(
        self,
        store: JobStore,
        client: ItemCaller,
        limiter: SlidingWindowLimiter,
        batch_size: int = 5,
        source_loader: SourceLoader = load_job_items,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.client = client
        self.limiter = limiter
        self.batch_size = batch_size
        self.source_loader = source_loader

    async def run_once(self) -> InvocationReport:
        """Advance the oldest processing job, else claim the oldest pending one."""
        job = await self.store.next_job()
        if job is None:
            logger.info("No pending or processing jobs")
            return InvocationReport()
        if job.status is JobStatus.PENDING:
            try:
                job = await self.store.claim(job.job_id)
            except JobClaimError as exc:
                logger.warning(f"{exc}; another worker took it")
                return InvocationReport(job_id=job.job_id, status=JobStatus(exc.actual))
        return await self._process(job, limit=self.batch_size, retry_failed=False)

    async def run_job(
        self, job_id: str, limit: Optional[int] = None, resume: bool = False
    ) -> InvocationReport:
        """Process one named job.

        Args:
            job_id: Job to run.
            limit: Maximum items to attempt; ``None`` means all remaining.
            resume: Re-enter the job from any state and re-drive failed items.
        """
        if resume:
            job = await resume_job(self.store, job_id)
        else:
            job = await self.store.load(job_id)
            if job.status is JobStatus.PENDING:
                job = await self.store.claim(job_id)
            elif job.status is JobStatus.ERROR:
                return self._report(
                    job, error=f"Job {job_id} is in error ({job.error_message}); use resume"
                )
            elif job.status is JobStatus.DONE:
                logger.info(f"Job {job_id} is already done")
                return self._report(job)
        return await self._process(job, limit=limit, retry_failed=resume)

    async def _process(
        self, job: Job, limit: Optional[int], retry_failed: bool
    ) -> InvocationReport:
        try:
            items = self.source_loader(job)
        except SourceUnavailableError as exc:
            logger.error(f"Job {job.job_id}: {exc}")
            job = await self.store.mark_status(job.job_id, JobStatus.ERROR, str(exc))
            return self._report(job, error=str(exc))

        if job.total_items != len(items):
            job = await self.store.set_total(job.job_id, len(items))

        remaining = job.remaining(items, retry_failed=retry_failed)
        batch = remaining if limit is None else remaining[:limit]
        report = InvocationReport(job_id=job.job_id, skipped=len(items) - len(remaining))
        logger.info(
            f"Job {job.job_id}: {job.processed_count}/{len(items)} processed, "
            f"{len(remaining)} remaining, attempting {len(batch)}"
        )

        for index, item in enumerate(batch, start=1):
            await self.limiter.acquire()
            item = item.transition(WorkItemStatus.SUBMITTED)
            outcome = await self.client.call(item)
            report.attempted += 1
            if outcome.success:
                item = item.transition(WorkItemStatus.SUCCEEDED)
                job = await self.store.checkpoint(job.job_id, processed_ids=[item.key])
                report.succeeded.append(item.key)
                logger.info(f"[{index}/{len(batch)}] {item.key} succeeded")
            else:
                item = item.transition(WorkItemStatus.FAILED)
                job = await self.store.checkpoint(job.job_id, failed_ids=[item.key])
                report.failed[item.key] = outcome.error or "unknown error"
                logger.info(f"[{index}/{len(batch)}] {item.key} failed: {outcome.error}")

        if job.is_complete:
            job = await self.store.mark_status(job.job_id, JobStatus.DONE)
            logger.info(f"Job {job.job_id} done: {job.processed_count}/{job.total_items}")
        else:
            logger.info(
                f"Job {job.job_id} partially processed: "
                f"{job.processed_count}/{job.total_items}"
            )
        return self._report(job, report)

    @staticmethod
    def _report(
        job: Job, report: Optional[InvocationReport] = None, error: Optional[str] = None
    ) -> InvocationReport:
        report = report or InvocationReport(job_id=job.job_id)
        report.status = job.status
        report.processed_count = job.processed_count
        report.total_items = job.total_items
        report.outstanding_failures = sorted(job.outstanding_failures)
        report.error = error
        return report


__all__ = ["Worker", "InvocationReport", "ItemCaller"]
