"""Data models for persisted job progress."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..contracts import WorkItem


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class Job(BaseModel):
    """Resumable unit of work and its checkpoint.

    ``processed_ids`` and ``failed_ids`` only ever grow. An item that failed
    and later succeeded on resume stays in ``failed_ids`` as history; the
    outstanding failures are ``failed_ids - processed_ids``.
    """

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    status: JobStatus = JobStatus.PENDING
    source: Optional[str] = None
    total_items: Optional[int] = Field(default=None, alias="totalFound")
    processed_ids: set[str] = Field(default_factory=set, alias="processedIds")
    failed_ids: set[str] = Field(default_factory=set, alias="failedIds")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    last_updated: datetime = Field(default_factory=utcnow, alias="lastRun")

    @property
    def processed_count(self) -> int:
        return len(self.processed_ids | self.failed_ids)

    @property
    def outstanding_failures(self) -> set[str]:
        return self.failed_ids - self.processed_ids

    @property
    def is_complete(self) -> bool:
        return self.total_items is not None and self.processed_count >= self.total_items

    def remaining(self, items: Iterable[WorkItem], retry_failed: bool = False) -> List[WorkItem]:
        """Items still to do, in their original order.

        Processed items are always skipped. Failed items are skipped too unless
        ``retry_failed`` is set, which is how ``resume`` re-drives them.
        """
        done = self.processed_ids if retry_failed else self.processed_ids | self.failed_ids
        return [item for item in items if item.key not in done]

    def to_checkpoint(self) -> dict[str, Any]:
        """Serialize using the checkpoint file field names."""
        return {
            "jobId": self.job_id,
            "status": self.status.value,
            "source": self.source,
            "totalFound": self.total_items,
            "processedIds": sorted(self.processed_ids),
            "failedIds": sorted(self.failed_ids),
            "errorMessage": self.error_message,
            "createdAt": self.created_at.isoformat(),
            "lastRun": self.last_updated.isoformat(),
        }

    @classmethod
    def from_checkpoint(cls, data: dict[str, Any]) -> "Job":
        return cls.model_validate(data)
