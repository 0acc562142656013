"""Core data contracts for the batch pipeline."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .constants import ACTIVE_BATCH_STATUSES, TERMINAL_FAILURE_STATUSES


class WorkItemStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_ITEM_TRANSITIONS = {
    WorkItemStatus.PENDING: {WorkItemStatus.SUBMITTED, WorkItemStatus.SUCCEEDED, WorkItemStatus.FAILED},
    WorkItemStatus.SUBMITTED: {WorkItemStatus.SUCCEEDED, WorkItemStatus.FAILED},
    WorkItemStatus.SUCCEEDED: set(),
    WorkItemStatus.FAILED: set(),
}


class WorkItem(BaseModel):
    """One atomic unit of downstream work.

    Only ``status`` changes after creation, and only along the
    pending -> submitted -> succeeded/failed path.
    """

    id: str
    correlation_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: WorkItemStatus = WorkItemStatus.PENDING

    @property
    def key(self) -> str:
        """Identifier recorded in job checkpoints."""
        return self.correlation_id or self.id

    def transition(self, status: WorkItemStatus) -> "WorkItem":
        if status not in _ITEM_TRANSITIONS[self.status]:
            raise ValueError(
                f"Work item {self.key} cannot move from {self.status.value} to {status.value}"
            )
        return self.model_copy(update={"status": status})


class Chunk(BaseModel):
    """A contiguous slice of records written to one output file."""

    index: int
    total_parts: int
    line_count: int
    byte_size: int
    path: Path

    @property
    def filename(self) -> str:
        return self.path.name


class SplitResult(BaseModel):
    """Outcome of splitting one input stream."""

    source: Path
    total_lines: int
    total_bytes: int
    lines_per_part: int
    parts: List[Chunk] = Field(default_factory=list)

    @property
    def line_distribution(self) -> List[int]:
        return [part.line_count for part in self.parts]


class BatchStatus(str, Enum):
    VALIDATING = "validating"
    IN_PROGRESS = "in_progress"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"


class RequestCounts(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0


class RemoteBatchHandle(BaseModel):
    """Local, read-only mirror of a batch running inside the remote service."""

    batch_id: str
    input_ref: str
    status: BatchStatus
    output_ref: Optional[str] = None
    error_ref: Optional[str] = None
    endpoint: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    request_counts: RequestCounts = Field(default_factory=RequestCounts)
    created_at: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status.value in ACTIVE_BATCH_STATUSES

    @property
    def is_completed(self) -> bool:
        return self.status is BatchStatus.COMPLETED

    @property
    def is_terminal_failure(self) -> bool:
        return self.status.value in TERMINAL_FAILURE_STATUSES


class ReconcileOutcome(str, Enum):
    RECOVERED = "recovered"
    SKIPPED = "skipped"
    FAILED = "failed"


class ReconciledResult(BaseModel):
    """Materialized outcome of one work item after recovery."""

    correlation_id: str
    success: bool
    outcome: ReconcileOutcome
    target_record_id: Optional[str] = None
    error: Optional[str] = None


__all__ = [
    "WorkItemStatus",
    "WorkItem",
    "Chunk",
    "SplitResult",
    "BatchStatus",
    "RequestCounts",
    "RemoteBatchHandle",
    "ReconcileOutcome",
    "ReconciledResult",
]
