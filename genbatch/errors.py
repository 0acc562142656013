"""Error hierarchy for the batch pipeline.

Errors are split into permanent and retryable families. Per-item errors are
recorded and never abort a job; invocation-level errors leave the last durable
checkpoint untouched.
"""

from __future__ import annotations

from typing import Optional


class GenbatchError(Exception):
    """Base exception for genbatch."""


class PermanentError(GenbatchError):
    """Error that should not be retried."""


class RetryableError(GenbatchError):
    """Error that can be retried with backoff."""


# ---------------------------------------------------------------------------
# Splitter


class EmptyInputError(PermanentError):
    """Input stream contained no records."""

    def __init__(self, source: str) -> None:
        super().__init__(f"No records found in {source}")
        self.source = source


class ChunkTooLargeError(PermanentError):
    """A part cannot be kept under the byte ceiling with the requested parts."""

    def __init__(
        self,
        part_index: int,
        size_bytes: int,
        ceiling_bytes: int,
        suggested_parts: int,
    ) -> None:
        super().__init__(
            f"Part {part_index} would be {size_bytes} bytes, above the "
            f"{ceiling_bytes} byte ceiling. The input may have very long lines; "
            f"try splitting into {suggested_parts} parts."
        )
        self.part_index = part_index
        self.size_bytes = size_bytes
        self.ceiling_bytes = ceiling_bytes
        self.suggested_parts = suggested_parts


class MisalignedStreamsError(PermanentError):
    """Correlated input streams do not have the same number of records."""

    def __init__(self, line_counts: dict[str, int]) -> None:
        counts = ", ".join(f"{name}={count}" for name, count in line_counts.items())
        super().__init__(f"Correlated streams have different line counts: {counts}")
        self.line_counts = line_counts


# ---------------------------------------------------------------------------
# Correlation IDs


class CorrelationIdError(PermanentError):
    """Correlation identifier does not match the documented grammar."""

    def __init__(self, value: object, reason: str) -> None:
        super().__init__(f"Invalid correlation id {value!r}: {reason}")
        self.value = value
        self.reason = reason


# ---------------------------------------------------------------------------
# Batch submission


class QuotaExceededError(GenbatchError):
    """Remote concurrent-batch ceiling reached; caller must retry later."""

    def __init__(self, active: int, ceiling: int) -> None:
        super().__init__(
            f"Batch limit reached: {active}/{ceiling} active batches. "
            "Please wait and try again later."
        )
        self.active = active
        self.ceiling = ceiling


class InvalidRequestFileError(PermanentError):
    """Chunk file has no valid request lines."""


class UploadTimeoutError(RetryableError):
    """Upload did not finish within the size-proportional timeout.

    ``uploaded`` tells the caller whether the file reached the service so a
    retry does not upload it twice.
    """

    def __init__(
        self,
        filename: str,
        timeout: float,
        uploaded: bool = False,
        file_id: Optional[str] = None,
    ) -> None:
        state = f"file uploaded as {file_id}" if uploaded else "file not uploaded"
        super().__init__(
            f"Upload of {filename} timed out after {timeout:.0f}s ({state})"
        )
        self.filename = filename
        self.timeout = timeout
        self.uploaded = uploaded
        self.file_id = file_id


class BatchCreationError(GenbatchError):
    """Upload succeeded but the remote batch could not be created."""

    def __init__(self, file_id: str, reason: str, timed_out: bool = False) -> None:
        super().__init__(
            f"Batch creation failed for uploaded file {file_id}: {reason}"
        )
        self.file_id = file_id
        self.reason = reason
        self.timed_out = timed_out


class BatchServiceError(RetryableError):
    """Transport-level failure talking to the batch service."""


# ---------------------------------------------------------------------------
# Persistence


class JobNotFoundError(PermanentError):
    """Requested job does not exist."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class JobExistsError(PermanentError):
    """A job with the same id already exists."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} already exists")
        self.job_id = job_id


class JobClaimError(GenbatchError):
    """Compare-and-set on the job status lost against another writer."""

    def __init__(self, job_id: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Could not claim job {job_id}: expected status {expected}, found {actual}"
        )
        self.job_id = job_id
        self.expected = expected
        self.actual = actual


class JobStoreUnavailableError(GenbatchError):
    """Progress store cannot be reached; the invocation must abort."""


# ---------------------------------------------------------------------------
# Worker / downstream


class SourceUnavailableError(GenbatchError):
    """Job source data could not be read."""


class TransientRequestError(RetryableError):
    """Network error, timeout, rate limit or 5xx from the downstream API."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ItemRequestError(PermanentError):
    """Downstream API rejected the item."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Recovery


class BatchNotRecoverableError(PermanentError):
    """Remote batch ended in a state that will never produce output."""

    def __init__(self, batch_id: str, status: str) -> None:
        super().__init__(f"Batch {batch_id} is {status} and cannot be recovered")
        self.batch_id = batch_id
        self.status = status


class RecordStoreError(GenbatchError):
    """Target record store rejected or failed a write."""


__all__ = [
    "GenbatchError",
    "PermanentError",
    "RetryableError",
    "EmptyInputError",
    "ChunkTooLargeError",
    "MisalignedStreamsError",
    "CorrelationIdError",
    "QuotaExceededError",
    "InvalidRequestFileError",
    "UploadTimeoutError",
    "BatchCreationError",
    "BatchServiceError",
    "JobNotFoundError",
    "JobExistsError",
    "JobClaimError",
    "JobStoreUnavailableError",
    "SourceUnavailableError",
    "TransientRequestError",
    "ItemRequestError",
    "BatchNotRecoverableError",
    "RecordStoreError",
]
