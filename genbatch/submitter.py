"""Submit request chunks to the external batch service."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from .batches.base import BaseBatchService
from .config import BatchServiceConfig
from .constants import ACTIVE_BATCH_STATUSES, MIB
from .contracts import BatchStatus, RemoteBatchHandle
from .errors import (
    BatchCreationError,
    BatchServiceError,
    InvalidRequestFileError,
    QuotaExceededError,
    UploadTimeoutError,
)
from .request_lines import clean_request_file

logger = logging.getLogger(__name__)


class SubmissionResult(BaseModel):
    """What the caller needs to track a freshly created batch."""

    batch_id: str
    status: BatchStatus
    input_ref: str
    filename: str
    valid_lines: int
    invalid_lines: int
    handle: RemoteBatchHandle


def upload_timeout(
    size_bytes: int,
    seconds_per_mib: float,
    floor: float,
    ceiling: float,
) -> float:
    """Timeout proportional to upload size, clamped to ``[floor, ceiling]``."""
    proportional = (size_bytes / MIB) * seconds_per_mib
    return min(max(proportional, floor), ceiling)


def build_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Remote metadata is string-valued; ``None`` entries are dropped."""
    return {key: str(value) for key, value in (metadata or {}).items() if value is not None}


class BatchSubmitter:
    """Uploads one chunk and creates the remote batch that processes it."""

    def __init__(
        self,
        service: BaseBatchService,
        config: Optional[BatchServiceConfig] = None,
    ) -> None:
        self.service = service
        self.config = config or BatchServiceConfig()

    async def active_count(self) -> int:
        try:
            handles = await asyncio.wait_for(
                self.service.list_batches(statuses=ACTIVE_BATCH_STATUSES),
                timeout=self.config.list_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise BatchServiceError("Timed out listing active batches") from exc
        return len(handles)

    async def submit(
        self,
        chunk_path: str | Path,
        metadata: Optional[Dict[str, Any]] = None,
        endpoint: Optional[str] = None,
    ) -> SubmissionResult:
        """Submit ``chunk_path`` as a new remote batch.

        Raises:
            QuotaExceededError: The service is at its concurrent-batch ceiling.
                Nothing is uploaded.
            InvalidRequestFileError: The chunk holds no valid request lines.
            UploadTimeoutError: The upload did not finish in time.
            BatchCreationError: The upload worked but the batch was not created.
        """
        path = Path(chunk_path)
        ceiling = self.config.max_concurrent_batches
        active = await self.active_count()
        logger.info(f"Active batches: {active}/{ceiling}")
        if active >= ceiling:
            raise QuotaExceededError(active, ceiling)

        validated = clean_request_file(path)
        if validated.valid_lines == 0:
            raise InvalidRequestFileError(f"No valid request lines in {path}")
        logger.info(
            f"Validated {path.name}: {validated.valid_lines} valid, "
            f"{validated.invalid_lines} invalid"
        )

        content = validated.content.encode("utf-8")
        file_id = await self._upload(content, path.name)

        endpoint = endpoint or self.config.endpoint
        try:
            handle = await asyncio.wait_for(
                self.service.create_batch(
                    file_id,
                    endpoint=endpoint,
                    metadata=build_metadata(metadata),
                    completion_window=self.config.completion_window,
                ),
                timeout=self.config.create_timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error(f"Batch creation timed out; uploaded file {file_id} is orphaned")
            raise BatchCreationError(file_id, "timed out", timed_out=True) from exc
        except Exception as exc:
            logger.error(f"Batch creation failed; uploaded file {file_id} is orphaned: {exc}")
            raise BatchCreationError(file_id, str(exc)) from exc

        logger.info(f"Created batch {handle.batch_id} ({handle.status.value}) from {file_id}")
        return SubmissionResult(
            batch_id=handle.batch_id,
            status=handle.status,
            input_ref=file_id,
            filename=path.name,
            valid_lines=validated.valid_lines,
            invalid_lines=validated.invalid_lines,
            handle=handle,
        )

    async def _upload(self, content: bytes, filename: str) -> str:
        timeout = upload_timeout(
            len(content),
            self.config.upload_seconds_per_mib,
            self.config.upload_timeout_floor,
            self.config.upload_timeout_ceiling,
        )
        logger.info(
            f"Uploading {filename} ({len(content) / MIB:.2f} MB, timeout {timeout:.0f}s)"
        )
        try:
            return await asyncio.wait_for(
                self.service.upload(content, filename, purpose="batch"), timeout=timeout
            )
        except (asyncio.TimeoutError, TimeoutError) as exc:
            file_id = await self.service.find_file(filename)
            raise UploadTimeoutError(
                filename, timeout, uploaded=file_id is not None, file_id=file_id
            ) from exc

    async def status(self, batch_id: str) -> RemoteBatchHandle:
        return await self.service.get_batch(batch_id)

    async def cancel(self, batch_id: str) -> RemoteBatchHandle:
        """Best-effort cancel; the batch may still complete before it lands."""
        handle = await self.service.cancel_batch(batch_id)
        logger.info(f"Cancel requested for batch {batch_id}; status now {handle.status.value}")
        return handle


__all__ = ["BatchSubmitter", "SubmissionResult", "upload_timeout", "build_metadata"]
