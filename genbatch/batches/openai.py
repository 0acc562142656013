"""Batch service backed by the OpenAI Files and Batches APIs."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import openai
from openai import AsyncOpenAI

from ..contracts import BatchStatus, RemoteBatchHandle, RequestCounts
from ..errors import BatchServiceError
from .base import BaseBatchService

logger = logging.getLogger(__name__)


def _to_handle(batch: Any) -> RemoteBatchHandle:
    counts = getattr(batch, "request_counts", None)
    return RemoteBatchHandle(
        batch_id=batch.id,
        input_ref=batch.input_file_id,
        status=BatchStatus(batch.status),
        output_ref=batch.output_file_id,
        error_ref=batch.error_file_id,
        endpoint=batch.endpoint,
        metadata=dict(batch.metadata or {}),
        request_counts=RequestCounts(
            total=counts.total, completed=counts.completed, failed=counts.failed
        )
        if counts is not None
        else RequestCounts(),
        created_at=batch.created_at,
    )


class OpenAIBatchService(BaseBatchService):
    """Talks to the OpenAI batch endpoints through ``AsyncOpenAI``.

    SDK timeouts surface as :class:`TimeoutError`; other API failures as
    :class:`~genbatch.errors.BatchServiceError`.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    async def disconnect(self) -> None:
        await self._client.close()

    async def upload(self, content: bytes, filename: str, purpose: str = "batch") -> str:
        try:
            uploaded = await self._client.files.create(file=(filename, content), purpose=purpose)
        except openai.APITimeoutError as exc:
            raise TimeoutError(f"Upload of {filename} timed out") from exc
        except openai.APIError as exc:
            raise BatchServiceError(f"Upload of {filename} failed: {exc}") from exc
        logger.info(f"Uploaded {filename} as {uploaded.id}")
        return uploaded.id

    async def create_batch(
        self,
        input_ref: str,
        endpoint: str,
        metadata: Dict[str, str],
        completion_window: str = "24h",
    ) -> RemoteBatchHandle:
        try:
            batch = await self._client.batches.create(
                input_file_id=input_ref,
                endpoint=endpoint,
                completion_window=completion_window,
                metadata=metadata,
            )
        except openai.APITimeoutError as exc:
            raise TimeoutError(f"Batch creation for {input_ref} timed out") from exc
        except openai.APIError as exc:
            raise BatchServiceError(f"Batch creation for {input_ref} failed: {exc}") from exc
        return _to_handle(batch)

    async def get_batch(self, batch_id: str) -> RemoteBatchHandle:
        try:
            batch = await self._client.batches.retrieve(batch_id)
        except openai.APIError as exc:
            raise BatchServiceError(f"Could not retrieve batch {batch_id}: {exc}") from exc
        return _to_handle(batch)

    async def list_batches(
        self, statuses: Optional[Iterable[str]] = None
    ) -> List[RemoteBatchHandle]:
        wanted = {str(s) for s in statuses} if statuses is not None else None
        handles: List[RemoteBatchHandle] = []
        try:
            async for batch in self._client.batches.list(limit=100):
                if wanted is None or batch.status in wanted:
                    handles.append(_to_handle(batch))
        except openai.APITimeoutError as exc:
            raise TimeoutError("Listing batches timed out") from exc
        except openai.APIError as exc:
            raise BatchServiceError(f"Could not list batches: {exc}") from exc
        return handles

    async def download_file(self, file_ref: str) -> AsyncIterator[str]:
        try:
            async with self._client.files.with_streaming_response.content(file_ref) as response:
                async for line in response.iter_lines():
                    yield line
        except openai.APIError as exc:
            raise BatchServiceError(f"Could not download {file_ref}: {exc}") from exc

    async def cancel_batch(self, batch_id: str) -> RemoteBatchHandle:
        try:
            batch = await self._client.batches.cancel(batch_id)
        except openai.APIError as exc:
            raise BatchServiceError(f"Could not cancel batch {batch_id}: {exc}") from exc
        return _to_handle(batch)

    async def find_file(self, filename: str) -> Optional[str]:
        newest = None
        try:
            async for item in self._client.files.list(purpose="batch"):
                if item.filename == filename and (
                    newest is None or item.created_at > newest.created_at
                ):
                    newest = item
        except openai.APIError as exc:
            logger.warning(f"Could not look up uploaded file {filename}: {exc}")
            return None
        return newest.id if newest else None
