"""Client for the per-item downstream HTTP API."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from pydantic import BaseModel

from .config import DownstreamConfig, WorkerConfig
from .contracts import WorkItem
from .errors import GenbatchError, ItemRequestError, RetryableError, TransientRequestError
from .utils.retry import retry_async

logger = logging.getLogger(__name__)


class ItemOutcome(BaseModel):
    """Result of calling the downstream API for one item."""

    item_id: str
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    attempts: int = 1
    response: Optional[Any] = None


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("error"):
        error = body["error"]
        return error if isinstance(error, str) else str(error)
    return response.text


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, RetryableError)


class DownstreamClient:
    """POSTs ``{"id": ..., **params}`` for each work item.

    Network errors, timeouts, 429 and 5xx responses are retried with backoff.
    Other non-2xx responses fail the item straight away.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 60.0,
        headers: Optional[Dict[str, str]] = None,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        backoff_jitter: float = 0.5,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_jitter = backoff_jitter
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    @classmethod
    def from_config(
        cls, downstream: DownstreamConfig, worker: Optional[WorkerConfig] = None
    ) -> "DownstreamClient":
        if not downstream.url:
            raise ValueError("No downstream URL configured (set GENBATCH_DOWNSTREAM_URL)")
        worker = worker or WorkerConfig()
        return cls(
            downstream.url,
            timeout=downstream.timeout,
            headers=downstream.headers,
            max_attempts=worker.max_attempts,
            backoff_base=worker.backoff_base,
            backoff_jitter=worker.backoff_jitter,
        )

    async def __aenter__(self) -> "DownstreamClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, item: WorkItem) -> httpx.Response:
        body = {"id": item.id, **item.payload}
        try:
            response = await self._client.post(self.url, json=body)
        except httpx.TimeoutException as exc:
            raise TransientRequestError(f"Timeout calling downstream for {item.id}") from exc
        except httpx.TransportError as exc:
            raise TransientRequestError(f"Network error for {item.id}: {exc}") from exc

        if response.is_success:
            return response
        message = _error_text(response)
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientRequestError(message, status_code=response.status_code)
        raise ItemRequestError(message, status_code=response.status_code)

    async def call(self, item: WorkItem) -> ItemOutcome:
        """Call the API for ``item``. Failures are returned, never raised."""
        attempts = 0

        async def attempt() -> httpx.Response:
            nonlocal attempts
            attempts += 1
            return await self._post(item)

        try:
            response = await retry_async(
                attempt,
                attempts=self.max_attempts,
                should_retry=_is_retryable,
                base=self.backoff_base,
                jitter=self.backoff_jitter,
                sleep=self._sleep,
                label=f"item {item.id}",
            )
        except GenbatchError as exc:
            status_code = getattr(exc, "status_code", None)
            logger.error(f"Item {item.id} failed after {attempts} attempt(s): {exc}")
            return ItemOutcome(
                item_id=item.id,
                success=False,
                status_code=status_code,
                error=str(exc),
                attempts=attempts,
            )

        try:
            payload = response.json()
        except ValueError:
            payload = response.text or None
        return ItemOutcome(
            item_id=item.id,
            success=True,
            status_code=response.status_code,
            attempts=attempts,
            response=payload,
        )
