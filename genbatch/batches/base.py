"""Base interface for external asynchronous batch services."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Dict, Iterable, List, Optional

from ..contracts import RemoteBatchHandle


class BaseBatchService(metaclass=abc.ABCMeta):
    """Abstract client for a remote batch-processing service.

    Handles returned here are read-only mirrors; only the remote side changes
    their status.
    """

    async def connect(self) -> None:
        """Open connection to the service (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the service (no-op by default)."""
        pass

    @abc.abstractmethod
    async def upload(self, content: bytes, filename: str, purpose: str = "batch") -> str:
        """Upload request content and return its file reference."""
        raise NotImplementedError

    @abc.abstractmethod
    async def create_batch(
        self,
        input_ref: str,
        endpoint: str,
        metadata: Dict[str, str],
        completion_window: str = "24h",
    ) -> RemoteBatchHandle:
        """Create a remote batch over an uploaded file."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get_batch(self, batch_id: str) -> RemoteBatchHandle:
        """Fetch the current state of a batch."""
        raise NotImplementedError

    @abc.abstractmethod
    async def list_batches(
        self, statuses: Optional[Iterable[str]] = None
    ) -> List[RemoteBatchHandle]:
        """List batches, optionally restricted to the given statuses."""
        raise NotImplementedError

    @abc.abstractmethod
    def download_file(self, file_ref: str) -> AsyncIterator[str]:
        """Yield the lines of a stored file."""
        raise NotImplementedError

    @abc.abstractmethod
    async def cancel_batch(self, batch_id: str) -> RemoteBatchHandle:
        """Request cancellation. The batch may still complete first."""
        raise NotImplementedError

    async def find_file(self, filename: str) -> Optional[str]:
        """Look up an uploaded file by name; ``None`` when unknown."""
        return None
