"""Batch service factory."""

from __future__ import annotations

import os
from typing import Optional

from ..config import GenbatchConfig, load_config
from .base import BaseBatchService
from .inmemory import InMemoryBatchService


def get_batch_service(
    backend: Optional[str] = None, config: Optional[GenbatchConfig] = None
) -> BaseBatchService:
    """Factory function to get the configured batch service."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("GENBATCH_BATCH_BACKEND")
        or config.batch_service.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryBatchService()
    elif backend == "openai":
        from .openai import OpenAIBatchService

        conf = config.batch_service
        return OpenAIBatchService(api_key=conf.api_key, base_url=conf.base_url)
    else:
        raise ValueError(f"Unsupported batch service backend: {backend}")


__all__ = ["BaseBatchService", "InMemoryBatchService", "get_batch_service"]
