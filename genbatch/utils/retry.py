from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    attempts: int,
    should_retry: Callable[[BaseException], bool],
    base: float = 1.5,
    jitter: float = 0.5,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    label: str = "operation",
) -> T:
    """Run ``fn`` up to ``attempts`` times, backing off between retryable errors.

    The last error is re-raised once the attempt ceiling is reached or when
    ``should_retry`` rejects it.
    """
    sleep = sleep or asyncio.sleep
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= attempts or not should_retry(exc):
                raise
            delay = compute_backoff(attempt, base=base, jitter=jitter)
            logger.warning(
                f"Attempt {attempt}/{attempts} for {label} failed: {exc}. "
                f"Retrying in {delay:.1f}s"
            )
            await sleep(delay)
            attempt += 1
