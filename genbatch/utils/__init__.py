from .logging import JSONFormatter, setup_logging
from .retry import compute_backoff, retry_async

__all__ = [
    "JSONFormatter",
    "setup_logging",
    "compute_backoff",
    "retry_async",
]
