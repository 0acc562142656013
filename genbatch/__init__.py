"""genbatch: chunked batch-generation pipeline with resumable jobs."""

from .batches import get_batch_service
from .contracts import Chunk, RemoteBatchHandle, ReconciledResult, SplitResult, WorkItem
from .correlation import CorrelationId
from .persistence import get_job_store, resume_job
from .recovery import RecoveryEngine
from .splitter import split_correlated, split_file
from .storage import get_record_store
from .submitter import BatchSubmitter
from .worker import Worker

__version__ = "0.1.0"
__all__ = [
    "WorkItem",
    "Chunk",
    "SplitResult",
    "RemoteBatchHandle",
    "ReconciledResult",
    "CorrelationId",
    "split_file",
    "split_correlated",
    "BatchSubmitter",
    "Worker",
    "RecoveryEngine",
    "get_batch_service",
    "get_job_store",
    "get_record_store",
    "resume_job",
]
