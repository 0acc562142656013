from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from . import constants


class SplitterConfig(BaseModel):
    """Byte limits used when cutting request files into parts."""

    max_part_bytes: int = constants.DEFAULT_MAX_PART_BYTES
    target_part_bytes: int = constants.DEFAULT_TARGET_PART_BYTES


class BatchServiceConfig(BaseModel):
    """Settings for the external asynchronous batch service."""

    backend: Literal["inmemory", "openai"] = "inmemory"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    endpoint: str = constants.DEFAULT_BATCH_ENDPOINT
    completion_window: str = constants.DEFAULT_COMPLETION_WINDOW
    max_concurrent_batches: int = constants.DEFAULT_MAX_CONCURRENT_BATCHES
    upload_seconds_per_mib: float = constants.UPLOAD_TIMEOUT_SECONDS_PER_MIB
    upload_timeout_floor: float = constants.UPLOAD_TIMEOUT_FLOOR_SECONDS
    upload_timeout_ceiling: float = constants.UPLOAD_TIMEOUT_CEILING_SECONDS
    create_timeout: float = constants.BATCH_CREATE_TIMEOUT_SECONDS
    list_timeout: float = constants.BATCH_LIST_TIMEOUT_SECONDS


class WorkerConfig(BaseModel):
    """Worker loop pacing and retry settings."""

    batch_size: int = constants.DEFAULT_WORKER_BATCH_SIZE
    window_requests: int = constants.DEFAULT_WINDOW_REQUESTS
    window_seconds: float = constants.DEFAULT_WINDOW_SECONDS
    max_attempts: int = constants.DEFAULT_MAX_ATTEMPTS
    backoff_base: float = constants.DEFAULT_BACKOFF_BASE
    backoff_jitter: float = constants.DEFAULT_BACKOFF_JITTER


class DownstreamConfig(BaseModel):
    """Per-item HTTP API consumed by the worker loop."""

    url: Optional[str] = None
    timeout: float = constants.DEFAULT_DOWNSTREAM_TIMEOUT_SECONDS
    headers: dict[str, str] = {}


class PersistenceConfig(BaseModel):
    """Where job progress is kept."""

    database_url: Optional[str] = None
    checkpoint_file: str = constants.DEFAULT_CHECKPOINT_FILE


class StorageConfig(BaseModel):
    """Where reconciled records are kept."""

    database_url: Optional[str] = None


class RecoveryConfig(BaseModel):
    fan_out: int = constants.DEFAULT_RECOVERY_FAN_OUT


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_format: bool = False


class GenbatchConfig(BaseModel):
    """Top-level configuration model."""

    splitter: SplitterConfig = SplitterConfig()
    batch_service: BatchServiceConfig = BatchServiceConfig()
    worker: WorkerConfig = WorkerConfig()
    downstream: DownstreamConfig = DownstreamConfig()
    persistence: PersistenceConfig = PersistenceConfig()
    storage: StorageConfig = StorageConfig()
    recovery: RecoveryConfig = RecoveryConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Optional[str] = None) -> GenbatchConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to GENBATCH_CONFIG env
            variable or 'genbatch.yaml' in the current directory.
    """

    config_path = path or os.getenv("GENBATCH_CONFIG", "genbatch.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = GenbatchConfig(**data)
    else:
        config = GenbatchConfig()

    env_db_url = os.getenv("GENBATCH_DATABASE_URL")
    if env_db_url:
        config.persistence.database_url = env_db_url
    env_storage_url = os.getenv("GENBATCH_STORAGE_URL")
    if env_storage_url:
        config.storage.database_url = env_storage_url
    env_backend = os.getenv("GENBATCH_BATCH_BACKEND")
    if env_backend:
        config.batch_service.backend = env_backend.lower()
    env_api_key = os.getenv("OPENAI_API_KEY")
    if env_api_key and not config.batch_service.api_key:
        config.batch_service.api_key = env_api_key
    env_downstream = os.getenv("GENBATCH_DOWNSTREAM_URL")
    if env_downstream:
        config.downstream.url = env_downstream
    env_level = os.getenv("GENBATCH_LOG_LEVEL")
    if env_level:
        config.logging.level = env_level.upper()
    return config
