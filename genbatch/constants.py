"""Default tuning values for the batch pipeline.

These mirror the limits of the hosted batch service the pipeline was first
built against. Every value can be overridden through configuration.
"""

MIB = 1024 * 1024

# Hosted batch service upload ceiling and the target kept below it.
DEFAULT_MAX_PART_BYTES = 200 * MIB
DEFAULT_TARGET_PART_BYTES = 180 * MIB

DEFAULT_MAX_CONCURRENT_BATCHES = 50
DEFAULT_BATCH_ENDPOINT = "/v1/chat/completions"
DEFAULT_COMPLETION_WINDOW = "24h"

# Upload timeout: seconds per MiB, clamped to [floor, ceiling].
UPLOAD_TIMEOUT_SECONDS_PER_MIB = 6.0
UPLOAD_TIMEOUT_FLOOR_SECONDS = 300.0
UPLOAD_TIMEOUT_CEILING_SECONDS = 600.0
BATCH_CREATE_TIMEOUT_SECONDS = 60.0
BATCH_LIST_TIMEOUT_SECONDS = 30.0

# Worker loop
DEFAULT_WORKER_BATCH_SIZE = 5
DEFAULT_WINDOW_REQUESTS = 9
DEFAULT_WINDOW_SECONDS = 56.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_BACKOFF_JITTER = 0.5
DEFAULT_DOWNSTREAM_TIMEOUT_SECONDS = 60.0

DEFAULT_RECOVERY_FAN_OUT = 4

DEFAULT_CHECKPOINT_FILE = ".genbatch-progress.json"

ACTIVE_BATCH_STATUSES = frozenset({"validating", "in_progress", "finalizing"})
TERMINAL_FAILURE_STATUSES = frozenset({"failed", "cancelled", "expired"})
