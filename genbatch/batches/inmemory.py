"""In-memory batch service for tests and dry runs."""

from __future__ import annotations

import asyncio
import json
import time
from itertools import count
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

from ..contracts import BatchStatus, RemoteBatchHandle, RequestCounts
from ..errors import BatchServiceError
from .base import BaseBatchService

Responder = Callable[[dict], dict]


def echo_responder(request: dict) -> dict:
    """Default result: a chat completion whose content names the request."""
    return {
        "status_code": 200,
        "body": {
            "choices": [
                {"message": {"role": "assistant", "content": f"Result for {request['custom_id']}"}}
            ]
        },
    }


class InMemoryBatchService(BaseBatchService):
    """Keeps files and batches in process memory.

    ``complete`` plays the remote side: it runs every request through a
    responder and writes output and error files.
    """

    def __init__(self, upload_delay: float = 0.0) -> None:
        self._files: Dict[str, tuple[str, bytes]] = {}
        self._batches: Dict[str, RemoteBatchHandle] = {}
        self._ids = count(1)
        self._lock = asyncio.Lock()
        self.upload_delay = upload_delay
        self.upload_calls = 0
        self.create_calls = 0
        self.fail_create: Optional[str] = None

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    async def upload(self, content: bytes, filename: str, purpose: str = "batch") -> str:
        self.upload_calls += 1
        if self.upload_delay:
            await asyncio.sleep(self.upload_delay)
        async with self._lock:
            file_id = self._next_id("file")
            self._files[file_id] = (filename, bytes(content))
        return file_id

    async def create_batch(
        self,
        input_ref: str,
        endpoint: str,
        metadata: Dict[str, str],
        completion_window: str = "24h",
    ) -> RemoteBatchHandle:
        self.create_calls += 1
        if self.fail_create:
            raise BatchServiceError(self.fail_create)
        if input_ref not in self._files:
            raise BatchServiceError(f"Unknown input file {input_ref}")
        total = sum(1 for line in self._lines(input_ref) if line.strip())
        async with self._lock:
            handle = RemoteBatchHandle(
                batch_id=self._next_id("batch"),
                input_ref=input_ref,
                status=BatchStatus.VALIDATING,
                endpoint=endpoint,
                metadata=dict(metadata),
                request_counts=RequestCounts(total=total),
                created_at=int(time.time()),
            )
            self._batches[handle.batch_id] = handle
        return handle.model_copy(deep=True)

    async def get_batch(self, batch_id: str) -> RemoteBatchHandle:
        handle = self._batches.get(batch_id)
        if handle is None:
            raise BatchServiceError(f"Unknown batch {batch_id}")
        return handle.model_copy(deep=True)

    async def list_batches(
        self, statuses: Optional[Iterable[str]] = None
    ) -> List[RemoteBatchHandle]:
        wanted = {str(s) for s in statuses} if statuses is not None else None
        return [
            handle.model_copy(deep=True)
            for handle in self._batches.values()
            if wanted is None or handle.status.value in wanted
        ]

    async def download_file(self, file_ref: str) -> AsyncIterator[str]:
        if file_ref not in self._files:
            raise BatchServiceError(f"Unknown file {file_ref}")
        for line in self._lines(file_ref):
            yield line

    async def cancel_batch(self, batch_id: str) -> RemoteBatchHandle:
        handle = self._batches.get(batch_id)
        if handle is None:
            raise BatchServiceError(f"Unknown batch {batch_id}")
        if handle.is_active:
            handle.status = BatchStatus.CANCELLING
        return handle.model_copy(deep=True)

    async def find_file(self, filename: str) -> Optional[str]:
        matches = [fid for fid, (name, _) in self._files.items() if name == filename]
        return matches[-1] if matches else None

    # ------------------------------------------------------------------
    # Remote-side controls used by tests
    def set_status(self, batch_id: str, status: BatchStatus) -> None:
        self._batches[batch_id].status = status

    def complete(self, batch_id: str, responder: Optional[Responder] = None) -> RemoteBatchHandle:
        """Finish a batch, producing output and error files."""
        responder = responder or echo_responder
        handle = self._batches[batch_id]
        outputs: List[str] = []
        errors: List[str] = []
        for line in self._lines(handle.input_ref):
            if not line.strip():
                continue
            request = json.loads(line)
            response = responder(request)
            record: Dict[str, Any] = {
                "id": self._next_id("req"),
                "custom_id": request["custom_id"],
                "response": None,
                "error": None,
            }
            if "error" in response:
                record["error"] = response["error"]
                errors.append(json.dumps(record))
            else:
                record["response"] = {
                    "status_code": response.get("status_code", 200),
                    "body": response.get("body"),
                }
                outputs.append(json.dumps(record))

        if outputs:
            output_ref = self._next_id("file")
            self._files[output_ref] = ("output.jsonl", "\n".join(outputs).encode("utf-8"))
            handle.output_ref = output_ref
        if errors:
            error_ref = self._next_id("file")
            self._files[error_ref] = ("errors.jsonl", "\n".join(errors).encode("utf-8"))
            handle.error_ref = error_ref
        handle.status = BatchStatus.COMPLETED
        handle.request_counts = RequestCounts(
            total=len(outputs) + len(errors), completed=len(outputs), failed=len(errors)
        )
        return handle.model_copy(deep=True)

    def attach_output(
        self, batch_id: str, lines: List[str], error_lines: Optional[List[str]] = None
    ) -> RemoteBatchHandle:
        """Complete a batch with raw output lines, malformed ones included."""
        handle = self._batches[batch_id]
        output_ref = self._next_id("file")
        self._files[output_ref] = ("output.jsonl", "\n".join(lines).encode("utf-8"))
        handle.output_ref = output_ref
        if error_lines:
            error_ref = self._next_id("file")
            self._files[error_ref] = ("errors.jsonl", "\n".join(error_lines).encode("utf-8"))
            handle.error_ref = error_ref
        handle.status = BatchStatus.COMPLETED
        return handle.model_copy(deep=True)

    def _lines(self, file_ref: str) -> List[str]:
        return self._files[file_ref][1].decode("utf-8").split("\n")
