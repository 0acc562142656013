"""Batch request lines: building them from work items and validating them."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import BaseModel

from .constants import DEFAULT_BATCH_ENDPOINT
from .contracts import WorkItem
from .correlation import CorrelationId

logger = logging.getLogger(__name__)


class RequestLine(BaseModel):
    """One line of a batch input file."""

    custom_id: str
    method: str = "POST"
    url: str = DEFAULT_BATCH_ENDPOINT
    body: dict[str, Any]

    def to_json(self) -> str:
        return json.dumps(self.model_dump(), ensure_ascii=False)


class ValidatedContent(BaseModel):
    """Cleaned request file content ready for upload."""

    content: str
    valid_lines: int
    invalid_lines: int


def build_request_line(item: WorkItem, endpoint: str = DEFAULT_BATCH_ENDPOINT) -> RequestLine:
    """Wrap a work item as a batch request; the correlation id is the custom id."""
    if not item.correlation_id:
        raise ValueError(f"Work item {item.id} has no correlation id")
    CorrelationId.parse(item.correlation_id)
    return RequestLine(custom_id=item.correlation_id, url=endpoint, body=item.payload)


def write_request_file(
    items: Iterable[WorkItem], path: str | Path, endpoint: str = DEFAULT_BATCH_ENDPOINT
) -> int:
    """Write request lines for ``items`` and return how many were written."""
    written = 0
    with open(path, "w", encoding="utf-8", newline="\n") as handle:
        for item in items:
            handle.write(build_request_line(item, endpoint).to_json() + "\n")
            written += 1
    logger.info(f"Wrote {written} request lines to {path}")
    return written


def validate_request_line(line: str) -> Optional[dict[str, Any]]:
    """Return the parsed request if it carries every field the service needs."""
    try:
        parsed = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    if not all(parsed.get(key) for key in ("custom_id", "method", "url", "body")):
        return None
    body = parsed["body"]
    if not isinstance(body, dict) or not body.get("model"):
        return None
    messages = body.get("messages")
    if messages is not None:
        return parsed if isinstance(messages, list) else None
    if body.get("input") is not None:
        return parsed
    return None


def clean_request_file(path: str | Path) -> ValidatedContent:
    """Stream ``path``, dropping blank and invalid lines."""
    kept: list[str] = []
    invalid = 0
    with open(path, "r", encoding="utf-8") as handle:
        for raw in handle:
            line = raw.strip()
            if not line:
                continue
            parsed = validate_request_line(line)
            if parsed is None:
                invalid += 1
                continue
            kept.append(line)
    if invalid:
        logger.warning(f"Skipped {invalid} invalid request lines in {path}")
    return ValidatedContent(
        content="\n".join(kept),
        valid_lines=len(kept),
        invalid_lines=invalid,
    )


__all__ = [
    "RequestLine",
    "ValidatedContent",
    "build_request_line",
    "write_request_file",
    "validate_request_line",
    "clean_request_file",
]
