"""Reading the work items a job enumerates."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List

from pydantic import ValidationError

from .contracts import WorkItem
from .errors import SourceUnavailableError

logger = logging.getLogger(__name__)


class FileWorkSource:
    """Newline-delimited work items.

    Each line is either a JSON object with an ``id`` (plus an optional
    ``correlation_id``; every other field becomes request params) or a bare
    id. Malformed lines are skipped and kept in ``invalid_lines``.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.invalid_lines: List[int] = []

    def _parse(self, line: str) -> WorkItem | None:
        if not line.startswith("{"):
            return WorkItem(id=line)
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict) or not data.get("id"):
            return None
        item_id = str(data.pop("id"))
        correlation_id = data.pop("correlation_id", None)
        try:
            return WorkItem(id=item_id, correlation_id=correlation_id, payload=data)
        except ValidationError:
            return None

    def load(self) -> List[WorkItem]:
        """Read every item in file order; duplicate ids keep the first line."""
        self.invalid_lines = []
        items: List[WorkItem] = []
        seen: set[str] = set()
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                for line_no, raw in enumerate(handle, start=1):
                    line = raw.strip()
                    if not line:
                        continue
                    item = self._parse(line)
                    if item is None:
                        self.invalid_lines.append(line_no)
                        logger.warning(f"Skipping malformed work item at {self.path}:{line_no}")
                        continue
                    if item.key in seen:
                        logger.warning(f"Duplicate work item {item.key} at {self.path}:{line_no}")
                        continue
                    seen.add(item.key)
                    items.append(item)
        except (OSError, UnicodeDecodeError) as exc:
            raise SourceUnavailableError(f"Cannot read work source {self.path}: {exc}") from exc
        logger.info(f"Loaded {len(items)} work items from {self.path}")
        return items


def load_job_items(job) -> List[WorkItem]:
    """Default loader: the job's ``source`` names a work-item file."""
    if not job.source:
        raise SourceUnavailableError(f"Job {job.job_id} has no source")
    return FileWorkSource(job.source).load()
