"""Turn remote result bodies into storable records."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .correlation import CorrelationId
from .errors import CorrelationIdError
from .storage.models import TargetRecord

logger = logging.getLogger(__name__)

def completion_text(body: Mapping[str, Any]) -> Optional[str]:
    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    return content if isinstance(content, str) and content.strip() else None


def embedding_vector(body: Mapping[str, Any]) -> Optional[list[float]]:
    try:
        vector = body["data"][0]["embedding"]
    except (KeyError, IndexError, TypeError):
        return None
    return vector if isinstance(vector, list) and vector else None


def _prompt_of(request: Mapping[str, Any]) -> Optional[str]:
    body = request.get("body") or {}
    for message in reversed(body.get("messages") or []):
        if message.get("role") == "user" and isinstance(message.get("content"), str):
            return message["content"].strip()
    text = body.get("input")
    return text.strip() if isinstance(text, str) else None


def load_request_titles(path: str | Path) -> Dict[str, str]:
    """Map ``custom_id`` to the user prompt it was submitted with."""
    titles: Dict[str, str] = {}
    with open(path, "r", encoding="utf-8") as handle:
        for raw in handle:
            if not raw.strip():
                continue
            try:
                request = json.loads(raw)
            except json.JSONDecodeError:
                continue
            prompt = _prompt_of(request) if isinstance(request, dict) else None
            custom_id = request.get("custom_id") if isinstance(request, dict) else None
            if not prompt or not custom_id:
                continue
            try:
                custom_id = str(CorrelationId.parse(custom_id))
            except CorrelationIdError:
                pass
            titles[custom_id] = prompt
    logger.info(f"Loaded {len(titles)} request titles from {path}")
    return titles


class ResultMapper:
    """Builds a :class:`TargetRecord` for one successful result.

    Every record is keyed by ``(scope, "<kind>-<sequence>")`` so the same
    result maps to the same row whichever titles are loaded. Completions
    carry a title: the original prompt when known, else the first line of
    the completion.
    """

    def __init__(self, titles: Optional[Mapping[str, str]] = None) -> None:
        self.titles = dict(titles or {})

    def map(
        self,
        cid: CorrelationId,
        body: Mapping[str, Any],
        metadata: Optional[Mapping[str, str]] = None,
    ) -> TargetRecord:
        metadata = dict(metadata or {})
        slug = f"{cid.kind}-{cid.sequence}"
        vector = embedding_vector(body)
        if vector is not None:
            return TargetRecord(
                scope=cid.scope,
                slug=slug,
                kind="embedding",
                correlation_id=str(cid),
                embedding=vector,
                metadata=metadata,
            )

        content = completion_text(body)
        if content is None:
            raise ValueError("Result has neither completion content nor an embedding")
        title = self.titles.get(str(cid)) or content.strip().splitlines()[0]
        return TargetRecord(
            scope=cid.scope,
            slug=slug,
            kind=cid.kind,
            correlation_id=str(cid),
            title=title,
            content=content,
            metadata=metadata,
        )


__all__ = [
    "ResultMapper",
    "completion_text",
    "embedding_vector",
    "load_request_titles",
]
