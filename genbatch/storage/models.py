"""Records materialized from reconciled batch results."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..persistence.models import utcnow


class TargetRecord(BaseModel):
    """One durable record; ``(scope, slug)`` is its natural key."""

    scope: str
    slug: str
    kind: str
    correlation_id: str
    title: Optional[str] = None
    content: Optional[str] = None
    embedding: Optional[list[float]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    record_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def natural_key(self) -> tuple[str, str]:
        return (self.scope, self.slug)
