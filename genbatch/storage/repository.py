"""Repository abstraction for reconciled records."""

from __future__ import annotations

from typing import Protocol

from .models import TargetRecord


class RecordStore(Protocol):
    """Protocol for record storage backends."""

    async def upsert(self, record: TargetRecord) -> tuple[str, bool]:
        """Insert unless ``(scope, slug)`` exists.

        Returns the stored record id and whether this call created it. An
        existing record is left untouched.
        """

    async def get(self, scope: str, slug: str) -> TargetRecord | None:
        """Look a record up by natural key."""

    async def list_records(self, scope: str | None = None) -> list[TargetRecord]:
        """Return stored records, optionally for one scope."""

    async def count(self) -> int:
        """Number of stored records."""
