"""Correlation identifiers linking remote results back to local records.

Grammar::

    correlation-id = kind [ ".v" version ] "-" owner "-" sequence
    kind           = lower-alpha *( lower-alpha / digit / "_" )
    version        = positive integer, omitted when 1
    owner          = alnum *( alnum / "_" / ":" / "-" )
    sequence       = positive integer (1-based)

The owner may itself contain hyphens (UUIDs are common); the sequence is always
the trailing run of digits, so ``answer-3f2a-11ee-9c1b-7`` parses to owner
``3f2a-11ee-9c1b`` and sequence ``7``. Parsing is strict: anything that does
not match raises :class:`~genbatch.errors.CorrelationIdError`.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .errors import CorrelationIdError

CURRENT_VERSION = 1
MAX_LENGTH = 64

_PATTERN = re.compile(
    r"(?P<kind>[a-z][a-z0-9_]*)"
    r"(?:\.v(?P<version>[1-9][0-9]*))?"
    r"-(?P<owner>[A-Za-z0-9](?:[A-Za-z0-9_:-]*[A-Za-z0-9_])?)"
    r"-(?P<sequence>[1-9][0-9]*)"
)
_KIND = re.compile(r"[a-z][a-z0-9_]*")
_OWNER = re.compile(r"[A-Za-z0-9](?:[A-Za-z0-9_:-]*[A-Za-z0-9_])?")


class CorrelationId(BaseModel):
    """Parsed correlation identifier."""

    model_config = ConfigDict(frozen=True)

    kind: str
    owner: str
    sequence: int = Field(ge=1)
    version: int = Field(default=CURRENT_VERSION, ge=1)

    @classmethod
    def new(
        cls, kind: str, owner: Any, sequence: int, version: int = CURRENT_VERSION
    ) -> "CorrelationId":
        """Build an identifier, validating each component against the grammar."""
        owner = str(owner)
        if not _KIND.fullmatch(kind):
            raise CorrelationIdError(kind, "kind must be lowercase alphanumeric")
        if not _OWNER.fullmatch(owner):
            raise CorrelationIdError(owner, "owner contains unsupported characters")
        if sequence < 1:
            raise CorrelationIdError(sequence, "sequence is 1-based")
        if version < 1:
            raise CorrelationIdError(version, "version must be positive")
        cid = cls(kind=kind, owner=owner, sequence=sequence, version=version)
        if len(str(cid)) > MAX_LENGTH:
            raise CorrelationIdError(str(cid), f"longer than {MAX_LENGTH} characters")
        return cid

    @classmethod
    def parse(cls, value: Any) -> "CorrelationId":
        if not isinstance(value, str):
            raise CorrelationIdError(value, "not a string")
        if len(value) > MAX_LENGTH:
            raise CorrelationIdError(value, f"longer than {MAX_LENGTH} characters")
        match = _PATTERN.fullmatch(value)
        if match is None:
            raise CorrelationIdError(value, "does not match <kind>-<owner>-<sequence>")
        version = match.group("version")
        return cls(
            kind=match.group("kind"),
            owner=match.group("owner"),
            sequence=int(match.group("sequence")),
            version=int(version) if version else CURRENT_VERSION,
        )

    @property
    def scope(self) -> str:
        """Owning scope used to resolve the result without a side lookup."""
        return self.owner

    def __str__(self) -> str:
        kind = self.kind if self.version == CURRENT_VERSION else f"{self.kind}.v{self.version}"
        return f"{kind}-{self.owner}-{self.sequence}"


def format_correlation_id(kind: str, owner: Any, sequence: int) -> str:
    return str(CorrelationId.new(kind, owner, sequence))


__all__ = [
    "CorrelationId",
    "format_correlation_id",
    "CURRENT_VERSION",
]
