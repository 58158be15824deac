"""
Typed outcome of a store operation.

Stores keep an availability-first policy: failures are converted into a
result rather than raised to the request-handling layer. StoreResult makes
that explicit so a caller can tell "empty because absent" from "empty
because the read failed".
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

REASON_INVALID_DOCUMENT = "invalid_document"


@dataclass(frozen=True)
class StoreResult:
    """Outcome of a load or save.

    Attributes:
        ok: Whether the operation succeeded
        value: Loaded value, declared default, or operation-specific payload
        found: For reads, whether the document existed
        reason: Failure description when ok is False
    """

    ok: bool
    value: Any = None
    found: bool = True
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.ok

    @property
    def corrupt(self) -> bool:
        """The document existed but could not be parsed."""
        return not self.ok and self.reason == REASON_INVALID_DOCUMENT

    @classmethod
    def success(cls, value: Any = None, found: bool = True) -> StoreResult:
        return cls(ok=True, value=value, found=found)

    @classmethod
    def missing(cls, default: Any) -> StoreResult:
        return cls(ok=True, value=default, found=False)

    @classmethod
    def failure(cls, reason: str, value: Any = None) -> StoreResult:
        return cls(ok=False, value=value, found=False, reason=reason)

    @classmethod
    def invalid(cls, default: Any) -> StoreResult:
        return cls(ok=False, value=default, found=True, reason=REASON_INVALID_DOCUMENT)
