"""
mnemos.core.errors — Exception hierarchy for the memory engine.

Every error raised across a component boundary derives from
``MnemosError`` and from the closest builtin, so callers can catch
either ``NotFound`` or plain ``KeyError``.
"""

from __future__ import annotations

from typing import Optional


class MnemosError(Exception):
    """Base class for all mnemos errors."""


class NotFound(MnemosError, KeyError):
    """A memory (or edge) id does not exist.

    Callers should treat this as "already gone", not as a fatal error.
    """

    def __init__(self, what: str, ident: str) -> None:
        self.what = what
        self.ident = ident
        super().__init__(f"{what} not found: {ident}")

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return f"{self.what} not found: {self.ident}"


class DuplicateError(MnemosError, ValueError):
    """An identical ``(type, content-hash)`` memory already exists."""

    def __init__(self, existing_id: str, content_hash: str = "") -> None:
        self.existing_id = existing_id
        self.content_hash = content_hash
        super().__init__(f"Duplicate of existing memory {existing_id}")


class ValidationError(MnemosError, ValueError):
    """Rejected input: bad edge, self-loop, wrong vector size, immutable field."""


class EmbeddingUnavailable(MnemosError, RuntimeError):
    """The embedding backend is absent or failed to load/encode."""

    def __init__(self, reason: str = "", cause: Optional[BaseException] = None) -> None:
        self.reason = reason or "no embedding backend configured"
        self.cause = cause
        super().__init__(f"Embedding unavailable: {self.reason}")
