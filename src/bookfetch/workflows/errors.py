"""Caller-visible error taxonomy for the fetch pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence, Tuple

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .assembler import BookRecord


class BookFetchError(Exception):
    """Base class for every error raised by the pipeline."""

    retryable: bool = False
    state: Optional[str] = None


class InvalidAddress(BookFetchError, ValueError):
    """Input is not on an allow-listed host or carries no product identifier."""

    def __init__(self, address: str, reason: str) -> None:
        super().__init__(f"invalid address {address!r}: {reason}")
        self.address = address
        self.reason = reason


class AllRoutesFailed(BookFetchError, RuntimeError):
    """Every forwarding route and the rendered fallback failed."""

    retryable = True

    def __init__(self, url: str, attempts: int, errors: Sequence[str] = ()) -> None:
        detail = "; ".join(errors[-3:]) if errors else "no detail"
        super().__init__(f"all routes failed for {url} after {attempts} attempt(s): {detail}")
        self.url = url
        self.attempts = attempts
        self.errors: Tuple[str, ...] = tuple(errors)


class ExtractionIncomplete(BookFetchError):
    """Markup was fetched but the assembled record failed the completeness gate."""

    def __init__(self, url: str, missing: Sequence[str], record: "Optional[BookRecord]" = None) -> None:
        super().__init__(f"incomplete extraction for {url}: missing {', '.join(missing) or 'fields'}")
        self.url = url
        self.missing: Tuple[str, ...] = tuple(missing)
        self.record = record


class CacheWriteFailure(BookFetchError):
    """Storing a record failed; the orchestrator logs and continues."""


__all__ = [
    "BookFetchError",
    "InvalidAddress",
    "AllRoutesFailed",
    "ExtractionIncomplete",
    "CacheWriteFailure",
]
