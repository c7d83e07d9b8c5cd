"""Typed failures raised across the ingestion pipeline."""

from __future__ import annotations

from typing import Optional


class ForestBansError(Exception):
    """Base class for every forestbans failure."""


class RetryableFetchError(ForestBansError):
    """Transient upstream failure; another egress proxy may succeed."""

    def __init__(self, message: str, *, url: Optional[str] = None, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class BotChallengeError(RetryableFetchError):
    """The upstream answered with a bot-protection interstitial."""


class NonRetryableFetchError(ForestBansError):
    """A failure that a different proxy cannot fix."""


class PageParseError(NonRetryableFetchError):
    """The page was fetched but its structure was not recognized."""


class ProxyExhaustedError(ForestBansError):
    """Every candidate proxy was tried and none succeeded."""

    def __init__(self, last_error: Optional[BaseException], attempts_tried: int) -> None:
        detail = f"{type(last_error).__name__}: {last_error}" if last_error else "no error recorded"
        super().__init__(f"All {attempts_tried} proxy attempt(s) failed; last error {detail}")
        self.last_error = last_error
        self.attempts_tried = attempts_tried


class RetryBudgetExceededError(ForestBansError):
    """The orchestrator ran out of wall-clock budget before succeeding."""

    def __init__(self, last_error: Optional[BaseException], attempts_tried: int, elapsed: float) -> None:
        super().__init__(
            f"Retry budget exhausted after {elapsed:.1f}s and {attempts_tried} attempt(s); "
            f"last error {last_error!r}"
        )
        self.last_error = last_error
        self.attempts_tried = attempts_tried
        self.elapsed = elapsed


class ArchiveError(ForestBansError):
    """A raw page archive could not be used."""


class ArchiveVersionError(ArchiveError):
    def __init__(self, found: object, expected: int) -> None:
        super().__init__(f"Archive schemaVersion {found!r} does not match expected {expected}")
        self.found = found
        self.expected = expected


class ArchiveFormatError(ArchiveError):
    """The archive file is not valid JSON or does not have the expected shape."""


__all__ = [
    "ForestBansError",
    "RetryableFetchError",
    "BotChallengeError",
    "NonRetryableFetchError",
    "PageParseError",
    "ProxyExhaustedError",
    "RetryBudgetExceededError",
    "ArchiveError",
    "ArchiveVersionError",
    "ArchiveFormatError",
]
