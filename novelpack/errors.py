"""Exception types shared across the novelpack modules."""

from __future__ import annotations


class NovelpackError(Exception):
    """Base class for every error raised by this package."""


class FetchError(NovelpackError):
    """A remote resource could not be obtained."""


class TransientFetchError(FetchError):
    """A failure worth retrying: timeouts, connection errors, 5xx pages.

    ``timeout`` distinguishes timeout-class failures, which the unit
    content policy retries almost immediately.
    """

    def __init__(self, message: str, *, timeout: bool = False) -> None:
        super().__init__(message)
        self.timeout = timeout


class WorkParseError(TransientFetchError):
    """A work detail page was served but title or author were missing."""


class TerminalFetchError(FetchError):
    """A failure that retrying cannot fix: login wall, 404, invalid id."""


class PackagingAssetError(NovelpackError):
    """An embedded asset (an image) could not be downloaded."""


class CacheError(NovelpackError):
    """The unit cache could not be read or written."""


class JobStateError(NovelpackError):
    """A job transition was requested from a state that does not allow it."""


class AcquisitionError(NovelpackError):
    """A job could not start acquiring units (no detail, no listing)."""
