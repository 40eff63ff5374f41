"""
Error types raised by the crawler.

Transient errors are retried where they occur; everything else ends the
owning watcher or capture job and is reported through its ``error`` event.
"""

from typing import Optional


class CrawlerError(Exception):
    """Base class for all crawler errors."""


class TransientNetworkError(CrawlerError):
    """Timeout, connection failure, 5xx or malformed response. Retryable."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthenticationError(CrawlerError):
    """The remote side rejected the current credentials."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class NotFoundError(CrawlerError):
    """The space does not exist (confirmed by repeated lookups)."""


class SpaceUnavailableError(CrawlerError):
    """The space ended and no recording is available to capture."""


class ManifestError(CrawlerError):
    """The capture playlist is empty or cannot be parsed."""


class ChunkFetchError(CrawlerError):
    """A chunk could not be fetched within its retry budget."""

    def __init__(self, index: int, url: str, cause: Optional[BaseException] = None):
        super().__init__(f"Chunk {index} failed: {cause}" if cause else f"Chunk {index} failed")
        self.index = index
        self.url = url
        self.cause = cause


class CaptureCancelledError(CrawlerError):
    """Cooperative stop of a watcher or capture. Not a failure."""
