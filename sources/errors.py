"""
Error taxonomy shared by connectors, the sync engine and the reader proxy.

    MangaHookError
      ├── UpstreamError            non-2xx answer we cannot use
      │     ├── UpstreamUnavailable  retries exhausted / 429 / 5xx
      │     └── UpstreamNotFound     404, missing page, unknown chapter
      ├── ValidationError          rejected before any network call
      ├── SyncBatchFailure         fetch or upsert failed mid-run
      └── OperationCancelled       caller went away between retries
"""

from typing import Optional


class MangaHookError(Exception):
    """Base class for every error raised by this project."""


class UpstreamError(MangaHookError):
    """Upstream answered, but not with something we can use."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        status_code: Optional[int] = None
    ):
        self.source = source
        self.status_code = status_code
        super().__init__(message)


class UpstreamUnavailable(UpstreamError):
    """Upstream could not be reached, or refused service."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        status_code: Optional[int] = None,
        last_error: Optional[BaseException] = None,
        retry_after: Optional[float] = None
    ):
        self.last_error = last_error
        self.retry_after = retry_after  # seconds, from a 429 Retry-After header
        super().__init__(message, source=source, status_code=status_code)


class UpstreamNotFound(UpstreamError):
    """The requested manga, chapter or page does not exist upstream."""


class ValidationError(MangaHookError, ValueError):
    """Malformed input (page index, query, filters)."""


class SyncBatchFailure(MangaHookError):
    """A sync batch could not be fetched or committed."""

    def __init__(self, catalog: str, offset: int, cause: BaseException):
        self.catalog = catalog
        self.offset = offset
        self.cause = cause
        super().__init__(f"{catalog} batch at offset {offset} failed: {cause}")


class OperationCancelled(MangaHookError):
    """Raised at a retry boundary once the caller has cancelled."""
