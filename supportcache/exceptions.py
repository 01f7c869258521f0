"""Error taxonomy for the sync engine"""

from typing import Optional


class SupportCacheError(Exception):
    """Base class for errors raised by supportcache."""


class SourceUnavailableError(SupportCacheError):
    """An external source failed (network, auth or HTTP error) after retries."""

    def __init__(self, source: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.status_code = status_code


class RateLimitedError(SourceUnavailableError):
    """The source answered 429; `retry_after` is the server's requested wait in seconds."""

    def __init__(self, source: str, retry_after: float, message: str = "rate limited"):
        super().__init__(source, message, status_code=429)
        self.retry_after = retry_after


class SyncInProgressError(SupportCacheError):
    """A sync was requested while another one holds the run token."""

    def __init__(self, message: str = "Sync already in progress"):
        super().__init__(message)
