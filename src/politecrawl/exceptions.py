"""
Exception hierarchy for politecrawl.

Only configuration errors are raised out of a crawl. Transport failures are
raised by request executors and recovered by the crawler into failed pages.
"""

from __future__ import annotations

from typing import Optional


class CrawlError(Exception):
    """Base class for all crawler errors."""


class CrawlConfigurationError(CrawlError, ValueError):
    """Invalid crawler options or start URL. Raised before any network activity."""


class FetchError(CrawlError):
    """A request failed after the executor exhausted its retries."""

    def __init__(
        self,
        message: str,
        *,
        url: str,
        status_code: Optional[int] = None,
        depth: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.depth = depth

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"{base} (url={self.url}, status={self.status_code})"
        return f"{base} (url={self.url})"


class FetchTimeoutError(FetchError):
    """A request exceeded its per-request timeout."""

    def __init__(self, message: str, *, url: str, depth: Optional[int] = None) -> None:
        super().__init__(message, url=url, status_code=408, depth=depth)
