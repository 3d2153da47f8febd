"""
Core contracts and data structures for politecrawl.

The crawler talks to the outside world through three collaborator
interfaces defined here:

- ``RequestExecutor``: performs the actual network I/O (retries, caching and
  tracing belong to the executor, never to the crawler)
- ``ProgressSink``: receives progress snapshots, completion and errors
- ``RowExporter``: persists crawled pages once a crawl completes

Everything a worker produces (``CrawledPage``, ``CrawlProgress``) is
immutable. ``CrawlResult`` is owned by the orchestrator and only mutated
through ``append_page``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from pathlib import Path
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    Union,
    runtime_checkable,
)
from uuid import uuid4

if TYPE_CHECKING:
    from politecrawl.concurrency.cancellation import CancellationToken

# ============================================================================
# Enums and Constants
# ============================================================================


class PageOutcome(Enum):
    """Outcome of a single crawl attempt, used for metrics and progress."""

    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Transport
# ============================================================================


@dataclass(frozen=True)
class FetchResponse:
    """Response returned by a request executor."""

    url: str
    status: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    elapsed: float = 0.0
    final_url: str = ""
    attempts: int = 1

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return default

    @property
    def content_type(self) -> str:
        value = self.header("content-type") or ""
        return value.split(";", 1)[0].strip().lower()

    @property
    def charset(self) -> Optional[str]:
        value = self.header("content-type") or ""
        for param in value.split(";")[1:]:
            key, _, charset = param.strip().partition("=")
            if key.lower() == "charset" and charset:
                return charset.strip("\"' ")
        return None

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_html(self) -> bool:
        # Servers that omit a content type are treated as serving HTML.
        return not self.content_type or self.content_type in HTML_CONTENT_TYPES

    @property
    def retry_after(self) -> Optional[float]:
        """Retry-After header in seconds, accepting both delta and HTTP-date forms."""
        value = self.header("retry-after")
        if not value:
            return None
        value = value.strip()
        try:
            return max(0.0, float(value))
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return max(0.0, (when - _utcnow()).total_seconds())

    def text(self) -> str:
        """Decode the body using the declared charset, falling back to UTF-8."""
        encoding = self.charset or "utf-8"
        try:
            return self.body.decode(encoding, errors="replace")
        except LookupError:
            return self.body.decode("utf-8", errors="replace")


@runtime_checkable
class RequestExecutor(Protocol):
    """Pluggable transport used for every network call the crawler makes."""

    async def send(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = 30.0,
        cancellation: Optional[CancellationToken] = None,
    ) -> FetchResponse:
        """Perform one logical request. Raises on transport failure."""
        ...


# Awaited before each auxiliary request (robots.txt, feed probes). Returns False
# when the crawl was cancelled while waiting and the request must be skipped.
PolitenessHook = Callable[[str], Awaitable[bool]]


# ============================================================================
# Crawl data model
# ============================================================================


@dataclass(frozen=True)
class CrawledPage:
    """One fetch attempt. Immutable once built."""

    url: str
    depth: int
    status_code: int
    success: bool
    response_time: float
    timestamp: datetime = field(default_factory=_utcnow)
    error_message: Optional[str] = None
    links: Tuple[str, ...] = ()
    title: Optional[str] = None
    meta_description: Optional[str] = None
    content_type: Optional[str] = None
    parse_error: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        """Flat representation used by exporters."""
        return {
            "url": self.url,
            "depth": self.depth,
            "status_code": self.status_code,
            "success": self.success,
            "response_time_ms": round(self.response_time * 1000, 2),
            "timestamp": self.timestamp.isoformat(),
            "title": self.title or "",
            "meta_description": self.meta_description or "",
            "content_type": self.content_type or "",
            "links": list(self.links),
            "error_message": self.error_message or "",
        }


@dataclass(frozen=True)
class CrawlProgress:
    """Snapshot pushed to progress sinks after every completed page."""

    pages_visited: int
    pages_succeeded: int
    pages_failed: int
    pages_skipped: int
    pages_remaining: int
    current_depth: int
    current_url: str
    percent_complete: float
    elapsed: float
    depth_stats: Mapping[int, int] = field(default_factory=dict)


@dataclass
class CrawlResult:
    """Aggregated outcome of one crawl. Read-only once the crawl returns."""

    start_url: str
    crawl_id: str = field(default_factory=lambda: uuid4().hex)
    pages: List[CrawledPage] = field(default_factory=list)
    skipped_urls: List[str] = field(default_factory=list)
    cancelled_urls: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    seed_error: Optional[str] = None
    sitemap_xml: Optional[str] = None
    export_path: Optional[Path] = None
    performance: Dict[str, Dict[str, float]] = field(default_factory=dict)

    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False, compare=False)

    async def append_page(self, page: CrawledPage) -> int:
        """Append a page, one writer at a time. Returns the new page count."""
        async with self._lock:
            self.pages.append(page)
            return len(self.pages)

    async def append_skipped(self, url: str) -> None:
        async with self._lock:
            self.skipped_urls.append(url)

    async def append_cancelled(self, url: str) -> None:
        async with self._lock:
            self.cancelled_urls.append(url)

    @property
    def success_pages(self) -> List[CrawledPage]:
        return [page for page in self.pages if page.success]

    @property
    def failed_pages(self) -> List[CrawledPage]:
        return [page for page in self.pages if not page.success]

    @property
    def success_count(self) -> int:
        return sum(1 for page in self.pages if page.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for page in self.pages if not page.success)

    @property
    def total_pages(self) -> int:
        return len(self.pages)

    @property
    def duration(self) -> float:
        """Wall-clock duration in seconds (0 while the crawl is running)."""
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def timing_stats(self) -> Dict[str, float]:
        """Average, min and max response time in seconds across all attempts."""
        times = [page.response_time for page in self.pages]
        if not times:
            return {"count": 0, "avg": 0.0, "min": 0.0, "max": 0.0}
        return {
            "count": len(times),
            "avg": sum(times) / len(times),
            "min": min(times),
            "max": max(times),
        }

    def depth_stats(self) -> Dict[int, int]:
        stats: Dict[int, int] = {}
        for page in self.pages:
            stats[page.depth] = stats.get(page.depth, 0) + 1
        return dict(sorted(stats.items()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "crawl_id": self.crawl_id,
            "start_url": self.start_url,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration,
            "cancelled": self.cancelled,
            "seed_error": self.seed_error,
            "total_pages": self.total_pages,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "skipped_urls": list(self.skipped_urls),
            "cancelled_urls": list(self.cancelled_urls),
            "timing": self.timing_stats(),
            "depth_stats": self.depth_stats(),
            "export_path": str(self.export_path) if self.export_path else None,
            "pages": [page.to_row() for page in self.pages],
        }


# ============================================================================
# Collaborator protocols
# ============================================================================


@runtime_checkable
class ProgressSink(Protocol):
    """Receives crawl events. Methods may be plain functions or coroutines."""

    def on_progress(self, progress: CrawlProgress) -> Union[None, Awaitable[None]]:
        ...

    def on_complete(self, result: CrawlResult) -> Union[None, Awaitable[None]]:
        ...

    def on_error(self, message: str) -> Union[None, Awaitable[None]]:
        ...


@runtime_checkable
class RowExporter(Protocol):
    """Persists flat rows to a file."""

    def export_rows(self, rows: Iterable[Mapping[str, Any]], file_path: Path) -> bool:
        """Return True on success, False on failure. Must not raise for I/O errors."""
        ...
