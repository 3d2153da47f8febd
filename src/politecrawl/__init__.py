"""
politecrawl: a polite, bounded-concurrency site crawler.

The crawler walks a site breadth-first from a start URL while honouring
robots.txt, spacing requests per host and reporting progress to observers.
Network I/O goes through a pluggable ``RequestExecutor``; ``HttpClient`` is
the aiohttp-based default.
"""

from __future__ import annotations

from politecrawl.concurrency import CancellationToken, WorkItem, WorkQueueEngine, WorkResult
from politecrawl.config import CrawlerOptions, HttpClientConfig, MonitoringConfig, Settings
from politecrawl.crawler import HttpClient, LoggingProgressSink, SimpleSiteCrawler, SiteCrawler
from politecrawl.exceptions import (
    CrawlConfigurationError,
    CrawlError,
    FetchError,
    FetchTimeoutError,
)
from politecrawl.protocols import (
    CrawledPage,
    CrawlProgress,
    CrawlResult,
    FetchResponse,
    ProgressSink,
    RequestExecutor,
    RowExporter,
)
from politecrawl.runner import run_crawl

__version__ = "0.1.0"

__all__ = [
    "CancellationToken",
    "CrawlConfigurationError",
    "CrawlError",
    "CrawlProgress",
    "CrawlResult",
    "CrawledPage",
    "CrawlerOptions",
    "FetchError",
    "FetchResponse",
    "FetchTimeoutError",
    "HttpClient",
    "HttpClientConfig",
    "LoggingProgressSink",
    "MonitoringConfig",
    "ProgressSink",
    "RequestExecutor",
    "RowExporter",
    "Settings",
    "SimpleSiteCrawler",
    "SiteCrawler",
    "WorkItem",
    "WorkQueueEngine",
    "WorkResult",
    "run_crawl",
    "__version__",
]
