"""
Wiring entry point: configure logging and metrics, open the HTTP client and crawl.
"""

from __future__ import annotations

from typing import Optional

import structlog

from politecrawl.concurrency.cancellation import CancellationToken
from politecrawl.config.config import Settings
from politecrawl.crawler.http_client import HttpClient
from politecrawl.crawler.orchestrator import BaseSiteCrawler, SimpleSiteCrawler, SiteCrawler
from politecrawl.observability.logging import configure_logging
from politecrawl.observability.metrics import start_metrics_server
from politecrawl.protocols import CrawlResult, ProgressSink

logger = structlog.get_logger(__name__)


async def run_crawl(
    start_url: str,
    settings: Optional[Settings] = None,
    *,
    simple: bool = False,
    progress_sink: Optional[ProgressSink] = None,
    cancellation: Optional[CancellationToken] = None,
) -> CrawlResult:
    """
    Crawl ``start_url`` with everything wired from ``settings``.

    Settings default to the environment (``POLITECRAWL_*`` variables).
    """
    settings = settings or Settings()
    configure_logging(settings.monitoring)
    if settings.monitoring.prometheus_port is not None:
        start_metrics_server(settings.monitoring.prometheus_port)

    async with HttpClient(settings.http) as client:
        crawler: BaseSiteCrawler = SimpleSiteCrawler(client) if simple else SiteCrawler(client)
        return await crawler.crawl(
            start_url,
            settings.crawler,
            progress_sink=progress_sink,
            cancellation=cancellation,
        )
