"""
Defines the Prometheus metrics for the crawler.
"""

from __future__ import annotations

from typing import Any, Dict

import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Re-importing this module (test reloads) must reuse the collectors that are
# already registered instead of raising duplicate registration errors.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race, fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)
Gauge = _duplicate_safe_factory(_OrigGauge)
Histogram = _duplicate_safe_factory(_OrigHistogram)


def _create_metrics() -> Dict[str, Any]:
    return {
        # Work queue metrics
        "work_queue_wait_seconds": Histogram(
            "politecrawl_work_queue_wait_seconds",
            "Time a work item waited for a free worker slot",
            buckets=[0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
        ),
        "work_queue_in_flight": Gauge(
            "politecrawl_work_queue_in_flight",
            "Number of work items currently executing",
        ),
        "work_items_total": Counter(
            "politecrawl_work_items_total",
            "Total number of completed work items by outcome",
            ["outcome"],
        ),
        # Crawler metrics
        "crawler_pages_total": Counter(
            "politecrawl_crawler_pages_total",
            "Total number of pages by crawl outcome",
            ["outcome"],
        ),
        "crawler_fetch_latency_seconds": Histogram(
            "politecrawl_crawler_fetch_latency_seconds",
            "Time taken to fetch a URL including retries",
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
        ),
        "crawler_responses_total": Counter(
            "politecrawl_crawler_responses_total",
            "Total number of HTTP responses by status class",
            ["status_class"],
        ),
        "crawler_in_flight_requests": Gauge(
            "politecrawl_crawler_in_flight_requests",
            "Number of HTTP requests currently in flight",
        ),
        "crawler_rate_limit_wait_seconds": Histogram(
            "politecrawl_crawler_rate_limit_wait_seconds",
            "Time spent waiting for a host's politeness delay",
            buckets=[0.0, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
        ),
        "crawler_host_backoff_total": Counter(
            "politecrawl_crawler_host_backoff_total",
            "Total number of times a host delay was increased",
        ),
        "crawler_operation_seconds": Histogram(
            "politecrawl_crawler_operation_seconds",
            "Duration of tracked crawl operations",
            ["operation"],
            buckets=[0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
        ),
        "feed_discovery_urls_total": Counter(
            "politecrawl_feed_discovery_urls_total",
            "Total number of URLs found through sitemap and feed discovery",
        ),
    }


METRICS = _create_metrics()


def start_metrics_server(port: int) -> None:
    """Expose the default registry over HTTP for Prometheus scraping."""
    logger.info("Starting Prometheus metrics server", port=port)
    start_http_server(port)
