"""
Site crawl orchestration on top of the bounded work queue.

A crawl seeds the frontier with the start URL, then lets ``WorkQueueEngine``
pull frontier entries as work items until the frontier is exhausted, the page
budget is spent or the cancellation token fires. Every fetch outcome, good or
bad, becomes a ``CrawledPage``. Only configuration errors escape ``crawl()``.

Two variants share the pipeline:

- ``SiteCrawler`` adds robots.txt compliance, adaptive per-host rate control,
  feed discovery, operation timings and optional page saving.
- ``SimpleSiteCrawler`` only waits a fixed, cancellable delay before each fetch.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from abc import ABC
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, AsyncContextManager, Mapping, Optional, Set, Union

import structlog

from politecrawl.concurrency.cancellation import CancellationToken, sleep_unless_cancelled
from politecrawl.concurrency.work_queue import WorkItem, WorkQueueEngine
from politecrawl.config.config import CrawlerOptions, validate_start_url
from politecrawl.crawler.feed_discovery import FeedDiscovery
from politecrawl.crawler.frontier import Frontier, FrontierEntry
from politecrawl.crawler.performance import PerformanceTracker
from politecrawl.crawler.progress import ProgressChannel
from politecrawl.crawler.rate_limiter import RateController
from politecrawl.crawler.robots_parser import RobotsCache
from politecrawl.crawler.sitemap import build_sitemap_xml
from politecrawl.dataset.exporter import get_exporter
from politecrawl.exceptions import FetchError, FetchTimeoutError
from politecrawl.extractor.content_parser import ContentParser
from politecrawl.observability.metrics import METRICS
from politecrawl.protocols import (
    CrawledPage,
    CrawlProgress,
    CrawlResult,
    FetchResponse,
    PageOutcome,
    ProgressSink,
    RequestExecutor,
    RowExporter,
)
from politecrawl.utils.atomic import atomic_write_bytes
from politecrawl.utils.urls import host_of, safe_filename

logger = structlog.get_logger(__name__)

ESTIMATED_PAGE_BYTES = 100 * 1024
MEMORY_WARNING_BYTES = 500 * 1024 * 1024
THROTTLE_STATUSES = frozenset({429, 503})


@dataclass
class _CrawlContext:
    """Everything one crawl shares between its workers."""

    options: CrawlerOptions
    frontier: Frontier
    result: CrawlResult
    channel: ProgressChannel
    cancellation: CancellationToken
    started: float = field(default_factory=time.monotonic)
    succeeded: int = 0
    failed: int = 0
    robots: Optional[RobotsCache] = None
    rate: Optional[RateController] = None
    tracker: Optional[PerformanceTracker] = None
    floored_hosts: Set[str] = field(default_factory=set)

    @property
    def headers(self) -> Mapping[str, str]:
        return {"User-Agent": self.options.user_agent}


def describe_fetch_error(error: BaseException) -> tuple[int, str]:
    """Map a fetch exception to the status code and message recorded on the page."""
    if isinstance(error, (FetchTimeoutError, asyncio.TimeoutError)):
        return 408, f"Timeout error: {error}"
    if isinstance(error, FetchError):
        return error.status_code or 500, f"HTTP error: {error}"
    return 500, f"General error: {error}"


class BaseSiteCrawler(ABC):
    """Shared crawl pipeline. Subclasses customize the politeness hooks."""

    def __init__(
        self,
        executor: RequestExecutor,
        *,
        parser: Optional[ContentParser] = None,
        exporter: Optional[RowExporter] = None,
    ) -> None:
        self._executor = executor
        self._parser = parser or ContentParser()
        self._exporter = exporter

    async def crawl(
        self,
        start_url: str,
        options: Union[CrawlerOptions, Mapping[str, Any], None] = None,
        progress_sink: Optional[ProgressSink] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> CrawlResult:
        """
        Crawl a site breadth-first from ``start_url``.

        Raises:
            CrawlConfigurationError: If the options or start URL are invalid.
                Nothing else is raised; fetch failures become failed pages and
                cancellation returns a partial result.
        """
        opts = CrawlerOptions.coerce(options)
        start = validate_start_url(start_url)
        cancellation = cancellation or CancellationToken()

        frontier = Frontier(start, opts.max_depth, opts.follow_external_links)
        result = CrawlResult(start_url=frontier.start_url)

        with structlog.contextvars.bound_contextvars(crawl_id=result.crawl_id):
            logger.info(
                "Starting crawl",
                crawler=type(self).__name__,
                start_url=frontier.start_url,
                max_depth=opts.max_depth,
                max_pages=opts.max_pages,
                max_concurrency=opts.max_concurrency,
            )
            async with ProgressChannel() as channel:
                if progress_sink is not None:
                    channel.subscribe(progress_sink)
                ctx = _CrawlContext(
                    options=opts,
                    frontier=frontier,
                    result=result,
                    channel=channel,
                    cancellation=cancellation,
                )

                await frontier.add_seeds([frontier.start_url], depth=0)
                await self._prepare(ctx)

                engine: WorkQueueEngine[FrontierEntry, Optional[CrawledPage]] = WorkQueueEngine(
                    partial(self._next_item, ctx),
                    partial(self._process_item, ctx),
                )
                await engine.run(opts.max_pages, opts.max_concurrency, cancellation)
                await self._finish(ctx, engine.stats())

        return result

    # --- Hooks ---

    async def _prepare(self, ctx: _CrawlContext) -> None:
        """Runs once after seeding, before the first item is dispatched."""

    async def _admit(self, ctx: _CrawlContext, entry: FrontierEntry) -> bool:
        """Whether a popped entry may be fetched at all."""
        return True

    async def _wait_politeness(self, ctx: _CrawlContext, host: str) -> bool:
        """Wait before fetching from ``host``. Returns False if cancelled while waiting."""
        return await sleep_unless_cancelled(ctx.options.base_delay, ctx.cancellation)

    def _record_outcome(
        self,
        ctx: _CrawlContext,
        host: str,
        response: Optional[FetchResponse],
    ) -> None:
        """Feed the fetch outcome back into politeness state."""

    async def _on_success(self, ctx: _CrawlContext, entry: FrontierEntry, response: FetchResponse) -> None:
        """Called for every 2xx response."""

    def _timed(self, ctx: _CrawlContext, operation: str) -> AsyncContextManager[Any]:
        if ctx.tracker is None:
            return contextlib.nullcontext()
        return ctx.tracker.track(operation)

    # --- Work queue callbacks ---

    async def _next_item(self, ctx: _CrawlContext, task_id: int) -> Optional[WorkItem[FrontierEntry]]:
        while not ctx.cancellation.cancelled:
            entry = await ctx.frontier.next_pending()
            if entry is None:
                return None
            if await self._admit(ctx, entry):
                return WorkItem(task_id=task_id, payload=entry)
            await ctx.result.append_skipped(entry.url)
            METRICS["crawler_pages_total"].labels(outcome=PageOutcome.SKIPPED.value).inc()
        return None

    async def _process_item(self, ctx: _CrawlContext, item: WorkItem[FrontierEntry]) -> Optional[CrawledPage]:
        entry = item.payload
        host = host_of(entry.url)

        async with self._timed(ctx, "rate_wait"):
            proceed = await self._wait_politeness(ctx, host)
        if not proceed:
            await ctx.result.append_cancelled(entry.url)
            logger.debug("Fetch abandoned after cancellation", url=entry.url)
            return None

        response: Optional[FetchResponse] = None
        started = time.perf_counter()
        try:
            async with self._timed(ctx, "fetch"):
                response = await self._executor.send(
                    entry.url,
                    headers=ctx.headers,
                    timeout=ctx.options.request_timeout,
                    cancellation=ctx.cancellation,
                )
        except Exception as e:
            elapsed = time.perf_counter() - started
            status, message = describe_fetch_error(e)
            logger.warning("Fetch failed", url=entry.url, depth=entry.depth, error=message)
            page = CrawledPage(
                url=entry.url,
                depth=entry.depth,
                status_code=status,
                success=False,
                response_time=elapsed,
                error_message=message,
            )
        else:
            elapsed = time.perf_counter() - started
            page = await self._page_from_response(ctx, entry, response, elapsed)

        self._record_outcome(ctx, host, response)
        await self._record_page(ctx, entry, page)
        return page

    async def _page_from_response(
        self,
        ctx: _CrawlContext,
        entry: FrontierEntry,
        response: FetchResponse,
        elapsed: float,
    ) -> CrawledPage:
        content_type = response.content_type or None
        if not response.is_success:
            logger.info("Non-success status", url=entry.url, status=response.status)
            return CrawledPage(
                url=entry.url,
                depth=entry.depth,
                status_code=response.status,
                success=False,
                response_time=elapsed,
                error_message=f"HTTP {response.status}",
                content_type=content_type,
            )

        await self._on_success(ctx, entry, response)
        if not response.is_html:
            return CrawledPage(
                url=entry.url,
                depth=entry.depth,
                status_code=response.status,
                success=True,
                response_time=elapsed,
                content_type=content_type,
            )

        async with self._timed(ctx, "parse"):
            parsed = self._parser.parse(response.text(), entry.url)
        if entry.depth < ctx.options.max_depth and parsed.links:
            await ctx.frontier.enqueue_discovered(parsed.links, entry.depth, parent=entry.url)

        return CrawledPage(
            url=entry.url,
            depth=entry.depth,
            status_code=response.status,
            success=True,
            response_time=elapsed,
            links=parsed.links,
            title=parsed.title,
            meta_description=parsed.meta_description,
            content_type=content_type,
            parse_error=parsed.parse_error,
        )

    async def _record_page(self, ctx: _CrawlContext, entry: FrontierEntry, page: CrawledPage) -> None:
        visited = await ctx.result.append_page(page)
        if page.success:
            ctx.succeeded += 1
            METRICS["crawler_pages_total"].labels(outcome=PageOutcome.SUCCESS.value).inc()
        else:
            ctx.failed += 1
            METRICS["crawler_pages_total"].labels(outcome=PageOutcome.FAILURE.value).inc()
            if entry.url == ctx.frontier.start_url:
                ctx.result.seed_error = page.error_message
                logger.error("Start URL could not be crawled", url=entry.url, error=page.error_message)
                ctx.channel.publish_error(f"Start URL could not be crawled: {page.error_message}")

        ctx.channel.publish_progress(
            CrawlProgress(
                pages_visited=visited,
                pages_succeeded=ctx.succeeded,
                pages_failed=ctx.failed,
                pages_skipped=len(ctx.result.skipped_urls),
                pages_remaining=ctx.frontier.pending_count,
                current_depth=entry.depth,
                current_url=entry.url,
                percent_complete=min(100.0, visited / ctx.options.max_pages * 100.0),
                elapsed=time.monotonic() - ctx.started,
                depth_stats=ctx.result.depth_stats(),
            )
        )

    # --- Completion ---

    async def _finish(self, ctx: _CrawlContext, engine_stats: Mapping[str, Any]) -> None:
        result = ctx.result
        opts = ctx.options
        result.finished_at = datetime.now(timezone.utc)
        result.cancelled = ctx.cancellation.cancelled

        if opts.generate_sitemap:
            result.sitemap_xml = build_sitemap_xml(result.pages)

        if ctx.tracker is not None:
            result.performance = ctx.tracker.snapshot()
            ctx.tracker.log_metrics()

        if opts.export_enabled and opts.export_path is not None:
            exporter = self._exporter or get_exporter(opts.export_format)
            rows = [page.to_row() for page in result.pages]
            if await asyncio.to_thread(exporter.export_rows, rows, opts.export_path):
                result.export_path = opts.export_path
            else:
                logger.error("Export of crawl results failed", path=str(opts.export_path))
                ctx.channel.publish_error(f"Failed to export crawl results to {opts.export_path}")

        timing = result.timing_stats()
        logger.info(
            "Crawl finished",
            pages=result.total_pages,
            succeeded=result.success_count,
            failed=result.failure_count,
            skipped=len(result.skipped_urls),
            cancelled=result.cancelled,
            duration=round(result.duration, 3),
            avg_response_ms=round(timing["avg"] * 1000, 2),
            peak_in_flight=engine_stats.get("peak_in_flight"),
            frontier=ctx.frontier.stats(),
        )
        if ctx.rate is not None:
            logger.debug("Start host rate state", **ctx.rate.get_host_stats(host_of(ctx.frontier.start_url)))
        ctx.channel.publish_complete(result)


class SiteCrawler(BaseSiteCrawler):
    """Full crawler: robots.txt, adaptive rate control, feed discovery and timings."""

    async def _prepare(self, ctx: _CrawlContext) -> None:
        opts = ctx.options
        ctx.tracker = PerformanceTracker(ctx.result.crawl_id)
        ctx.rate = RateController(opts.base_delay, opts.max_delay, adaptive=opts.adaptive_rate_limiting)

        estimated = opts.max_pages * ESTIMATED_PAGE_BYTES
        if estimated > MEMORY_WARNING_BYTES:
            logger.warning(
                "Large crawl may use significant memory",
                max_pages=opts.max_pages,
                estimated_mb=estimated // (1024 * 1024),
            )

        sitemaps: tuple[str, ...] = ()
        if opts.respect_robots_txt:
            ctx.robots = RobotsCache(
                self._executor,
                opts.user_agent,
                timeout=opts.request_timeout,
                politeness=partial(self._polite_auxiliary, ctx),
            )
            async with self._timed(ctx, "robots"):
                rules = await ctx.robots.rules_for(ctx.frontier.start_url)
            self._apply_crawl_delay(ctx, ctx.frontier.start_url, rules.crawl_delay)
            sitemaps = rules.sitemaps

        if opts.discover_feeds and not ctx.cancellation.cancelled:
            discovery = FeedDiscovery(
                self._executor,
                timeout=opts.request_timeout,
                user_agent=opts.user_agent,
                politeness=partial(self._polite_auxiliary, ctx),
            )
            async with self._timed(ctx, "discovery"):
                urls = await discovery.discover(ctx.frontier.start_url, sitemaps, ctx.cancellation)
            added = await ctx.frontier.add_seeds(urls, depth=0)
            if added:
                logger.info("Seeded URLs from feeds", count=len(added))

    def _apply_crawl_delay(self, ctx: _CrawlContext, url: str, crawl_delay: Optional[float]) -> None:
        host = host_of(url)
        if host in ctx.floored_hosts or ctx.rate is None:
            return
        ctx.floored_hosts.add(host)
        ctx.rate.set_host_floor(host, crawl_delay)

    async def _admit(self, ctx: _CrawlContext, entry: FrontierEntry) -> bool:
        if ctx.robots is None:
            return True
        async with self._timed(ctx, "robots"):
            rules = await ctx.robots.rules_for(entry.url)
            allowed = await ctx.robots.is_allowed(entry.url)
        self._apply_crawl_delay(ctx, entry.url, rules.crawl_delay)
        if not allowed:
            logger.info("Skipping URL disallowed by robots.txt", url=entry.url)
        return allowed

    async def _polite_auxiliary(self, ctx: _CrawlContext, url: str) -> bool:
        """Space robots.txt and feed requests like page fetches to the same host."""
        return await self._wait_politeness(ctx, host_of(url))

    async def _wait_politeness(self, ctx: _CrawlContext, host: str) -> bool:
        if ctx.rate is None:
            raise RuntimeError("Rate controller not initialized. Call _prepare() first.")
        return await ctx.rate.wait_turn(host, ctx.cancellation) is not None

    def _record_outcome(self, ctx: _CrawlContext, host: str, response: Optional[FetchResponse]) -> None:
        if ctx.rate is None:
            raise RuntimeError("Rate controller not initialized. Call _prepare() first.")
        if response is None:
            ctx.rate.record_outcome(host, success=False)
        elif response.status in THROTTLE_STATUSES:
            ctx.rate.record_outcome(host, success=False, retry_after=response.retry_after)
        else:
            ctx.rate.record_outcome(host, success=True)

    async def _on_success(self, ctx: _CrawlContext, entry: FrontierEntry, response: FetchResponse) -> None:
        opts = ctx.options
        if not opts.save_pages_to_disk or opts.output_directory is None:
            return
        target = opts.output_directory / safe_filename(entry.url)
        try:
            await asyncio.to_thread(atomic_write_bytes, target, response.body)
        except OSError as e:
            logger.warning("Failed to save page", url=entry.url, path=str(target), error=str(e))


class SimpleSiteCrawler(BaseSiteCrawler):
    """Minimal crawler: fixed cancellable delay before each fetch, no robots or feeds."""
