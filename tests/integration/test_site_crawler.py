"""
End-to-end tests for the full site crawler against a scripted executor.
"""

import asyncio
from typing import List

import pytest
from politecrawl.concurrency import CancellationToken
from politecrawl.config import CrawlerOptions
from politecrawl.crawler import SiteCrawler
from politecrawl.exceptions import CrawlConfigurationError, FetchError, FetchTimeoutError
from politecrawl.observability.metrics import METRICS
from politecrawl.protocols import CrawlProgress, CrawlResult
from tests.helpers import FakeExecutor, html_page, metric_delta

SEED = "https://example.test/"


def options(**overrides) -> CrawlerOptions:
    values = dict(
        max_depth=2,
        max_pages=50,
        max_concurrency=4,
        request_delay_ms=0,
        max_delay_ms=50,
        request_timeout=5.0,
    )
    values.update(overrides)
    return CrawlerOptions(**values)


class RecordingSink:
    def __init__(self) -> None:
        self.progress: List[CrawlProgress] = []
        self.completed: List[CrawlResult] = []
        self.errors: List[str] = []

    async def on_progress(self, progress: CrawlProgress) -> None:
        self.progress.append(progress)

    async def on_complete(self, result: CrawlResult) -> None:
        self.completed.append(result)

    async def on_error(self, message: str) -> None:
        self.errors.append(message)


class CancelAfterFirstPage(RecordingSink):
    def __init__(self, token: CancellationToken) -> None:
        super().__init__()
        self.token = token

    async def on_progress(self, progress: CrawlProgress) -> None:
        await super().on_progress(progress)
        self.token.cancel("test stop")


@pytest.mark.integration
class TestSiteCrawlerScenarios:
    """Core crawl behaviour."""

    @pytest.mark.asyncio
    async def test_three_page_site_with_self_loop(self):
        executor = (
            FakeExecutor()
            .add_page(SEED, "/a", "/b")
            .add_page("https://example.test/a", "/")
            .add_page("https://example.test/b")
        )

        result = await SiteCrawler(executor).crawl(SEED, options(max_depth=1, max_pages=10))

        urls = [page.url for page in result.pages]
        assert sorted(urls) == [SEED, "https://example.test/a", "https://example.test/b"]
        assert len(urls) == len(set(urls))
        assert executor.count(SEED) == 1
        assert result.success_count == 3
        assert result.failure_count == 0
        assert result.cancelled is False
        assert result.finished_at is not None

    @pytest.mark.asyncio
    async def test_seed_page_metadata(self):
        executor = FakeExecutor().add(SEED, html_page("/a", title="Home", description="Welcome"))

        result = await SiteCrawler(executor).crawl(SEED, options(max_depth=0))

        seed = result.pages[0]
        assert seed.depth == 0
        assert seed.title == "Home"
        assert seed.meta_description == "Welcome"
        assert seed.links == ("https://example.test/a",)
        assert seed.content_type == "text/html"

    @pytest.mark.asyncio
    async def test_depth_limit(self):
        executor = (
            FakeExecutor()
            .add_page(SEED, "/1")
            .add_page("https://example.test/1", "/2")
            .add_page("https://example.test/2", "/3")
            .add_page("https://example.test/3")
        )

        result = await SiteCrawler(executor).crawl(SEED, options(max_depth=2))

        assert max(page.depth for page in result.pages) == 2
        assert executor.count("https://example.test/3") == 0
        assert result.depth_stats() == {0: 1, 1: 1, 2: 1}

    @pytest.mark.asyncio
    async def test_page_limit(self):
        links = [f"/p{i}" for i in range(20)]
        executor = FakeExecutor().add_page(SEED, *links)
        for link in links:
            executor.add_page(f"https://example.test{link}")

        result = await SiteCrawler(executor).crawl(SEED, options(max_pages=5))

        assert result.total_pages == 5
        assert len(executor.page_calls()) == 5

    @pytest.mark.asyncio
    async def test_concurrency_ceiling(self, fake_executor, fast_options):
        links = [f"/p{i}" for i in range(12)]
        executor = fake_executor.add_page(SEED, *links)
        for link in links:
            executor.add_page(f"https://example.test{link}", delay=0.02)

        result = await SiteCrawler(executor).crawl(SEED, fast_options.model_copy(update={"max_concurrency": 3}))

        assert result.total_pages == 13
        assert executor.peak_in_flight <= 3

    @pytest.mark.asyncio
    async def test_failed_child_pages_do_not_stop_crawl(self):
        executor = (
            FakeExecutor()
            .add_page(SEED, "/missing", "/boom", "/ok")
            .fail("https://example.test/boom", FetchError("connection reset", url="https://example.test/boom"))
            .add_page("https://example.test/ok")
        )

        result = await SiteCrawler(executor).crawl(SEED, options())

        by_url = {page.url: page for page in result.pages}
        assert by_url["https://example.test/missing"].status_code == 404
        assert by_url["https://example.test/missing"].error_message == "HTTP 404"
        assert by_url["https://example.test/boom"].status_code == 500
        assert by_url["https://example.test/boom"].error_message.startswith("HTTP error: ")
        assert by_url["https://example.test/ok"].success
        assert result.seed_error is None

    @pytest.mark.asyncio
    async def test_non_html_success_is_not_parsed(self):
        executor = (
            FakeExecutor()
            .add_page(SEED, "/data")
            .add("https://example.test/data", '{"href": "/hidden"}', content_type="application/json")
        )

        result = await SiteCrawler(executor).crawl(SEED, options())

        data = next(page for page in result.pages if page.url.endswith("/data"))
        assert data.success
        assert data.links == ()
        assert executor.count("https://example.test/hidden") == 0

    @pytest.mark.asyncio
    async def test_external_links_not_followed(self):
        executor = FakeExecutor().add_page(SEED, "https://elsewhere.test/", "/local").add_page(
            "https://example.test/local"
        )

        result = await SiteCrawler(executor).crawl(SEED, options())

        assert executor.count("https://elsewhere.test/") == 0
        assert {page.url for page in result.pages} == {SEED, "https://example.test/local"}


@pytest.mark.integration
class TestSiteCrawlerFailures:
    """Seed failures and configuration errors."""

    @pytest.mark.asyncio
    async def test_unreachable_seed(self):
        executor = FakeExecutor().fail(SEED, FetchError("connection refused", url=SEED))
        sink = RecordingSink()

        result = await SiteCrawler(executor).crawl(SEED, options(), progress_sink=sink)

        assert result.total_pages == 1
        assert result.success_count == 0
        assert result.pages[0].success is False
        assert result.seed_error is not None
        assert sink.errors and "connection refused" in sink.errors[0]
        assert len(sink.completed) == 1

    @pytest.mark.asyncio
    async def test_seed_timeout(self):
        executor = FakeExecutor().fail(SEED, FetchTimeoutError("timed out", url=SEED))

        result = await SiteCrawler(executor).crawl(SEED, options())

        page = result.pages[0]
        assert page.status_code == 408
        assert page.error_message.startswith("Timeout error: ")

    @pytest.mark.asyncio
    async def test_unexpected_executor_error(self):
        executor = FakeExecutor().fail(SEED, RuntimeError("kaboom"))

        result = await SiteCrawler(executor).crawl(SEED, options())

        assert result.pages[0].status_code == 500
        assert result.pages[0].error_message == "General error: kaboom"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "start_url,overrides",
        [
            ("not a url", {}),
            ("ftp://example.test/", {}),
            (SEED, {"max_pages": 0}),
            (SEED, {"request_delay_ms": 100, "max_delay_ms": 100}),
        ],
    )
    async def test_configuration_errors_before_any_io(self, start_url, overrides):
        executor = FakeExecutor()
        raw = {"request_delay_ms": 0, "max_delay_ms": 50}
        raw.update(overrides)

        with pytest.raises(CrawlConfigurationError):
            await SiteCrawler(executor).crawl(start_url, raw)

        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_mutated_options_rejected_before_any_io(self):
        executor = FakeExecutor().add_page(SEED)
        opts = options()
        opts.max_concurrency = 0

        with pytest.raises(CrawlConfigurationError):
            await SiteCrawler(executor).crawl(SEED, opts)

        assert executor.calls == []


@pytest.mark.integration
class TestSiteCrawlerPoliteness:
    """robots.txt and feed discovery."""

    @pytest.mark.asyncio
    async def test_robots_disallowed_urls_are_skipped(self):
        executor = (
            FakeExecutor()
            .add("https://example.test/robots.txt", "User-agent: *\nDisallow: /private\n", content_type="text/plain")
            .add_page(SEED, "/private/secret", "/public")
            .add_page("https://example.test/public")
        )

        with metric_delta(METRICS["crawler_pages_total"].labels(outcome="skipped"), 1):
            result = await SiteCrawler(executor).crawl(SEED, options(max_pages=2))

        assert result.skipped_urls == ["https://example.test/private/secret"]
        assert executor.count("https://example.test/private/secret") == 0
        assert {page.url for page in result.pages} == {SEED, "https://example.test/public"}

    @pytest.mark.asyncio
    async def test_robots_ignored_when_disabled(self):
        executor = (
            FakeExecutor()
            .add("https://example.test/robots.txt", "User-agent: *\nDisallow: /\n", content_type="text/plain")
            .add_page(SEED)
        )

        result = await SiteCrawler(executor).crawl(SEED, options(respect_robots_txt=False))

        assert result.success_count == 1
        assert executor.count("https://example.test/robots.txt") == 0

    @pytest.mark.asyncio
    async def test_robots_failure_is_permissive(self):
        executor = (
            FakeExecutor()
            .fail("https://example.test/robots.txt", FetchError("refused", url="https://example.test/robots.txt"))
            .add_page(SEED, "/page")
            .add_page("https://example.test/page")
        )

        result = await SiteCrawler(executor).crawl(SEED, options())

        assert result.success_count == 2
        assert result.skipped_urls == []

    @pytest.mark.asyncio
    async def test_feed_urls_seed_unlinked_pages(self):
        sitemap = (
            '<?xml version="1.0"?><urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
            "<url><loc>https://example.test/orphan</loc></url>"
            "<url><loc>https://other.test/external</loc></url>"
            "</urlset>"
        )
        executor = (
            FakeExecutor()
            .add("https://example.test/sitemap.xml", sitemap, content_type="application/xml")
            .add_page(SEED)
            .add_page("https://example.test/orphan")
        )

        result = await SiteCrawler(executor).crawl(SEED, options())

        orphan = next(page for page in result.pages if page.url == "https://example.test/orphan")
        assert orphan.depth == 0
        assert executor.count("https://other.test/external") == 0

    @pytest.mark.asyncio
    async def test_feed_discovery_disabled(self):
        executor = FakeExecutor().add_page(SEED)

        await SiteCrawler(executor).crawl(SEED, options(discover_feeds=False))

        assert executor.count("https://example.test/sitemap.xml") == 0

    @pytest.mark.asyncio
    async def test_requests_carry_user_agent(self):
        executor = FakeExecutor().add_page(SEED)

        await SiteCrawler(executor).crawl(SEED, options(user_agent="TestBot/2.0"))

        assert all(headers.get("User-Agent") == "TestBot/2.0" for headers in executor.headers_seen)

    @pytest.mark.asyncio
    async def test_robots_and_feed_requests_respect_host_delay(self):
        executor = (
            FakeExecutor()
            .add("https://example.test/robots.txt", "User-agent: *\nAllow: /\n", content_type="text/plain")
            .add_page(SEED, "/a")
            .add_page("https://example.test/a")
        )

        await SiteCrawler(executor).crawl(SEED, options(request_delay_ms=100, max_delay_ms=500))

        assert executor.count("https://example.test/robots.txt") == 1
        assert executor.count("https://example.test/sitemap.xml") == 1
        assert executor.page_calls() == [SEED, "https://example.test/a"]
        times = [at for at, _ in executor.sent_at]
        assert len(times) == 7
        gaps = [later - earlier for earlier, later in zip(times, times[1:])]
        assert min(gaps) >= 0.08


@pytest.mark.integration
class TestSiteCrawlerCancellation:
    """Cooperative cancellation yields a valid partial result."""

    @pytest.mark.asyncio
    async def test_cancellation_returns_partial_result(self):
        links = [f"/p{i}" for i in range(10)]
        executor = FakeExecutor(delay=0.02).add_page(SEED, *links)
        for link in links:
            executor.add_page(f"https://example.test{link}")
        token = CancellationToken()
        sink = CancelAfterFirstPage(token)

        result = await SiteCrawler(executor).crawl(
            SEED,
            options(max_concurrency=2, respect_robots_txt=False, discover_feeds=False),
            progress_sink=sink,
            cancellation=token,
        )

        assert result.cancelled is True
        assert 1 <= result.total_pages < 11
        urls = [page.url for page in result.pages]
        assert len(urls) == len(set(urls))
        assert all(page.status_code == 200 for page in result.pages)
        assert len(sink.completed) == 1

    @pytest.mark.asyncio
    async def test_pre_cancelled_token_fetches_nothing(self, fake_executor, fast_options):
        executor = fake_executor.add_page(SEED)
        token = CancellationToken()
        token.cancel()

        result = await SiteCrawler(executor).crawl(SEED, fast_options, cancellation=token)

        assert result.cancelled is True
        assert result.total_pages == 0
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_cancel_during_seed_fetch_keeps_only_the_seed(self):
        executor = (
            FakeExecutor()
            .add_page(SEED, "/a", "/b", delay=0.2)
            .add_page("https://example.test/a")
            .add_page("https://example.test/b")
        )
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel, "stop")

        result = await SiteCrawler(executor).crawl(
            SEED,
            options(respect_robots_txt=False, discover_feeds=False),
            cancellation=token,
        )

        assert result.cancelled is True
        assert [page.url for page in result.pages] == [SEED]
        assert result.pages[0].success is True
        assert executor.page_calls() == [SEED]


@pytest.mark.integration
class TestSiteCrawlerOutputs:
    """Progress, sitemap, export, saved pages and timings."""

    @pytest.mark.asyncio
    async def test_progress_events(self):
        executor = FakeExecutor().add_page(SEED, "/a").add_page("https://example.test/a")
        sink = RecordingSink()

        result = await SiteCrawler(executor).crawl(SEED, options(max_pages=4), progress_sink=sink)

        assert [p.pages_visited for p in sink.progress] == [1, 2]
        assert sink.progress[-1].percent_complete == pytest.approx(50.0)
        assert sink.completed == [result]
        assert sink.errors == []

    @pytest.mark.asyncio
    async def test_sitemap_and_export(self, temp_dir):
        executor = FakeExecutor().add_page(SEED, "/a", "/gone").add_page("https://example.test/a")
        export_path = temp_dir / "crawl.csv"

        result = await SiteCrawler(executor).crawl(
            SEED, options(export_enabled=True, export_path=export_path, export_format="csv")
        )

        assert result.export_path == export_path
        lines = export_path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 1 + result.total_pages
        assert "https://example.test/a" in result.sitemap_xml
        assert "https://example.test/gone" not in result.sitemap_xml

    @pytest.mark.asyncio
    async def test_export_failure_is_reported(self, temp_dir):
        blocker = temp_dir / "blocker"
        blocker.write_text("file", encoding="utf-8")
        sink = RecordingSink()
        executor = FakeExecutor().add_page(SEED)

        result = await SiteCrawler(executor).crawl(
            SEED,
            options(export_enabled=True, export_path=blocker / "out.jsonl", export_format="jsonl"),
            progress_sink=sink,
        )

        assert result.export_path is None
        assert any("export" in message for message in sink.errors)

    @pytest.mark.asyncio
    async def test_sitemap_disabled(self):
        result = await SiteCrawler(FakeExecutor().add_page(SEED)).crawl(SEED, options(generate_sitemap=False))

        assert result.sitemap_xml is None

    @pytest.mark.asyncio
    async def test_pages_saved_to_disk(self, temp_dir):
        executor = FakeExecutor().add(SEED, "<html><title>Saved</title></html>")

        await SiteCrawler(executor).crawl(SEED, options(save_pages_to_disk=True, output_directory=temp_dir / "pages"))

        saved = temp_dir / "pages" / "example.test_index.html"
        assert saved.read_text(encoding="utf-8") == "<html><title>Saved</title></html>"

    @pytest.mark.asyncio
    async def test_performance_snapshot(self):
        result = await SiteCrawler(FakeExecutor().add_page(SEED)).crawl(SEED, options())

        assert {"robots", "discovery", "rate_wait", "fetch", "parse"} <= set(result.performance)
        assert result.performance["fetch"]["count"] == 1

    @pytest.mark.asyncio
    async def test_result_to_dict(self):
        result = await SiteCrawler(FakeExecutor().add_page(SEED)).crawl(SEED, options())

        data = result.to_dict()
        assert data["start_url"] == SEED
        assert data["total_pages"] == 1
        assert data["pages"][0]["url"] == SEED

    @pytest.mark.asyncio
    async def test_throttled_host_is_recorded_as_failure(self):
        executor = FakeExecutor().add(SEED, "slow down", status=429, headers={"Retry-After": "0"})

        result = await asyncio.wait_for(SiteCrawler(executor).crawl(SEED, options()), timeout=5)

        assert result.pages[0].status_code == 429
        assert result.pages[0].success is False
