"""
Tests for sitemap/RSS/Atom parsing and best-effort discovery.
"""

import pytest
from politecrawl.crawler.feed_discovery import FeedDiscovery, parse_feed
from politecrawl.exceptions import FetchError
from tests.helpers import FakeExecutor

SITEMAP = b"""<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://example.test/a</loc></url>
  <url><loc> https://example.test/b </loc></url>
  <url><lastmod>2024-01-01</lastmod></url>
</urlset>"""

SITEMAP_INDEX = b"""<?xml version="1.0" encoding="UTF-8"?>
<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <sitemap><loc>https://example.test/sitemap-posts.xml</loc></sitemap>
</sitemapindex>"""

RSS = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>t</title>
  <item><title>one</title><link>https://example.test/post/1</link></item>
  <item><title>two</title><link>https://example.test/post/2</link></item>
</channel></rss>"""

ATOM = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <entry>
    <link rel="self" href="https://example.test/feed/entry/1"/>
    <link rel="alternate" href="https://example.test/entry/1"/>
  </entry>
  <entry><link href="https://example.test/entry/2"/></entry>
</feed>"""

XML = "application/xml"


@pytest.mark.unit
class TestParseFeed:
    """Classification and URL extraction."""

    def test_sitemap(self):
        assert parse_feed(SITEMAP) == ("sitemap", ["https://example.test/a", "https://example.test/b"])

    def test_sitemap_index(self):
        assert parse_feed(SITEMAP_INDEX) == ("sitemapindex", ["https://example.test/sitemap-posts.xml"])

    def test_rss(self):
        assert parse_feed(RSS) == ("rss", ["https://example.test/post/1", "https://example.test/post/2"])

    def test_atom_prefers_alternate_links(self):
        assert parse_feed(ATOM) == ("atom", ["https://example.test/entry/1", "https://example.test/entry/2"])

    @pytest.mark.parametrize("content", [b"", b"   ", b"not xml at all <<<"])
    def test_malformed_is_invalid(self, content):
        kind, urls = parse_feed(content)

        assert kind == "invalid"
        assert urls == []

    def test_unknown_root(self):
        assert parse_feed(b"<html><body>hi</body></html>") == ("unknown", [])


@pytest.mark.unit
class TestFeedDiscovery:
    """Probing is isolated per candidate."""

    @pytest.mark.asyncio
    async def test_collects_urls_from_all_feeds(self):
        executor = (
            FakeExecutor()
            .add("https://example.test/sitemap.xml", SITEMAP, content_type=XML)
            .add("https://example.test/rss.xml", RSS, content_type=XML)
            .add("https://example.test/atom.xml", ATOM, content_type=XML)
        )

        urls = await FeedDiscovery(executor).discover("https://example.test/some/page")

        assert urls == [
            "https://example.test/a",
            "https://example.test/b",
            "https://example.test/post/1",
            "https://example.test/post/2",
            "https://example.test/entry/1",
            "https://example.test/entry/2",
        ]

    @pytest.mark.asyncio
    async def test_one_failing_candidate_does_not_affect_others(self):
        executor = (
            FakeExecutor()
            .fail("https://example.test/sitemap.xml", FetchError("refused", url="https://example.test/sitemap.xml"))
            .add("https://example.test/rss.xml", b"<rss><channel><item><link>broken", content_type=XML)
            .add("https://example.test/feed.xml", "server error", status=500)
            .add("https://example.test/atom.xml", ATOM, content_type=XML)
        )
        discovery = FeedDiscovery(executor)

        urls = await discovery.discover("https://example.test/")

        assert "https://example.test/entry/1" in urls
        probes = {probe.url: probe for probe in discovery.last_probes}
        assert probes["https://example.test/sitemap.xml"].error is not None
        assert probes["https://example.test/feed.xml"].status == 500
        assert probes["https://example.test/atom.xml"].found

    @pytest.mark.asyncio
    async def test_sitemap_index_followed_one_level(self):
        executor = (
            FakeExecutor()
            .add("https://example.test/sitemap.xml", SITEMAP_INDEX, content_type=XML)
            .add("https://example.test/sitemap-posts.xml", SITEMAP, content_type=XML)
        )

        urls = await FeedDiscovery(executor).discover("https://example.test/")

        assert urls == ["https://example.test/a", "https://example.test/b"]
        assert executor.count("https://example.test/sitemap-posts.xml") == 1

    @pytest.mark.asyncio
    async def test_robots_sitemaps_are_extra_candidates(self):
        executor = FakeExecutor().add("https://example.test/custom-map.xml", SITEMAP, content_type=XML)

        urls = await FeedDiscovery(executor).discover(
            "https://example.test/", extra_candidates=["https://example.test/custom-map.xml"]
        )

        assert urls == ["https://example.test/a", "https://example.test/b"]

    @pytest.mark.asyncio
    async def test_nothing_found(self):
        assert await FeedDiscovery(FakeExecutor()).discover("https://example.test/") == []

    @pytest.mark.asyncio
    async def test_max_urls_limit(self):
        executor = FakeExecutor().add("https://example.test/sitemap.xml", SITEMAP, content_type=XML)

        assert len(await FeedDiscovery(executor, max_urls=1).discover("https://example.test/")) == 1

    @pytest.mark.asyncio
    async def test_probes_wait_for_politeness_one_at_a_time(self):
        executor = FakeExecutor(delay=0.01)
        waited = []

        async def politeness(url: str) -> bool:
            waited.append(url)
            assert executor.in_flight == 0
            return True

        await FeedDiscovery(executor, politeness=politeness).discover("https://example.test/")

        assert waited == executor.calls
        assert executor.peak_in_flight == 1

    @pytest.mark.asyncio
    async def test_cancelled_politeness_wait_skips_probe(self):
        executor = FakeExecutor()

        async def cancelled(url: str) -> bool:
            return False

        discovery = FeedDiscovery(executor, politeness=cancelled)
        urls = await discovery.discover("https://example.test/")

        assert urls == []
        assert executor.calls == []
        assert {probe.error for probe in discovery.last_probes} == {"cancelled"}
