"""
Best-effort sitemap, RSS and Atom discovery.

A fixed set of well-known locations is probed at the site root, together with
any ``Sitemap:`` URLs announced in robots.txt. Every probe is isolated: a
timeout, an error status or malformed XML on one candidate only empties that
candidate's result. Sitemap indexes are followed one level deep.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

import structlog
from lxml import etree

from politecrawl.concurrency.cancellation import CancellationToken
from politecrawl.observability.metrics import METRICS
from politecrawl.protocols import PolitenessHook, RequestExecutor
from politecrawl.utils.urls import is_http_url, normalize_url, site_root

logger = structlog.get_logger(__name__)

FEED_PATHS: Tuple[str, ...] = ("/sitemap.xml", "/rss.xml", "/feed.xml", "/atom.xml")

_XML_PARSER = etree.XMLParser(recover=True, resolve_entities=False, no_network=True, remove_comments=True)


@dataclass(frozen=True)
class FeedProbe:
    """Outcome of probing one candidate feed location."""

    url: str
    kind: str = "unknown"
    status: Optional[int] = None
    urls: Tuple[str, ...] = ()
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return bool(self.urls)


def _local_name(element: etree._Element) -> str:
    if not isinstance(element.tag, str):
        return ""
    return etree.QName(element).localname.lower()


def _children(element: etree._Element, name: str) -> List[etree._Element]:
    return [child for child in element if _local_name(child) == name]


def _child_text(element: etree._Element, name: str) -> Optional[str]:
    for child in _children(element, name):
        text = (child.text or "").strip()
        if text:
            return text
    return None


def parse_feed(content: bytes) -> Tuple[str, List[str]]:
    """
    Classify an XML document and pull the URLs it lists.

    Returns:
        ``(kind, urls)`` where kind is one of ``sitemap``, ``sitemapindex``,
        ``rss``, ``atom``, ``unknown`` or ``invalid``. For a sitemap index the
        URLs are the nested sitemap locations.
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    if not content or not content.strip():
        return "invalid", []
    try:
        root = etree.fromstring(content, parser=_XML_PARSER)
    except (etree.XMLSyntaxError, ValueError) as e:
        logger.debug("Feed XML could not be parsed", error=str(e))
        return "invalid", []
    if root is None:
        return "invalid", []

    root_name = _local_name(root)
    urls: List[str] = []

    if root_name == "urlset":
        for entry in _children(root, "url"):
            loc = _child_text(entry, "loc")
            if loc:
                urls.append(loc)
        return "sitemap", urls

    if root_name == "sitemapindex":
        for entry in _children(root, "sitemap"):
            loc = _child_text(entry, "loc")
            if loc:
                urls.append(loc)
        return "sitemapindex", urls

    if root_name in ("rss", "rdf"):
        for item in root.iter():
            if _local_name(item) == "item":
                link = _child_text(item, "link")
                if link:
                    urls.append(link)
        return "rss", urls

    if root_name == "feed":
        for entry in _children(root, "entry"):
            chosen: Optional[str] = None
            for link in _children(entry, "link"):
                href = (link.get("href") or "").strip()
                rel = (link.get("rel") or "alternate").strip().lower()
                if href and rel == "alternate":
                    chosen = href
                    break
            if chosen:
                urls.append(chosen)
        return "atom", urls

    return "unknown", []


class FeedDiscovery:
    """Probes well-known feed locations for URLs that link-following may miss."""

    def __init__(
        self,
        executor: RequestExecutor,
        timeout: float = 10.0,
        max_urls: int = 500,
        max_nested_sitemaps: int = 10,
        user_agent: Optional[str] = None,
        paths: Sequence[str] = FEED_PATHS,
        politeness: Optional[PolitenessHook] = None,
    ) -> None:
        self._executor = executor
        self._politeness = politeness
        self.timeout = timeout
        self.max_urls = max_urls
        self.max_nested_sitemaps = max_nested_sitemaps
        self.user_agent = user_agent
        self.paths = tuple(paths)
        self.last_probes: List[FeedProbe] = []

    def candidates(self, base_url: str, extra_candidates: Iterable[str] = ()) -> List[str]:
        root = site_root(base_url)
        seen = set()
        result = []
        for url in [urljoin(root, path) for path in self.paths] + [c for c in extra_candidates if is_http_url(c)]:
            if url not in seen:
                seen.add(url)
                result.append(url)
        return result

    async def discover(
        self,
        base_url: str,
        extra_candidates: Iterable[str] = (),
        cancellation: Optional[CancellationToken] = None,
    ) -> List[str]:
        """
        Return normalized, de-duplicated page URLs listed by the site's feeds.

        Never raises for network or parse problems. The per-candidate outcome
        is kept in ``last_probes``.
        """
        candidates = self.candidates(base_url, extra_candidates)
        # Sequential so the politeness hook can space requests to the same host.
        probes = [await self._probe(url, cancellation) for url in candidates]

        nested: List[str] = []
        for probe in probes:
            if probe.kind == "sitemapindex":
                nested.extend(url for url in probe.urls if url not in candidates)
        if nested:
            nested = nested[: self.max_nested_sitemaps]
            probes.extend([await self._probe(url, cancellation, follow_index=False) for url in nested])

        self.last_probes = probes

        urls: List[str] = []
        seen = set()
        for probe in probes:
            if probe.kind == "sitemapindex":
                continue
            for url in probe.urls:
                normalized = normalize_url(url)
                if normalized is None or normalized in seen:
                    continue
                seen.add(normalized)
                urls.append(normalized)
                if len(urls) >= self.max_urls:
                    break
            if len(urls) >= self.max_urls:
                break

        METRICS["feed_discovery_urls_total"].inc(len(urls))
        logger.info(
            "Feed discovery finished",
            base_url=base_url,
            candidates=len(candidates),
            feeds_found=sum(1 for p in probes if p.found),
            urls=len(urls),
        )
        return urls

    async def _probe(
        self,
        url: str,
        cancellation: Optional[CancellationToken],
        follow_index: bool = True,
    ) -> FeedProbe:
        if cancellation is not None and cancellation.cancelled:
            return FeedProbe(url=url, error="cancelled")
        if self._politeness is not None and not await self._politeness(url):
            return FeedProbe(url=url, error="cancelled")

        headers = {"User-Agent": self.user_agent} if self.user_agent else None
        try:
            response = await self._executor.send(url, headers=headers, timeout=self.timeout, cancellation=cancellation)
        except Exception as e:
            logger.debug("Feed probe failed", url=url, error=str(e))
            return FeedProbe(url=url, error=f"{type(e).__name__}: {e}")

        if not response.is_success:
            return FeedProbe(url=url, status=response.status, error=f"HTTP {response.status}")

        kind, urls = parse_feed(response.body)
        if kind == "sitemapindex" and not follow_index:
            # Only one level of nesting is followed.
            return FeedProbe(url=url, kind=kind, status=response.status)
        if kind == "invalid":
            logger.debug("Feed probe returned malformed XML", url=url)
            return FeedProbe(url=url, kind=kind, status=response.status, error="malformed XML")

        logger.debug("Feed probe succeeded", url=url, kind=kind, urls=len(urls))
        return FeedProbe(url=url, kind=kind, status=response.status, urls=tuple(urls))
