"""
XML sitemap generation for crawled pages.
"""

from __future__ import annotations

from typing import Iterable, Set

from lxml import etree

from politecrawl.protocols import CrawledPage

SITEMAP_NAMESPACE = "http://www.sitemaps.org/schemas/sitemap/0.9"
DEFAULT_CHANGEFREQ = "weekly"
DEFAULT_PRIORITY = "0.5"


def build_sitemap_xml(pages: Iterable[CrawledPage]) -> str:
    """
    Build a ``urlset`` document listing every successfully crawled page.

    Pages keep their crawl order and each URL appears once. Failed pages are
    left out.
    """
    urlset = etree.Element(f"{{{SITEMAP_NAMESPACE}}}urlset", nsmap={None: SITEMAP_NAMESPACE})
    seen: Set[str] = set()

    for page in pages:
        if not page.success or page.url in seen:
            continue
        seen.add(page.url)

        entry = etree.SubElement(urlset, f"{{{SITEMAP_NAMESPACE}}}url")
        etree.SubElement(entry, f"{{{SITEMAP_NAMESPACE}}}loc").text = page.url
        etree.SubElement(entry, f"{{{SITEMAP_NAMESPACE}}}lastmod").text = page.timestamp.strftime("%Y-%m-%d")
        etree.SubElement(entry, f"{{{SITEMAP_NAMESPACE}}}changefreq").text = DEFAULT_CHANGEFREQ
        etree.SubElement(entry, f"{{{SITEMAP_NAMESPACE}}}priority").text = DEFAULT_PRIORITY

    return etree.tostring(urlset, xml_declaration=True, encoding="UTF-8", pretty_print=True).decode("utf-8")
