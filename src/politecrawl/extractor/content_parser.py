"""
Link, title and meta description extraction using selectolax.

Parsing never raises. Anything that cannot be parsed yields an empty
``ParsedPage`` with ``parse_error`` describing what went wrong, and the crawl
carries on.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import structlog
from selectolax.parser import HTMLParser, Node

from politecrawl.utils.urls import normalize_url

logger = structlog.get_logger(__name__)

_LINK_SELECTORS = "a[href], area[href]"


@dataclass(frozen=True)
class ParsedPage:
    """Extraction output for one HTML document."""

    links: Tuple[str, ...] = ()
    title: Optional[str] = None
    meta_description: Optional[str] = None
    parse_error: Optional[str] = None


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = " ".join(value.split())
    return text or None


class ContentParser:
    """Extracts outbound links and page metadata from HTML."""

    def parse(self, html: Union[str, bytes, None], base_url: str) -> ParsedPage:
        tree, error = self._build_tree(html)
        if tree is None:
            logger.debug("HTML parse failed", url=base_url, error=error)
            return ParsedPage(parse_error=error)
        try:
            return ParsedPage(
                links=tuple(self._links_from_tree(tree, base_url)),
                title=self._title_from_tree(tree),
                meta_description=self._description_from_tree(tree),
            )
        except Exception as e:
            logger.warning("HTML extraction failed", url=base_url, error=str(e))
            return ParsedPage(parse_error=f"{type(e).__name__}: {e}")

    def extract_links(self, html: Union[str, bytes, None], base_url: str) -> List[str]:
        return list(self.parse(html, base_url).links)

    def extract_title(self, html: Union[str, bytes, None]) -> Optional[str]:
        tree, _ = self._build_tree(html)
        if tree is None:
            return None
        try:
            return self._title_from_tree(tree)
        except Exception:
            return None

    def extract_meta_description(self, html: Union[str, bytes, None]) -> Optional[str]:
        tree, _ = self._build_tree(html)
        if tree is None:
            return None
        try:
            return self._description_from_tree(tree)
        except Exception:
            return None

    # --- internals ---

    @staticmethod
    def _build_tree(html: Union[str, bytes, None]) -> Tuple[Optional[HTMLParser], Optional[str]]:
        if html is None:
            return None, "empty document"
        if isinstance(html, bytes):
            html = html.decode("utf-8", errors="replace")
        if not isinstance(html, str):
            return None, f"unsupported document type: {type(html).__name__}"
        if not html.strip():
            return None, "empty document"
        try:
            return HTMLParser(html), None
        except Exception as e:
            return None, f"{type(e).__name__}: {e}"

    @staticmethod
    def _base_href(tree: HTMLParser, base_url: str) -> str:
        base = tree.css_first("base[href]")
        if base is not None:
            href = (base.attributes.get("href") or "").strip()
            resolved = normalize_url(href, base_url) if href else None
            if resolved:
                return resolved
        return base_url

    def _links_from_tree(self, tree: HTMLParser, base_url: str) -> List[str]:
        base = self._base_href(tree, base_url)
        links: List[str] = []
        seen = set()
        for node in tree.css(_LINK_SELECTORS):
            href = (node.attributes.get("href") or "").strip()
            if not href or href.startswith("#"):
                continue
            url = normalize_url(href, base)
            if url is None or url in seen:
                continue
            seen.add(url)
            links.append(url)
        return links

    @staticmethod
    def _title_from_tree(tree: HTMLParser) -> Optional[str]:
        node = tree.css_first("title")
        if node is None:
            return None
        return _clean_text(node.text(strip=True))

    @staticmethod
    def _meta_content(tree: HTMLParser, attribute: str, wanted: str) -> Optional[str]:
        node: Node
        for node in tree.css(f"meta[{attribute}]"):
            if (node.attributes.get(attribute) or "").strip().lower() == wanted:
                return _clean_text(node.attributes.get("content"))
        return None

    def _description_from_tree(self, tree: HTMLParser) -> Optional[str]:
        return self._meta_content(tree, "name", "description") or self._meta_content(
            tree, "property", "og:description"
        )
