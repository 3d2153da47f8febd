"""HTML content extraction for crawled pages."""

from .content_parser import ContentParser, ParsedPage

__all__ = ["ContentParser", "ParsedPage"]
