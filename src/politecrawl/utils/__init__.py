"""Utility modules for politecrawl."""

from .atomic import atomic_write_bytes, atomic_write_text
from .urls import (
    host_of,
    is_crawlable_link,
    is_http_url,
    normalize_url,
    robots_url,
    safe_filename,
    same_site,
    site_key,
    site_root,
)

__all__ = [
    "atomic_write_bytes",
    "atomic_write_text",
    "host_of",
    "is_crawlable_link",
    "is_http_url",
    "normalize_url",
    "robots_url",
    "safe_filename",
    "same_site",
    "site_key",
    "site_root",
]
