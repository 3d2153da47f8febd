"""
URL normalization and classification helpers shared by the crawler components.
"""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

_DEFAULT_PORTS = {"http": 80, "https": 443}

# Resources that are never worth fetching as pages.
_EXCLUDED_EXTENSIONS = (
    # Images
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".svg", ".ico", ".webp",
    # Documents
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".csv", ".rtf", ".txt",
    # Media
    ".mp3", ".mp4", ".avi", ".mov", ".wmv", ".flv", ".wav", ".ogg", ".webm",
    # Archives
    ".zip", ".rar", ".tar", ".gz", ".7z",
    # Other
    ".xml", ".json", ".rss", ".css", ".js", ".woff", ".woff2", ".ttf", ".eot",
)

_SYSTEM_PATHS = (
    "/cgi-bin/",
    "/cdn-cgi/",
    "/wp-admin/",
    "/wp-includes/",
    "/wp-content/plugins/",
    "/admin/",
    "/phpmyadmin/",
)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def is_http_url(url: str) -> bool:
    """Return True for absolute http(s) URLs with a host."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme.lower() in _DEFAULT_PORTS and bool(parts.hostname)


def normalize_url(url: str, base_url: Optional[str] = None) -> Optional[str]:
    """
    Canonicalize a URL so it can be used as a deduplication key.

    Relative URLs are resolved against ``base_url``. Scheme and host are
    lowercased, default ports and fragments are dropped and an empty path
    becomes ``/``. The query string is preserved. Returns None for anything
    that is not an http(s) URL.
    """
    if not url:
        return None
    url = url.strip()
    if not url:
        return None

    try:
        if base_url:
            url = urljoin(base_url, url)
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        if scheme not in _DEFAULT_PORTS or not parts.hostname:
            return None

        host = parts.hostname.lower()
        port = parts.port
    except ValueError:
        return None

    netloc = host
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        netloc = f"{host}:{port}"

    path = parts.path or "/"
    return urlunsplit((scheme, netloc, path, parts.query, ""))


def host_of(url: str) -> str:
    """Return the lowercased host (with non-default port) of a URL, or ''."""
    try:
        parts = urlsplit(url)
        host = (parts.hostname or "").lower()
        port = parts.port
    except ValueError:
        return ""
    if port is not None and port != _DEFAULT_PORTS.get(parts.scheme.lower()):
        return f"{host}:{port}"
    return host


def site_key(url: str) -> str:
    """Host without a leading ``www.`` used for internal/external classification."""
    host = host_of(url)
    if host.startswith("www."):
        return host[4:]
    return host


def same_site(url: str, reference_url: str) -> bool:
    """True if both URLs point at the same site, ignoring a ``www.`` prefix."""
    key = site_key(url)
    return bool(key) and key == site_key(reference_url)


def is_crawlable_link(url: str) -> bool:
    """
    True if the URL looks like an HTML page.

    Media, documents, archives, static assets and well-known system paths are
    rejected so they never consume crawl budget.
    """
    try:
        path = urlsplit(url).path.lower()
    except ValueError:
        return False
    if any(path.endswith(ext) for ext in _EXCLUDED_EXTENSIONS):
        return False
    return not any(system_path in path for system_path in _SYSTEM_PATHS)


def site_root(url: str) -> str:
    """Return ``scheme://host/`` for a URL."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme.lower(), host_of(url), "/", "", ""))


def robots_url(url: str) -> str:
    """Location of the robots.txt that governs ``url``."""
    return urljoin(site_root(url), "/robots.txt")


def safe_filename(url: str, extension: str = ".html", max_length: int = 150) -> str:
    """Build a filesystem-safe file name for a crawled URL."""
    parts = urlsplit(url)
    raw = f"{host_of(url)}{parts.path}"
    if parts.query:
        raw = f"{raw}_{parts.query}"
    if raw.endswith("/"):
        raw = f"{raw}index"
    name = _UNSAFE_FILENAME_CHARS.sub("_", raw).strip("._") or "index"
    if len(name) > max_length:
        name = name[:max_length]
    if not name.endswith(extension):
        name = f"{name}{extension}"
    return name
