"""Configuration models for politecrawl."""

from .config import (
    DEFAULT_USER_AGENT,
    CrawlerOptions,
    HttpClientConfig,
    MonitoringConfig,
    Settings,
    validate_start_url,
)

__all__ = [
    "DEFAULT_USER_AGENT",
    "CrawlerOptions",
    "HttpClientConfig",
    "MonitoringConfig",
    "Settings",
    "validate_start_url",
]
