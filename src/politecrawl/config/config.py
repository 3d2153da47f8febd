"""
Configuration management for politecrawl using Pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Literal, Mapping, Optional, Set, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from politecrawl.exceptions import CrawlConfigurationError
from politecrawl.utils.urls import normalize_url

# --- Setup Logging ---
log = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "PoliteCrawl/1.0 (+https://github.com/politecrawl/politecrawl)"

# --- Crawl Options ---


class CrawlerOptions(BaseModel):
    """Per-crawl options. Validated before any network activity."""

    model_config = ConfigDict(extra="forbid")

    max_depth: int = Field(default=3, ge=0, description="Maximum link depth from the start URL (start URL is depth 0).")
    max_pages: int = Field(default=100, ge=1, description="Maximum number of pages fetched (success + failure).")
    max_concurrency: int = Field(default=4, ge=1, description="Maximum number of pages in flight at once.")
    request_delay_ms: int = Field(default=1000, ge=0, description="Base delay between requests to the same host.")
    max_delay_ms: int = Field(default=5000, ge=1, description="Ceiling for the adaptive per-host delay.")
    request_timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds.")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="User-Agent sent with every request.")
    respect_robots_txt: bool = Field(default=True, description="Whether to honour robots.txt rules and crawl-delay.")
    follow_external_links: bool = Field(default=False, description="Whether to follow links to other sites.")
    adaptive_rate_limiting: bool = Field(default=True, description="Back off on failures and decay on success.")
    discover_feeds: bool = Field(default=True, description="Probe sitemap/RSS/Atom feeds to seed extra URLs.")
    generate_sitemap: bool = Field(default=True, description="Attach a sitemap XML document to the result.")
    export_enabled: bool = Field(default=False, description="Export crawled pages once the crawl completes.")
    export_path: Optional[Path] = Field(default=None, description="Destination file for the export.")
    export_format: Literal["csv", "jsonl"] = Field(default="csv", description="Export file format.")
    save_pages_to_disk: bool = Field(default=False, description="Write successful page bodies to output_directory.")
    output_directory: Optional[Path] = Field(default=None, description="Directory for saved page bodies.")

    @field_validator("user_agent", mode="before")
    @classmethod
    def strip_user_agent(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            if not v:
                raise ValueError("user_agent must not be blank")
        return v

    @model_validator(mode="after")
    def check_consistency(self) -> "CrawlerOptions":
        if self.max_delay_ms <= self.request_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be greater than request_delay_ms ({self.request_delay_ms})"
            )
        if self.export_enabled and self.export_path is None:
            raise ValueError("export_path is required when export_enabled is set")
        if self.save_pages_to_disk and self.output_directory is None:
            raise ValueError("output_directory is required when save_pages_to_disk is set")
        return self

    @property
    def base_delay(self) -> float:
        """Base per-host delay in seconds."""
        return self.request_delay_ms / 1000.0

    @property
    def max_delay(self) -> float:
        """Adaptive delay ceiling in seconds."""
        return self.max_delay_ms / 1000.0

    @classmethod
    def coerce(cls, value: Union["CrawlerOptions", Mapping[str, Any], None]) -> "CrawlerOptions":
        """Build options from an instance, a mapping or None, raising CrawlConfigurationError on bad input."""
        try:
            if value is None:
                return cls()
            if isinstance(value, cls):
                # Instances may have been mutated or built with model_construct().
                return cls.model_validate(value.model_dump())
            return cls.model_validate(dict(value))
        except ValidationError as e:
            raise CrawlConfigurationError(f"Invalid crawler options: {e}") from e
        except (TypeError, ValueError) as e:
            raise CrawlConfigurationError(f"Invalid crawler options: {e}") from e


def validate_start_url(url: Any) -> str:
    """Return the normalized start URL or raise CrawlConfigurationError."""
    if not isinstance(url, str) or not url.strip():
        raise CrawlConfigurationError("Start URL must be a non-empty string")
    normalized = normalize_url(url)
    if normalized is None:
        raise CrawlConfigurationError(f"Start URL must be an absolute http(s) URL: {url!r}")
    return normalized


# --- Transport / Observability ---


class HttpClientConfig(BaseModel):
    """Configuration for the default aiohttp request executor."""

    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="Default User-Agent header.")
    max_retries: int = Field(default=2, ge=0, description="Retry attempts after the first request.")
    backoff_base: float = Field(default=0.5, ge=0, description="Exponential backoff multiplier in seconds.")
    backoff_max: float = Field(default=8.0, ge=0, description="Upper bound for a single backoff wait.")
    max_connections: int = Field(default=100, ge=1, description="Connection pool size.")
    max_body_bytes: int = Field(default=5 * 1024 * 1024, ge=1, description="Bodies are truncated past this size.")
    retry_statuses: Set[int] = Field(
        default_factory=lambda: {429, 502, 503, 504},
        description="HTTP statuses that trigger a retry.",
    )


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: Optional[str] = Field(default=None, description="Path to log file. If None, logs to console.")
    prometheus_port: Optional[int] = Field(
        default=None,
        description="Port for Prometheus metrics exporter. None to disable.",
    )

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Settings Class ---


class Settings(BaseSettings):
    crawler: CrawlerOptions = Field(default_factory=CrawlerOptions)
    http: HttpClientConfig = Field(default_factory=HttpClientConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="POLITECRAWL_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Settings:
        log.debug("Loading configuration from YAML file: %s", path)
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        try:
            return cls.model_validate(yaml_data)
        except ValidationError as e:
            raise CrawlConfigurationError(f"Invalid configuration in {path}: {e}") from e
