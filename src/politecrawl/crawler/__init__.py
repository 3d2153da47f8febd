"""Crawl orchestration and the politeness machinery around it."""

from .feed_discovery import FEED_PATHS, FeedDiscovery, FeedProbe, parse_feed
from .frontier import Frontier, FrontierEntry
from .http_client import HttpClient
from .orchestrator import BaseSiteCrawler, SimpleSiteCrawler, SiteCrawler
from .performance import PerformanceTracker
from .progress import LoggingProgressSink, ProgressChannel
from .rate_limiter import HostRateState, RateController
from .robots_parser import RobotsCache, RobotsPolicy, RobotsRules
from .sitemap import build_sitemap_xml

__all__ = [
    "BaseSiteCrawler",
    "FEED_PATHS",
    "FeedDiscovery",
    "FeedProbe",
    "Frontier",
    "FrontierEntry",
    "HostRateState",
    "HttpClient",
    "LoggingProgressSink",
    "PerformanceTracker",
    "ProgressChannel",
    "RateController",
    "RobotsCache",
    "RobotsPolicy",
    "RobotsRules",
    "SimpleSiteCrawler",
    "SiteCrawler",
    "build_sitemap_xml",
    "parse_feed",
]
