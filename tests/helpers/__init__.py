"""Test helpers for politecrawl."""

from .fake_executor import FakeExecutor, html_page
from .metric_delta import get_histogram_count, histogram_observes, metric_delta, metric_increases, metric_value

__all__ = [
    "FakeExecutor",
    "get_histogram_count",
    "histogram_observes",
    "html_page",
    "metric_delta",
    "metric_increases",
    "metric_value",
]
