"""Logging and metrics for politecrawl."""

from .logging import configure_logging
from .metrics import METRICS, start_metrics_server

__all__ = ["configure_logging", "start_metrics_server", "METRICS"]
