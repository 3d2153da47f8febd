"""
Per-operation timing for a single crawl.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict

import structlog

from politecrawl.observability.metrics import METRICS

logger = structlog.get_logger(__name__)


@dataclass
class OperationStats:
    count: int = 0
    total: float = 0.0
    min: float = float("inf")
    max: float = 0.0

    def add(self, seconds: float) -> None:
        self.count += 1
        self.total += seconds
        self.min = min(self.min, seconds)
        self.max = max(self.max, seconds)

    @property
    def avg(self) -> float:
        return self.total / self.count if self.count else 0.0


class PerformanceTracker:
    """Collects durations of named crawl operations (robots, rate_wait, fetch, parse, discovery)."""

    def __init__(self, crawl_id: str) -> None:
        self.crawl_id = crawl_id
        self._operations: Dict[str, OperationStats] = {}

    @asynccontextmanager
    async def track(self, operation: str) -> AsyncIterator[None]:
        """Time the enclosed block. The duration is recorded even if the block raises."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.record(operation, time.perf_counter() - started)

    def record(self, operation: str, seconds: float) -> None:
        seconds = max(0.0, seconds)
        stats = self._operations.get(operation)
        if stats is None:
            stats = self._operations[operation] = OperationStats()
        stats.add(seconds)
        METRICS["crawler_operation_seconds"].labels(operation=operation).observe(seconds)

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        return {
            name: {
                "count": stats.count,
                "total": stats.total,
                "avg": stats.avg,
                "min": stats.min if stats.count else 0.0,
                "max": stats.max,
            }
            for name, stats in self._operations.items()
        }

    def log_metrics(self) -> None:
        for name, stats in self.snapshot().items():
            logger.info(
                "Operation timings",
                crawl_id=self.crawl_id,
                operation=name,
                count=int(stats["count"]),
                avg_ms=round(stats["avg"] * 1000, 2),
                max_ms=round(stats["max"] * 1000, 2),
            )
