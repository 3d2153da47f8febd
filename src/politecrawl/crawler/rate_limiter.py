"""
Per-host politeness delay with adaptive backoff.

Each host has its own delay budget and its own lock, so slow or failing hosts
never serialize requests to unrelated hosts. A host starts at the configured
base delay (or its robots.txt crawl-delay when that is larger). Consecutive
failures multiply the delay up to a ceiling. Each success decays it back toward
the floor. A Retry-After hint opens a window during which no request is issued
to that host.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from politecrawl.concurrency.cancellation import CancellationToken, sleep_unless_cancelled
from politecrawl.observability.metrics import METRICS

logger = structlog.get_logger(__name__)


@dataclass
class HostRateState:
    """Rate limiting state for a single host."""

    floor_delay: float
    current_delay: float
    last_request_at: Optional[float] = None
    retry_after_until: float = 0.0
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    total_failures: int = 0
    total_successes: int = 0
    backoff_count: int = 0


class RateController:
    """
    Adaptive per-host rate controller.

    ``wait_turn`` holds the host lock while sleeping, so two workers targeting
    the same host are spaced by at least the host's current delay no matter
    how many worker slots are free.
    """

    def __init__(
        self,
        base_delay: float,
        max_delay: float,
        *,
        adaptive: bool = True,
        backoff_factor: float = 2.0,
        decay_factor: float = 0.5,
        failure_threshold: int = 2,
        min_backoff: float = 0.1,
        max_retry_after: float = 60.0,
    ) -> None:
        if base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if max_delay <= base_delay:
            raise ValueError("max_delay must be greater than base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.adaptive = adaptive
        self.backoff_factor = backoff_factor
        self.decay_factor = decay_factor
        self.failure_threshold = max(1, failure_threshold)
        self.min_backoff = min_backoff
        self.max_retry_after = max_retry_after

        self._hosts: Dict[str, HostRateState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

        logger.debug("Rate controller initialized", base_delay=base_delay, max_delay=max_delay, adaptive=adaptive)

    def _get_host_lock(self, host: str) -> asyncio.Lock:
        if host not in self._locks:
            self._locks[host] = asyncio.Lock()
        return self._locks[host]

    def _get_host_state(self, host: str) -> HostRateState:
        if host not in self._hosts:
            self._hosts[host] = HostRateState(floor_delay=self.base_delay, current_delay=self.base_delay)
        return self._hosts[host]

    def set_host_floor(self, host: str, crawl_delay: Optional[float]) -> None:
        """Raise the host's floor to its robots.txt crawl-delay if that is larger than the base."""
        if crawl_delay is None or crawl_delay <= self.base_delay:
            return
        state = self._get_host_state(host)
        floor = min(crawl_delay, self.max_delay)
        state.floor_delay = floor
        state.current_delay = max(state.current_delay, floor)
        logger.info("Applying robots.txt crawl-delay", host=host, crawl_delay=crawl_delay, applied=floor)

    def delay_before(self, host: str) -> float:
        """Current required spacing for ``host`` in seconds, including any Retry-After window."""
        state = self._get_host_state(host)
        retry_remaining = max(0.0, state.retry_after_until - time.monotonic())
        return max(state.current_delay, retry_remaining)

    async def wait_turn(self, host: str, cancellation: Optional[CancellationToken] = None) -> Optional[float]:
        """
        Wait until a request to ``host`` may be issued and reserve that slot.

        Returns:
            Seconds waited, or None if cancellation interrupted the wait
        """
        async with self._get_host_lock(host):
            state = self._get_host_state(host)
            now = time.monotonic()
            ready_at = state.retry_after_until
            if state.last_request_at is not None:
                ready_at = max(ready_at, state.last_request_at + state.current_delay)
            delay = max(0.0, ready_at - now)

            if delay > 0:
                logger.debug("Waiting for host politeness delay", host=host, delay=round(delay, 3))
            if not await sleep_unless_cancelled(delay, cancellation):
                return None

            state.last_request_at = time.monotonic()
            METRICS["crawler_rate_limit_wait_seconds"].observe(delay)
            return delay

    def record_outcome(self, host: str, success: bool, retry_after: Optional[float] = None) -> None:
        """
        Feed back the result of a request to ``host``.

        Args:
            host: Target host
            success: Whether the request succeeded
            retry_after: Server supplied Retry-After hint in seconds (counts as throttling)
        """
        state = self._get_host_state(host)

        if retry_after is not None and retry_after > 0:
            hint = min(retry_after, self.max_retry_after)
            state.retry_after_until = max(state.retry_after_until, time.monotonic() + hint)
            logger.info("Server requested delay", host=host, retry_after=retry_after, applied=hint)
            success = False

        if success:
            state.total_successes += 1
            state.consecutive_successes += 1
            state.consecutive_failures = 0
            if self.adaptive and state.current_delay > state.floor_delay:
                state.current_delay = max(state.current_delay * self.decay_factor, state.floor_delay)
                logger.debug("Decaying host delay", host=host, delay=round(state.current_delay, 3))
            return

        state.total_failures += 1
        state.consecutive_failures += 1
        state.consecutive_successes = 0
        if not self.adaptive or state.consecutive_failures < self.failure_threshold:
            return

        new_delay = min(
            max(state.current_delay * self.backoff_factor, state.floor_delay + self.min_backoff),
            self.max_delay,
        )
        if new_delay > state.current_delay:
            state.current_delay = new_delay
            state.backoff_count += 1
            METRICS["crawler_host_backoff_total"].inc()
            logger.warning(
                "Increasing host delay after failures",
                host=host,
                delay=round(new_delay, 3),
                consecutive_failures=state.consecutive_failures,
            )

    def get_host_stats(self, host: str) -> Dict[str, Any]:
        if host not in self._hosts:
            return {"exists": False}
        state = self._hosts[host]
        return {
            "exists": True,
            "floor_delay": state.floor_delay,
            "current_delay": state.current_delay,
            "consecutive_failures": state.consecutive_failures,
            "total_failures": state.total_failures,
            "total_successes": state.total_successes,
            "backoff_count": state.backoff_count,
            "retry_after_remaining": max(0.0, state.retry_after_until - time.monotonic()),
        }
