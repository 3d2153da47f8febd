"""
Cooperative cancellation shared by every suspension point of a crawl.

A token is cancelled once and stays cancelled. Waiting code either checks
``cancelled`` at item boundaries or uses ``sleep``/``wait`` so that a
pending delay ends early when cancellation is requested.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


class CancellationToken:
    """asyncio.Event backed cancellation signal."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.info("Cancellation requested", reason=reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """
        Sleep for ``delay`` seconds unless cancelled first.

        Returns:
            True if the full delay elapsed, False if cancellation interrupted it
        """
        if self.cancelled:
            return False
        if delay <= 0:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False


async def sleep_unless_cancelled(delay: float, cancellation: Optional[CancellationToken]) -> bool:
    """``CancellationToken.sleep`` that also accepts a missing token."""
    if cancellation is None:
        if delay > 0:
            await asyncio.sleep(delay)
        return True
    return await cancellation.sleep(delay)
