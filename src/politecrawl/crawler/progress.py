"""
Bounded, non-blocking progress delivery.

The orchestrator publishes into a ``ProgressChannel``. Every subscribed sink
gets its own bounded queue and drain task, so a slow sink never slows the
crawl or other sinks. When a sink's queue is full the oldest progress
snapshot is dropped. Completion and error events are never dropped.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, List, Optional, Union

import structlog

from politecrawl.protocols import CrawlProgress, CrawlResult, ProgressSink

logger = structlog.get_logger(__name__)

_CLOSE = object()


@dataclass(frozen=True)
class _Event:
    kind: str
    payload: Any


class _Subscription:
    def __init__(self, sink: ProgressSink, buffer_size: int) -> None:
        self.sink = sink
        self.buffer_size = buffer_size
        self.buffer: Deque[Union[_Event, object]] = deque()
        self.ready = asyncio.Event()
        self.task: Optional[asyncio.Task[None]] = None
        self.dropped = 0
        self.delivered = 0

    def offer(self, event: Union[_Event, object]) -> None:
        """Buffer without blocking, evicting the oldest progress snapshot if full."""
        is_progress = isinstance(event, _Event) and event.kind == "progress"
        if is_progress and len(self.buffer) >= self.buffer_size:
            for queued in self.buffer:
                if isinstance(queued, _Event) and queued.kind == "progress":
                    self.buffer.remove(queued)
                    self.dropped += 1
                    break
        self.buffer.append(event)
        self.ready.set()

    async def drain(self) -> None:
        while True:
            while not self.buffer:
                self.ready.clear()
                await self.ready.wait()
            event = self.buffer.popleft()
            if event is _CLOSE:
                return
            await self._deliver(event)  # type: ignore[arg-type]

    async def _deliver(self, event: _Event) -> None:
        handler = getattr(self.sink, f"on_{event.kind}", None)
        if handler is None:
            return
        try:
            outcome = handler(event.payload)
            if inspect.isawaitable(outcome):
                await outcome
            self.delivered += 1
        except Exception as e:
            logger.warning("Progress sink raised", sink=type(self.sink).__name__, event=event.kind, error=str(e))


class ProgressChannel:
    """Fan-out channel from one publisher to any number of sinks."""

    def __init__(self, buffer_size: int = 64) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        self.buffer_size = buffer_size
        self._subscriptions: List[_Subscription] = []
        self._closed = False
        self.published = 0

    async def __aenter__(self) -> "ProgressChannel":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped(self) -> int:
        return sum(sub.dropped for sub in self._subscriptions)

    def subscribe(self, sink: ProgressSink) -> None:
        if self._closed:
            raise RuntimeError("Cannot subscribe to a closed progress channel")
        subscription = _Subscription(sink, self.buffer_size)
        subscription.task = asyncio.create_task(subscription.drain())
        self._subscriptions.append(subscription)

    def _publish(self, kind: str, payload: Any) -> None:
        if self._closed:
            logger.debug("Dropping event published after close", kind=kind)
            return
        self.published += 1
        event = _Event(kind, payload)
        for subscription in self._subscriptions:
            subscription.offer(event)

    def publish_progress(self, progress: CrawlProgress) -> None:
        self._publish("progress", progress)

    def publish_complete(self, result: CrawlResult) -> None:
        self._publish("complete", result)

    def publish_error(self, message: str) -> None:
        self._publish("error", message)

    async def close(self) -> None:
        """Deliver everything still buffered, then stop the drain tasks."""
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscriptions:
            subscription.offer(_CLOSE)
        tasks = [sub.task for sub in self._subscriptions if sub.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self.dropped:
            logger.debug("Progress channel closed", published=self.published, dropped=self.dropped)


class LoggingProgressSink:
    """Progress sink that writes events to the structured log."""

    def __init__(self, every: int = 10) -> None:
        self.every = max(1, every)

    def on_progress(self, progress: CrawlProgress) -> None:
        if progress.pages_visited % self.every == 0:
            logger.info(
                "Crawl progress",
                visited=progress.pages_visited,
                failed=progress.pages_failed,
                remaining=progress.pages_remaining,
                depth=progress.current_depth,
                percent=round(progress.percent_complete, 1),
                elapsed=round(progress.elapsed, 1),
            )

    def on_complete(self, result: CrawlResult) -> None:
        logger.info(
            "Crawl complete",
            start_url=result.start_url,
            pages=result.total_pages,
            succeeded=result.success_count,
            failed=result.failure_count,
            skipped=len(result.skipped_urls),
            cancelled=result.cancelled,
            duration=round(result.duration, 2),
        )

    def on_error(self, message: str) -> None:
        logger.error("Crawl error", message=message)
