"""
Bounded-concurrency executor for a lazily generated stream of work items.

The engine keeps at most ``max_concurrency`` items in flight. Each new item is
requested from the source only after a worker slot has been acquired, so the
source is never asked for more work than can be started right away and the
slot wait of every item is measurable.

Lifecycle::

    IDLE -> SEEDING -> RUNNING -> DRAINING -> DONE

A source may return ``None`` to say "nothing available right now". That is
only treated as exhaustion when no items are in flight, because running items
may still produce more work (a crawler discovering links is the typical case).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Set, TypeVar

import structlog

from politecrawl.concurrency.cancellation import CancellationToken
from politecrawl.observability.metrics import METRICS

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class EngineState(Enum):
    IDLE = "idle"
    SEEDING = "seeding"
    RUNNING = "running"
    DRAINING = "draining"
    DONE = "done"


@dataclass(frozen=True)
class WorkItem(Generic[T]):
    """Immutable unit of work identified by its sequence number."""

    task_id: int
    payload: T
    created_at: float = field(default_factory=time.monotonic)


@dataclass
class WorkResult(Generic[T, R]):
    """Outcome of one work item."""

    task_id: int
    item: WorkItem[T]
    value: Optional[R] = None
    error: Optional[BaseException] = None
    wait_time: float = 0.0
    duration: float = 0.0
    in_flight: int = 0

    @property
    def succeeded(self) -> bool:
        return self.error is None


WorkSource = Callable[[int], Awaitable[Optional[WorkItem[T]]]]
WorkProcessor = Callable[[WorkItem[T]], Awaitable[R]]


class WorkQueueEngine(Generic[T, R]):
    """
    Runs items from ``source`` through ``processor`` under a fixed ceiling.

    A failing item is recorded in its ``WorkResult`` and never aborts the run.
    Only the cancellation token stops the run early, and even then every item
    already dispatched is allowed to finish and is collected.
    """

    def __init__(self, source: WorkSource[T], processor: WorkProcessor[T, R]) -> None:
        self._source = source
        self._processor = processor
        self.state = EngineState.IDLE
        self.peak_in_flight = 0
        self.items_dispatched = 0
        self.items_failed = 0
        self.total_wait_time = 0.0
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def run(
        self,
        max_items: int,
        max_concurrency: int,
        cancellation: Optional[CancellationToken] = None,
    ) -> List[WorkResult[T, R]]:
        """
        Process up to ``max_items`` items with at most ``max_concurrency`` in flight.

        Args:
            max_items: Ceiling on the number of items requested from the source.
                Zero or negative returns an empty list immediately.
            max_concurrency: Worker slot count, must be at least 1
            cancellation: Optional token that stops new dispatches

        Returns:
            Results in completion order

        Raises:
            ValueError: If max_concurrency is below 1
        """
        if max_items <= 0:
            self.state = EngineState.DONE
            return []
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")

        semaphore = asyncio.Semaphore(max_concurrency)
        pending: Set[asyncio.Task[WorkResult[T, R]]] = set()
        results: List[WorkResult[T, R]] = []
        next_id = 1

        self.state = EngineState.SEEDING
        logger.debug("Work queue started", max_items=max_items, max_concurrency=max_concurrency)

        try:
            while next_id <= max_items:
                if cancellation is not None and cancellation.cancelled:
                    logger.info("Work queue cancelled, draining", dispatched=self.items_dispatched)
                    break

                wait_started = time.monotonic()
                if not await self._acquire_slot(semaphore, cancellation):
                    logger.info("Work queue cancelled while waiting for a slot", dispatched=self.items_dispatched)
                    break
                wait_time = time.monotonic() - wait_started

                self._harvest_finished(pending, results)
                if cancellation is not None and cancellation.cancelled:
                    semaphore.release()
                    break

                try:
                    item = await self._source(next_id)
                except BaseException:
                    semaphore.release()
                    raise

                if item is None:
                    semaphore.release()
                    if not pending:
                        logger.debug("Work source exhausted", next_id=next_id)
                        break
                    # Running items may still produce work.
                    await self._wait_for_one(pending, results)
                    continue

                next_id += 1
                self.items_dispatched += 1
                self.total_wait_time += wait_time
                METRICS["work_queue_wait_seconds"].observe(wait_time)
                task = asyncio.create_task(self._run_item(item, semaphore, wait_time))
                pending.add(task)
                if self.state is EngineState.SEEDING and len(pending) >= max_concurrency:
                    self.state = EngineState.RUNNING

            self.state = EngineState.DRAINING
            while pending:
                await self._wait_for_one(pending, results)

        except BaseException:
            # Hard cancellation or a failing source: no dispatched item may outlive the run.
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            raise
        finally:
            self.state = EngineState.DONE

        logger.debug(
            "Work queue finished",
            completed=len(results),
            failed=self.items_failed,
            peak_in_flight=self.peak_in_flight,
        )
        return results

    async def _acquire_slot(self, semaphore: asyncio.Semaphore, cancellation: Optional[CancellationToken]) -> bool:
        """Wait for a free slot. Returns False if cancellation won the race."""
        if cancellation is None:
            await semaphore.acquire()
            return True
        if cancellation.cancelled:
            return False

        acquire = asyncio.ensure_future(semaphore.acquire())
        cancelled = asyncio.ensure_future(cancellation.wait())
        try:
            await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            acquire.cancel()
            raise
        finally:
            cancelled.cancel()

        if acquire.done() and not acquire.cancelled():
            if cancellation.cancelled:
                semaphore.release()
                return False
            return True

        acquire.cancel()
        try:
            await acquire
        except asyncio.CancelledError:
            return False
        # The slot was granted before the cancel took effect.
        semaphore.release()
        return False

    async def _run_item(self, item: WorkItem[T], semaphore: asyncio.Semaphore, wait_time: float) -> WorkResult[T, R]:
        self._in_flight += 1
        in_flight = self._in_flight
        self.peak_in_flight = max(self.peak_in_flight, in_flight)
        METRICS["work_queue_in_flight"].inc()
        result: WorkResult[T, R] = WorkResult(task_id=item.task_id, item=item, wait_time=wait_time, in_flight=in_flight)
        started = time.monotonic()
        try:
            result.value = await self._processor(item)
            METRICS["work_items_total"].labels(outcome="success").inc()
        except Exception as e:
            self.items_failed += 1
            result.error = e
            METRICS["work_items_total"].labels(outcome="error").inc()
            logger.warning("Work item failed", task_id=item.task_id, error=str(e), error_type=type(e).__name__)
        finally:
            result.duration = time.monotonic() - started
            self._in_flight -= 1
            METRICS["work_queue_in_flight"].dec()
            semaphore.release()
        return result

    @staticmethod
    def _harvest_finished(
        pending: Set[asyncio.Task[WorkResult[T, R]]],
        results: List[WorkResult[T, R]],
    ) -> None:
        done = {task for task in pending if task.done()}
        for task in done:
            pending.discard(task)
            if task.cancelled():
                logger.warning("Work item task was cancelled", task=task.get_name())
                continue
            results.append(task.result())

    async def _wait_for_one(
        self,
        pending: Set[asyncio.Task[WorkResult[T, R]]],
        results: List[WorkResult[T, R]],
    ) -> None:
        await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
        self._harvest_finished(pending, results)

    def stats(self) -> Dict[str, Any]:
        dispatched = self.items_dispatched
        return {
            "state": self.state.value,
            "items_dispatched": dispatched,
            "items_failed": self.items_failed,
            "in_flight": self._in_flight,
            "peak_in_flight": self.peak_in_flight,
            "avg_wait_time": self.total_wait_time / dispatched if dispatched else 0.0,
        }
