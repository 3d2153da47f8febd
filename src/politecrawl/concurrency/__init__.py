"""Bounded-concurrency execution primitives."""

from .cancellation import CancellationToken, sleep_unless_cancelled
from .work_queue import EngineState, WorkItem, WorkQueueEngine, WorkResult

__all__ = [
    "CancellationToken",
    "EngineState",
    "WorkItem",
    "WorkQueueEngine",
    "WorkResult",
    "sleep_unless_cancelled",
]
