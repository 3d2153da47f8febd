"""
Crawl frontier: the single owner of the visited set and the pending queue.

Every URL passes through ``try_claim`` exactly once. A claimed URL is queued,
and once popped by ``next_pending`` it moves to the visited set. The two sets
never overlap and nothing leaves the visited set for the lifetime of the crawl,
so no URL can be fetched twice. All state changes happen under one
``asyncio.Lock``. Raw collections are never handed to callers.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional, Set

import structlog

from politecrawl.utils.urls import is_crawlable_link, normalize_url, same_site

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FrontierEntry:
    """A discovered URL waiting to be fetched."""

    url: str
    depth: int
    discovered_at: float = field(default_factory=time.time)
    parent: Optional[str] = None


class Frontier:
    """Breadth-first, deduplicating URL frontier for one crawl."""

    def __init__(self, start_url: str, max_depth: int, follow_external_links: bool = False) -> None:
        normalized = normalize_url(start_url)
        if normalized is None:
            raise ValueError(f"Start URL must be an absolute http(s) URL: {start_url!r}")
        self.start_url = normalized
        self.max_depth = max_depth
        self.follow_external_links = follow_external_links

        self._lock = asyncio.Lock()
        self._pending: Deque[FrontierEntry] = deque()
        self._queued: Set[str] = set()
        self._visited: Set[str] = set()
        self._rejected: Dict[str, int] = {"external": 0, "depth": 0, "not_crawlable": 0, "invalid": 0, "duplicate": 0}

    # --- Claiming ---

    async def try_claim(self, url: str, depth: int, parent: Optional[str] = None) -> bool:
        """
        Register ``url`` and queue it at ``depth``.

        Returns True only if the URL was neither queued nor visited before.
        This is the only place where deduplication happens.
        """
        normalized = normalize_url(url)
        if normalized is None:
            return False
        async with self._lock:
            return self._claim_locked(normalized, depth, parent) is not None

    def _claim_locked(self, url: str, depth: int, parent: Optional[str]) -> Optional[FrontierEntry]:
        if url in self._visited or url in self._queued:
            self._rejected["duplicate"] += 1
            return None
        entry = FrontierEntry(url=url, depth=depth, parent=parent)
        self._queued.add(url)
        self._pending.append(entry)
        return entry

    def _admissible(self, url: Optional[str], depth: int) -> bool:
        if url is None:
            self._rejected["invalid"] += 1
            return False
        if depth > self.max_depth:
            self._rejected["depth"] += 1
            return False
        if not self.follow_external_links and not same_site(url, self.start_url):
            self._rejected["external"] += 1
            return False
        if url != self.start_url and not is_crawlable_link(url):
            self._rejected["not_crawlable"] += 1
            return False
        return True

    async def enqueue_discovered(
        self,
        urls: Iterable[str],
        from_depth: int,
        parent: Optional[str] = None,
    ) -> List[FrontierEntry]:
        """
        Offer links found on a page at ``from_depth``.

        Links are normalized, filtered by depth, site policy and resource type,
        then claimed. Returns the entries that were newly queued.
        """
        depth = from_depth + 1
        candidates = [normalize_url(url) for url in urls]
        added: List[FrontierEntry] = []
        async with self._lock:
            for url in candidates:
                if not self._admissible(url, depth):
                    continue
                entry = self._claim_locked(url, depth, parent)  # type: ignore[arg-type]
                if entry is not None:
                    added.append(entry)
        if added:
            logger.debug("Enqueued discovered links", count=len(added), depth=depth, parent=parent)
        return added

    async def add_seeds(self, urls: Iterable[str], depth: int = 0) -> List[FrontierEntry]:
        """Queue seed URLs (the start URL, feed discoveries) at a fixed depth."""
        candidates = [normalize_url(url) for url in urls]
        added: List[FrontierEntry] = []
        async with self._lock:
            for url in candidates:
                if not self._admissible(url, depth):
                    continue
                entry = self._claim_locked(url, depth, None)  # type: ignore[arg-type]
                if entry is not None:
                    added.append(entry)
        return added

    # --- Consuming ---

    async def next_pending(self) -> Optional[FrontierEntry]:
        """Pop the oldest queued entry and mark it visited. None when empty."""
        async with self._lock:
            if not self._pending:
                return None
            entry = self._pending.popleft()
            self._queued.discard(entry.url)
            self._visited.add(entry.url)
            return entry

    # --- Introspection ---

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def visited_count(self) -> int:
        return len(self._visited)

    @property
    def seen_count(self) -> int:
        return len(self._visited) + len(self._queued)

    def is_seen(self, url: str) -> bool:
        normalized = normalize_url(url)
        return normalized is not None and (normalized in self._visited or normalized in self._queued)

    def is_visited(self, url: str) -> bool:
        normalized = normalize_url(url)
        return normalized is not None and normalized in self._visited

    def stats(self) -> Dict[str, object]:
        return {
            "pending": len(self._pending),
            "visited": len(self._visited),
            "seen": self.seen_count,
            "rejected": dict(self._rejected),
        }
