"""
Process-local TTL cache with pattern invalidation.

Expired entries read as absent and are removed by a background sweep task,
so keys nobody reads again still get collected. Invalidations can notify
live clients through a CacheEventBroadcaster.
"""

import asyncio
import contextlib
import re
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from app.infrastructure.observability.logging import get_logger
from app.services.cache.broadcaster import CACHE_INVALIDATED_EVENT, CacheEventBroadcaster

logger = get_logger(__name__)

PUBLISHING_INVALIDATION_PATTERNS = (
    "^homepage:",
    "^blocks:",
    "^insights:",
    "^opinion:",
    "^trending:",
    "^articles:",
    "^category:",
)

_PATTERN_DECORATION = re.compile(r"[\^\$:]")


def pattern_group_name(pattern: str) -> str:
    """``"^homepage:"`` -> ``"homepage"``."""
    return _PATTERN_DECORATION.sub("", pattern)


@dataclass(slots=True)
class CacheEntry:
    data: Any
    timestamp: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.timestamp >= self.ttl


class MemoryCache:
    def __init__(
        self,
        *,
        default_ttl_seconds: float = 300.0,
        sweep_interval_seconds: float = 60.0,
        broadcaster: CacheEventBroadcaster | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl_seconds = default_ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.broadcaster = broadcaster
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._sweep_task: asyncio.Task | None = None
        self.hits = 0
        self.misses = 0
        self.swept = 0

    @property
    def size(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        if entry.expired(self._clock()):
            del self._entries[key]
            self.misses += 1
            return None

        self.hits += 1
        return entry.data

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[key] = CacheEntry(data=value, timestamp=self._clock(), ttl=ttl)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl_seconds: float | None = None,
    ) -> Any:
        """Return the cached value, or await ``loader`` and cache its result."""
        cached = self.get(key)
        if cached is not None:
            return cached

        value = await loader()
        if value is not None:
            self.set(key, value, ttl_seconds)
        return value

    def _remove_matching(self, pattern: str) -> int:
        regex = re.compile(pattern)
        matched = [key for key in self._entries if regex.search(key)]
        for key in matched:
            del self._entries[key]
        return len(matched)

    def invalidate_pattern(self, pattern: str, broadcast: bool = False) -> int:
        """Remove every key matching ``pattern``; returns how many were removed."""
        removed = self._remove_matching(pattern)
        if removed:
            logger.debug("Cache pattern invalidated", pattern=pattern, removed=removed)
        if broadcast:
            self._broadcast([pattern_group_name(pattern)])
        return removed

    def invalidate_patterns(self, patterns: Iterable[str]) -> list[str]:
        """
        Remove keys for each pattern and emit one event for those that matched.

        Returns the group names that were broadcast (empty when nothing matched).
        """
        matched_groups: list[str] = []
        total_removed = 0
        for pattern in patterns:
            removed = self._remove_matching(pattern)
            if removed:
                total_removed += removed
                matched_groups.append(pattern_group_name(pattern))

        if matched_groups:
            logger.info("Cache patterns invalidated", groups=matched_groups, removed=total_removed)
            self._broadcast(matched_groups)
        return matched_groups

    def _broadcast(self, groups: list[str]) -> None:
        if self.broadcaster is None:
            return
        self.broadcaster.broadcast({"type": CACHE_INVALIDATED_EVENT, "patterns": groups})

    def sweep(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expired(now)]
        for key in expired:
            del self._entries[key]
        self.swept += len(expired)
        return len(expired)

    def start(self) -> None:
        """Start the periodic sweep task on the running loop."""
        if self._sweep_task and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="memory-cache-sweep")
        logger.info("Cache sweep started", interval_seconds=self.sweep_interval_seconds)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            removed = self.sweep()
            if removed:
                logger.debug("Cache sweep removed expired entries", removed=removed, size=self.size)

    async def dispose(self) -> None:
        """Stop the sweep task and drop all entries."""
        if self._sweep_task:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        self.clear()
        logger.info("Cache disposed")

    def stats(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "hits": self.hits,
            "misses": self.misses,
            "swept": self.swept,
            "sweeping": bool(self._sweep_task and not self._sweep_task.done()),
        }
