"""
Cache and throttling for quota fetching.

Implements:
- Throttling: only fetch if min_interval_ms has passed since the last fetch start
- Caching: keep the last message for immediate display
- Deduplication: concurrent callers share one in-flight fetch

Each FetchCache owns its state, so independent caches can coexist and tests
can create a fresh one instead of resetting global state. The state is only
touched from the event loop thread, between awaits.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from loguru import logger

T = TypeVar("T")


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CachedToast(Generic[T]):
    """Cached message and the time it was stored."""
    message: T
    timestamp_ms: int


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    """Result of a fetch function.

    message None means "not available yet". cacheable False means show the
    message once but neither store it nor throttle the next attempt.
    """
    message: Optional[T]
    cacheable: bool = True


class FetchCache(Generic[T]):
    """Single-slot cache with in-flight deduplication and a throttle."""

    def __init__(self, clock: Callable[[], int] = now_ms):
        """Initialize an empty cache.

        Args:
            clock: Returns the current time in epoch milliseconds
        """
        self._clock = clock
        self._cached: Optional[CachedToast[T]] = None
        self._in_flight: Optional["asyncio.Future[Optional[T]]"] = None
        self._last_fetch_start_ms = 0

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None

    def get_cached_toast(self, min_interval_ms: int) -> Optional[T]:
        """Get the cached message if it is younger than min_interval_ms."""
        if self._cached is None:
            return None
        age = self._clock() - self._cached.timestamp_ms
        if age < min_interval_ms:
            return self._cached.message
        return None

    def should_fetch(self, min_interval_ms: int) -> bool:
        """Check whether the throttle window since the last fetch start has elapsed."""
        return self._clock() - self._last_fetch_start_ms >= min_interval_ms

    async def get_or_fetch(
        self,
        fetch_fn: Callable[[], Awaitable[Optional[T]]],
        min_interval_ms: int
    ) -> Optional[T]:
        """Get a cached message or fetch one; every result is cacheable."""
        async def wrapped() -> FetchResult[T]:
            return FetchResult(message=await fetch_fn())

        return await self.get_or_fetch_with_cache_control(wrapped, min_interval_ms)

    async def get_or_fetch_with_cache_control(
        self,
        fetch_fn: Callable[[], Awaitable[FetchResult[T]]],
        min_interval_ms: int
    ) -> Optional[T]:
        """Get a cached message, join an in-flight fetch, or start a new one.

        Exceptions raised by fetch_fn are not caught: every caller waiting on
        that fetch sees the same exception.

        Args:
            fetch_fn: Coroutine function returning a FetchResult
            min_interval_ms: Cache lifetime and minimum gap between fetch starts

        Returns:
            The message, or None when nothing is available
        """
        cached = self.get_cached_toast(min_interval_ms)
        if cached is not None:
            return cached

        if self._in_flight is not None:
            logger.debug("Joining in-flight quota fetch")
            return await asyncio.shield(self._in_flight)

        if not self.should_fetch(min_interval_ms):
            # Throttled: return whatever we have, even if stale
            logger.debug("Quota fetch throttled; returning last known message")
            return self._cached.message if self._cached is not None else None

        # Mark the start before awaiting so near-simultaneous callers see it
        self._last_fetch_start_ms = self._clock()
        logger.debug("Starting quota fetch")
        task = asyncio.ensure_future(self._run_fetch(fetch_fn))
        self._in_flight = task
        return await asyncio.shield(task)

    async def _run_fetch(self, fetch_fn: Callable[[], Awaitable[FetchResult[T]]]) -> Optional[T]:
        try:
            out = await fetch_fn()
            if out.message is None:
                # Nothing to show yet; let the next trigger retry immediately
                self._last_fetch_start_ms = 0
                return None

            if not out.cacheable:
                self._last_fetch_start_ms = 0
                return out.message

            self._cached = CachedToast(message=out.message, timestamp_ms=self._clock())
            return out.message
        finally:
            if self._in_flight is asyncio.current_task():
                self._in_flight = None

    def clear_cache(self) -> None:
        """Drop the cached message, the in-flight marker and the throttle clock."""
        self._cached = None
        self._in_flight = None
        self._last_fetch_start_ms = 0

    def update_cache(self, message: T) -> None:
        """Store a message as if it had just been fetched."""
        self._cached = CachedToast(message=message, timestamp_ms=self._clock())
