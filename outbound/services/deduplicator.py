"""
RequestDeduplicator - Coalesces concurrent requests for the same key.

When multiple callers miss the cache for the same key simultaneously,
only one load runs and every caller awaits its result. A caller that is
cancelled stops waiting; the shared load is cancelled only once nobody is
waiting for it any more.
"""

import asyncio
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class _Flight:
    task: asyncio.Task[Any]
    waiters: int = 0


class RequestDeduplicator:
    """
    Deduplicates concurrent async requests.

    Usage:
        dedup = RequestDeduplicator()

        async def fetch(key: str):
            return await dedup.dedupe(key, lambda: load(key))
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, _Flight] = {}
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Execute request with deduplication.

        If a request with the same key is already in flight, wait for and
        return its result instead of starting a new one.
        """
        flight = self._in_flight.get(key)
        if flight is not None:
            self._stats.deduplicated += 1
            self._log(f"DEDUPE: Waiting for in-flight request: {key[:50]}")
        else:
            self._stats.total += 1
            self._log(f"NEW: Starting request: {key[:50]}")
            flight = _Flight(asyncio.create_task(request_fn()))
            self._in_flight[key] = flight
            flight.task.add_done_callback(lambda t, k=key: self._cleanup(k, t))

        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        finally:
            flight.waiters -= 1
            if flight.waiters == 0 and not flight.task.done():
                self._log(f"CANCEL: No callers left for {key[:50]}")
                flight.task.cancel()

    def _cleanup(self, key: str, task: asyncio.Task[Any]) -> None:
        flight = self._in_flight.get(key)
        if flight is not None and flight.task is task:
            del self._in_flight[key]
        if task.cancelled():
            self._log(f"CANCELLED: {key[:50]}")
        elif task.exception() is not None:
            self._log(f"FAILED: {key[:50]}: {task.exception()!r}")
        else:
            self._log(f"DONE: Request completed: {key[:50]}")

    def get_in_flight_count(self) -> int:
        """Get number of in-flight requests."""
        return len(self._in_flight)

    def get_in_flight_keys(self) -> list[str]:
        """Get keys of all in-flight requests."""
        return list(self._in_flight.keys())

    def get_stats(self) -> "DeduplicatorStats":
        """Snapshot of deduplication statistics."""
        return replace(self._stats, in_flight=len(self._in_flight))

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


@dataclass
class DeduplicatorStats:
    """Statistics for request deduplication."""

    total: int = 0  # Loads actually started
    deduplicated: int = 0  # Callers served by another caller's load
    in_flight: int = 0

    @property
    def dedup_rate(self) -> float:
        """Calculate deduplication rate."""
        total = self.total + self.deduplicated
        if total == 0:
            return 0.0
        return self.deduplicated / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "in_flight": self.in_flight,
            "dedup_rate": self.dedup_rate,
        }
