"""
PopularityTracker - Counts how often each normalized query is requested.

Feeds two consumers: the TTL engine (popular queries live longer) and the
cache warmer (popular, soon-to-expire entries are refreshed first).
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

DEFAULT_HISTORY = 100
DEFAULT_RETENTION = timedelta(hours=24)


def normalize_query(query: str) -> str:
    return query.strip().lower()


@dataclass
class PopularityRecord:
    """Request count and recent request times of one query."""

    count: int = 0
    recent: deque[datetime] = field(default_factory=lambda: deque(maxlen=DEFAULT_HISTORY))

    @property
    def last_seen(self) -> datetime | None:
        return self.recent[-1] if self.recent else None


class PopularityTracker:
    """
    Per-query popularity with a bounded history of request times.

    Usage:
        tracker = PopularityTracker(threshold=10)
        tracker.record("TypeScript ")
        tracker.is_popular("typescript")
    """

    def __init__(
        self,
        threshold: int = 10,
        history: int = DEFAULT_HISTORY,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.threshold = threshold
        self._history = history
        self.retention = retention
        self._clock = clock
        self._records: dict[str, PopularityRecord] = {}

    def record(self, query: str) -> int:
        """Count one request for ``query``. Returns the new count."""
        key = normalize_query(query)
        record = self._records.get(key)
        if record is None:
            record = PopularityRecord(recent=deque(maxlen=self._history))
            self._records[key] = record
        record.count += 1
        record.recent.append(self._clock())
        return record.count

    def count(self, query: str) -> int:
        record = self._records.get(normalize_query(query))
        return record.count if record else 0

    def is_popular(self, query: str) -> bool:
        return self.count(query) >= self.threshold

    def popular(self, min_count: int | None = None) -> list[tuple[str, int]]:
        """Queries at or above ``min_count`` (default: threshold), most popular first."""
        floor = self.threshold if min_count is None else min_count
        ranked = [(q, r.count) for q, r in self._records.items() if r.count >= floor]
        return sorted(ranked, key=lambda item: item[1], reverse=True)

    def trending(
        self, window: timedelta = timedelta(hours=1), min_recent: int = 3
    ) -> list[tuple[str, int]]:
        """Queries requested at least ``min_recent`` times inside ``window``."""
        cutoff = self._clock() - window
        trending = []
        for query, record in self._records.items():
            recent = sum(1 for ts in record.recent if ts > cutoff)
            if recent >= min_recent:
                trending.append((query, recent))
        return sorted(trending, key=lambda item: item[1], reverse=True)

    def export(self) -> dict[str, Any]:
        """Popularity data for offline analysis."""
        queries = [
            {
                "query": query,
                "count": record.count,
                "last_seen": record.last_seen.isoformat() if record.last_seen else None,
            }
            for query, record in self._records.items()
        ]
        queries.sort(key=lambda item: item["count"], reverse=True)
        return {
            "queries": queries,
            "trending": [{"query": q, "recent": n} for q, n in self.trending()],
        }

    def prune(self) -> int:
        """Forget queries not requested within ``retention``. Returns how many."""
        cutoff = self._clock() - self.retention
        stale = [
            query
            for query, record in self._records.items()
            if record.last_seen is None or record.last_seen < cutoff
        ]
        for query in stale:
            del self._records[query]
        return len(stale)

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
