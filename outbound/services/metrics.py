"""
MetricsCollector - In-memory metric points for cache, rate-limit and call performance.

Each metric keeps its most recent points only; summaries are computed over
a trailing time window.
"""

from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

MAX_POINTS = 1000
DEFAULT_WINDOW = timedelta(hours=1)


@dataclass(frozen=True)
class MetricPoint:
    timestamp: datetime
    value: float
    labels: tuple[tuple[str, str], ...] = ()

    def label(self, name: str, default: str = "unknown") -> str:
        return dict(self.labels).get(name, default)


@dataclass
class MetricSummary:
    count: int = 0
    sum: float = 0.0
    avg: float = 0.0
    min: float = 0.0
    max: float = 0.0
    p95: float = 0.0

    @classmethod
    def of(cls, values: list[float]) -> "MetricSummary":
        if not values:
            return cls()
        ordered = sorted(values)
        total = sum(ordered)
        return cls(
            count=len(ordered),
            sum=total,
            avg=total / len(ordered),
            min=ordered[0],
            max=ordered[-1],
            p95=ordered[min(int(len(ordered) * 0.95), len(ordered) - 1)],
        )

    def to_dict(self) -> dict[str, float]:
        return {
            "count": self.count,
            "sum": self.sum,
            "avg": self.avg,
            "min": self.min,
            "max": self.max,
            "p95": self.p95,
        }


class MetricsCollector:
    """
    Records labelled metric points and summarises them.

    Usage:
        metrics = MetricsCollector()
        metrics.record_cache_hit("search", hit=True)
        metrics.record_latency("search", "fetch", 120.0)
        metrics.export()
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self._clock = clock
        self._points: dict[str, deque[MetricPoint]] = defaultdict(
            lambda: deque(maxlen=MAX_POINTS)
        )
        self._started_at = clock()

    def record(self, metric: str, value: float = 1.0, **labels: str) -> None:
        self._points[metric].append(
            MetricPoint(self._clock(), value, tuple(sorted(labels.items())))
        )

    def record_cache_hit(self, resource: str, hit: bool) -> None:
        self.record("cache.hit" if hit else "cache.miss", resource=resource)

    def record_rate_limit(
        self, resource: str, limited: bool, wait_seconds: float | None = None
    ) -> None:
        self.record("ratelimit.limited" if limited else "ratelimit.allowed", resource=resource)
        if limited and wait_seconds is not None:
            self.record("ratelimit.wait_time", wait_seconds, resource=resource)

    def record_latency(self, resource: str, operation: str, duration_ms: float) -> None:
        self.record("api.latency", duration_ms, resource=resource, operation=operation)
        self.record("api.request", resource=resource, operation=operation)

    def record_error(self, resource: str, operation: str, error_code: str | None = None) -> None:
        labels = {"resource": resource, "operation": operation}
        if error_code:
            labels["error_code"] = error_code
        self.record("api.error", **labels)

    def record_cache_size(self, size_bytes: int, entries: int, evictions: int | None = None) -> None:
        self.record("cache.size.bytes", size_bytes)
        self.record("cache.size.entries", entries)
        if evictions is not None:
            self.record("cache.evictions", evictions)

    def points(self, metric: str, since: datetime | None = None) -> list[MetricPoint]:
        points = list(self._points.get(metric, ()))
        if since is not None:
            points = [p for p in points if p.timestamp >= since]
        return points

    def summary(self, metric: str, window: timedelta = DEFAULT_WINDOW) -> MetricSummary:
        since = self._clock() - window
        return MetricSummary.of([p.value for p in self.points(metric, since)])

    def cache_metrics(self, window: timedelta = DEFAULT_WINDOW) -> dict[str, Any]:
        hits = self.summary("cache.hit", window).count
        misses = self.summary("cache.miss", window).count
        total = hits + misses
        return {
            "hit_rate": hits / total if total else 0.0,
            "total_hits": hits,
            "total_misses": misses,
            "total_requests": total,
        }

    def rate_limit_metrics(self, window: timedelta = DEFAULT_WINDOW) -> dict[str, Any]:
        since = self._clock() - window
        by_resource: dict[str, dict[str, float]] = defaultdict(
            lambda: {"allowed": 0, "limited": 0, "rate": 0.0}
        )
        for point in self.points("ratelimit.allowed", since):
            by_resource[point.label("resource")]["allowed"] += 1
        for point in self.points("ratelimit.limited", since):
            by_resource[point.label("resource")]["limited"] += 1

        total_allowed = total_limited = 0
        for stats in by_resource.values():
            seen = stats["allowed"] + stats["limited"]
            stats["rate"] = stats["limited"] / seen if seen else 0.0
            total_allowed += stats["allowed"]
            total_limited += stats["limited"]

        seen = total_allowed + total_limited
        return {
            "total_allowed": total_allowed,
            "total_limited": total_limited,
            "limit_rate": total_limited / seen if seen else 0.0,
            "by_resource": dict(by_resource),
        }

    def api_metrics(self, window: timedelta = DEFAULT_WINDOW) -> dict[str, Any]:
        since = self._clock() - window
        requests = self.points("api.request", since)
        errors = self.points("api.error", since)
        latencies = self.points("api.latency", since)

        grouped: dict[str, dict[str, Any]] = defaultdict(
            lambda: {"requests": 0, "errors": 0, "latencies": []}
        )
        for point in requests:
            grouped[point.label("resource")]["requests"] += 1
        for point in errors:
            grouped[point.label("resource")]["errors"] += 1
        for point in latencies:
            grouped[point.label("resource")]["latencies"].append(point.value)

        by_resource = {}
        for resource, stats in grouped.items():
            latency = MetricSummary.of(stats["latencies"])
            by_resource[resource] = {
                "requests": stats["requests"],
                "errors": stats["errors"],
                "avg_latency_ms": latency.avg,
                "p95_latency_ms": latency.p95,
            }

        overall = MetricSummary.of([p.value for p in latencies])
        return {
            "total_requests": len(requests),
            "error_rate": len(errors) / len(requests) if requests else 0.0,
            "avg_latency_ms": overall.avg,
            "p95_latency_ms": overall.p95,
            "by_resource": by_resource,
        }

    def export(self, window: timedelta = DEFAULT_WINDOW) -> dict[str, Any]:
        now = self._clock()
        return {
            "timestamp": now.isoformat(),
            "window_seconds": window.total_seconds(),
            "uptime_seconds": (now - self._started_at).total_seconds(),
            "cache": self.cache_metrics(window),
            "rate_limit": self.rate_limit_metrics(window),
            "api": self.api_metrics(window),
            "size": {
                "bytes": self.summary("cache.size.bytes", window).to_dict(),
                "entries": self.summary("cache.size.entries", window).to_dict(),
                "evictions": self.summary("cache.evictions", window).to_dict(),
            },
        }

    def report(self, window: timedelta = DEFAULT_WINDOW) -> str:
        """Human-readable summary, one section per concern."""
        data = self.export(window)
        cache, limits, api = data["cache"], data["rate_limit"], data["api"]
        lines = [
            "# Metrics Report",
            f"Generated at: {data['timestamp']}",
            f"Window: {window.total_seconds() / 60:.0f} minutes",
            "",
            "## Cache Performance",
            f"- Hit Rate: {cache['hit_rate']:.2%}",
            f"- Total Hits: {cache['total_hits']}",
            f"- Total Misses: {cache['total_misses']}",
            "",
            "## Rate Limiting",
            f"- Total Allowed: {limits['total_allowed']}",
            f"- Total Limited: {limits['total_limited']}",
            f"- Limit Rate: {limits['limit_rate']:.2%}",
        ]
        for resource, stats in sorted(limits["by_resource"].items()):
            lines.append(
                f"  {resource}: allowed={stats['allowed']} limited={stats['limited']}"
            )
        lines += [
            "",
            "## API Performance",
            f"- Total Requests: {api['total_requests']}",
            f"- Error Rate: {api['error_rate']:.2%}",
        ]
        if api["total_requests"]:
            lines.append(f"- Avg Latency: {api['avg_latency_ms']:.0f}ms")
            lines.append(f"- P95 Latency: {api['p95_latency_ms']:.0f}ms")
        for resource, stats in sorted(api["by_resource"].items()):
            lines.append(
                f"  {resource}: requests={stats['requests']} errors={stats['errors']} "
                f"p95={stats['p95_latency_ms']:.0f}ms"
            )
        return "\n".join(lines)

    def reset(self) -> None:
        self._points.clear()
        self._started_at = self._clock()
