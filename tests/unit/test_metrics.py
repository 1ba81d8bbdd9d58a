"""Tests for the metrics collector."""

from datetime import timedelta

import pytest

from outbound.services.metrics import MAX_POINTS, MetricsCollector, MetricSummary


@pytest.fixture
def metrics(clock):
    return MetricsCollector(clock=clock)


def test_summary_of_values():
    summary = MetricSummary.of([float(v) for v in range(1, 101)])

    assert summary.count == 100
    assert summary.avg == pytest.approx(50.5)
    assert summary.min == 1
    assert summary.max == 100
    assert summary.p95 == 96


def test_empty_summary():
    assert MetricSummary.of([]).count == 0


def test_cache_metrics(metrics):
    metrics.record_cache_hit("search", True)
    metrics.record_cache_hit("search", True)
    metrics.record_cache_hit("search", False)

    cache = metrics.cache_metrics()
    assert cache["total_hits"] == 2
    assert cache["total_misses"] == 1
    assert cache["hit_rate"] == pytest.approx(2 / 3)


def test_rate_limit_metrics_by_resource(metrics):
    metrics.record_rate_limit("social", False)
    metrics.record_rate_limit("social", True, 12.0)

    limits = metrics.rate_limit_metrics()
    assert limits["total_limited"] == 1
    assert limits["by_resource"]["social"]["rate"] == pytest.approx(0.5)
    assert metrics.summary("ratelimit.wait_time").max == 12.0


def test_api_metrics(metrics):
    metrics.record_latency("search", "fetch", 100)
    metrics.record_latency("search", "fetch", 300)
    metrics.record_error("search", "fetch", "NetworkError")

    api = metrics.api_metrics()
    assert api["total_requests"] == 2
    assert api["error_rate"] == pytest.approx(0.5)
    assert api["by_resource"]["search"]["avg_latency_ms"] == pytest.approx(200)


def test_window_excludes_old_points(metrics, clock):
    metrics.record_cache_hit("search", True)
    clock.advance(hours=2)
    metrics.record_cache_hit("search", False)

    assert metrics.cache_metrics(timedelta(hours=1))["total_hits"] == 0
    assert metrics.cache_metrics(timedelta(hours=3))["total_hits"] == 1


def test_points_are_bounded(metrics):
    for _ in range(MAX_POINTS + 50):
        metrics.record("custom")
    assert len(metrics.points("custom")) == MAX_POINTS


def test_export_and_report(metrics, clock):
    metrics.record_cache_size(2048, 3, 1)
    metrics.record_latency("forum", "fetch", 50)
    clock.advance(minutes=1)

    exported = metrics.export()
    assert exported["uptime_seconds"] == 60
    assert exported["size"]["entries"]["max"] == 3

    report = metrics.report()
    assert "# Metrics Report" in report
    assert "forum: requests=1" in report

    metrics.reset()
    assert metrics.points("api.latency") == []
