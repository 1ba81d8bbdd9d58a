"""Tests for the circuit breaker state machine."""

from datetime import timedelta

import pytest

from outbound.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from outbound.services.errors import AuthenticationError, CircuitOpenError, NetworkError


@pytest.fixture
def breaker(clock):
    config = CircuitBreakerConfig(
        failure_threshold=3,
        reset_timeout=timedelta(seconds=30),
        success_threshold=2,
        window=timedelta(seconds=60),
        excluded_exceptions=(AuthenticationError,),
    )
    return CircuitBreaker("search", config, clock=clock)


async def succeed():
    return "ok"


async def fail():
    raise NetworkError("connection reset", service_id="search")


async def trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(NetworkError):
            await breaker.call(fail)


class TestClosed:
    @pytest.mark.asyncio
    async def test_opens_after_threshold_failures(self, breaker):
        await trip(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

        await trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_failures_outside_window_are_forgotten(self, breaker, clock):
        await trip(breaker, 2)
        clock.advance(seconds=61)
        await trip(breaker, 1)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_success_clears_failure_count(self, breaker):
        await trip(breaker, 2)
        assert await breaker.call(succeed) == "ok"

        assert breaker.failure_count == 0
        assert breaker.stats().last_failure_at is not None

    @pytest.mark.asyncio
    async def test_excluded_errors_do_not_count(self, breaker):
        async def unauthorized():
            raise AuthenticationError("HTTP 401", service_id="search")

        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await breaker.call(unauthorized)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0


class TestOpen:
    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_calling(self, breaker, clock):
        await trip(breaker, 3)
        calls = 0

        async def operation():
            nonlocal calls
            calls += 1

        clock.advance(seconds=10)
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(operation)

        assert calls == 0
        assert exc_info.value.local is True
        assert exc_info.value.reset_after_seconds == pytest.approx(20)
        assert breaker.get_time_until_reset() == pytest.approx(20)

    @pytest.mark.asyncio
    async def test_moves_to_half_open_after_reset_timeout(self, breaker, clock):
        await trip(breaker, 3)
        clock.advance(seconds=30)

        assert await breaker.call(succeed) == "ok"
        assert breaker.state == CircuitState.HALF_OPEN


class TestHalfOpen:
    @pytest.mark.asyncio
    async def test_closes_after_success_threshold(self, breaker, clock):
        await trip(breaker, 3)
        clock.advance(seconds=30)

        await breaker.call(succeed)
        await breaker.call(succeed)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_any_failure_reopens_and_restarts_timer(self, breaker, clock):
        await trip(breaker, 3)
        clock.advance(seconds=30)
        await breaker.call(succeed)

        await trip(breaker, 1)

        assert breaker.state == CircuitState.OPEN
        assert breaker.stats().opened_at == clock.now
        clock.advance(seconds=29)
        with pytest.raises(CircuitOpenError):
            await breaker.call(succeed)


class TestManualControl:
    @pytest.mark.asyncio
    async def test_force_open_and_closed(self, breaker):
        breaker.force_open()
        with pytest.raises(CircuitOpenError):
            await breaker.call(succeed)

        breaker.force_closed()
        assert await breaker.call(succeed) == "ok"

    @pytest.mark.asyncio
    async def test_stats_track_totals(self, breaker):
        await breaker.call(succeed)
        await trip(breaker, 1)

        stats = breaker.stats()
        assert stats.total_requests == 2
        assert stats.total_successes == 1
        assert stats.total_failures == 1
        assert stats.to_dict()["state"] == "CLOSED"


class TestRegistry:
    @pytest.mark.asyncio
    async def test_registry_tracks_breakers_per_resource(self, clock):
        registry = CircuitBreakerRegistry(
            CircuitBreakerConfig(failure_threshold=1), clock=clock
        )

        assert registry.get("search") is registry.get("search")
        assert registry.find("forum") is None

        with pytest.raises(NetworkError):
            await registry.get("search").call(fail)

        assert registry.get_open_circuits() == ["search"]
        assert set(registry.get_all_stats()) == {"search"}

        assert registry.reset("search") is True
        assert registry.reset("forum") is False
        assert registry.get_open_circuits() == []

    def test_per_resource_config(self, clock):
        registry = CircuitBreakerRegistry(
            configs={"social": CircuitBreakerConfig(failure_threshold=10)}, clock=clock
        )
        assert registry.get("social").config.failure_threshold == 10
        assert registry.get("search").config.failure_threshold == 5
