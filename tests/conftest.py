"""Pytest configuration and fixtures for outbound tests."""

import asyncio
import random
from datetime import datetime, timedelta

import pytest

from outbound.services.cache import CacheStore
from outbound.services.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from outbound.services.client import ResilientClient, default_breaker_config
from outbound.services.rate_limiter import RateLimitConfig, RateLimiter
from outbound.services.retry import RetryConfig, RetryController
from outbound.services.ttl import AdaptiveTTLEngine, BaseTTLStrategy
from outbound.services.warmer import WarmingConfig

# A Wednesday at noon: no temporal multiplier applies
WEDNESDAY_NOON = datetime(2024, 1, 3, 12, 0, 0)

UNLIMITED = RateLimitConfig(max_requests=100_000, window=timedelta(hours=1), max_per_second=None)


class FakeClock:
    """Manually advanced replacement for ``datetime.now``."""

    def __init__(self, start: datetime = WEDNESDAY_NOON):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> None:
        self.now += delta if delta is not None else timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    """Sleep that advances the fake clock instead of waiting."""
    calls: list[float] = []

    async def sleep(seconds: float) -> None:
        calls.append(seconds)
        clock.advance(seconds=seconds)
        await asyncio.sleep(0)

    sleep.calls = calls
    return sleep


@pytest.fixture
def make_client(clock, fake_sleep):
    """Factory for a ResilientClient wired to the fake clock."""

    def factory(
        max_retries: int = 0,
        failure_threshold: int = 5,
        rate_limits: dict[str, RateLimitConfig] | None = None,
        max_bytes: int = 1024 * 1024,
        warming_config: WarmingConfig | None = None,
        **overrides,
    ) -> ResilientClient:
        breaker_config = CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            excluded_exceptions=default_breaker_config().excluded_exceptions,
        )
        options = {
            "cache": CacheStore(max_bytes=max_bytes, clock=clock),
            "ttl_engine": AdaptiveTTLEngine([BaseTTLStrategy()], clock=clock),
            "rate_limiter": RateLimiter(
                rate_limits or {"default": UNLIMITED}, clock=clock, sleep=fake_sleep
            ),
            "breakers": CircuitBreakerRegistry(breaker_config, clock=clock),
            "retry": RetryController(
                RetryConfig(max_retries=max_retries),
                sleep=fake_sleep,
                rng=random.Random(7),
            ),
            "warming_config": warming_config or WarmingConfig(min_popularity=2),
            "clock": clock,
        }
        options.update(overrides)
        return ResilientClient(**options)

    return factory


class CountingLoader:
    """Loader returning ``value`` (or raising queued errors) and counting calls."""

    def __init__(self, value=None, errors=None):
        self.value = value if value is not None else {"items": [1, 2, 3]}
        self.errors = list(errors or [])
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class BlockingLoader:
    """Loader that waits until ``release()`` is called."""

    def __init__(self, value="done"):
        self.value = value
        self.calls = 0
        self.finished = False
        self._event = asyncio.Event()

    def release(self) -> None:
        self._event.set()

    async def __call__(self):
        self.calls += 1
        await self._event.wait()
        self.finished = True
        return self.value
