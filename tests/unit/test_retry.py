"""Tests for the retry controller."""

import random
from datetime import timedelta

import pytest

from outbound.services.errors import (
    AuthenticationError,
    NetworkError,
    RateLimitError,
    UpstreamError,
)
from outbound.services.retry import RetryConfig, RetryController
from tests.conftest import CountingLoader


@pytest.fixture
def retry(fake_sleep):
    return RetryController(
        RetryConfig(max_retries=3, jitter=False), sleep=fake_sleep
    )


class TestExecute:
    @pytest.mark.asyncio
    async def test_returns_first_success(self, retry, fake_sleep):
        loader = CountingLoader(value="ok")

        assert await retry.execute(loader, "search:typescript") == "ok"
        assert loader.calls == 1
        assert fake_sleep.calls == []

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, retry, fake_sleep):
        loader = CountingLoader(
            value="ok",
            errors=[NetworkError("reset"), UpstreamError("HTTP 503", status_code=503)],
        )

        assert await retry.execute(loader, "search:typescript") == "ok"
        assert loader.calls == 3
        assert fake_sleep.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_success_on_second_attempt(self, retry, fake_sleep):
        loader = CountingLoader(value="ok", errors=[NetworkError("reset")])

        assert await retry.execute(loader, "search:typescript") == "ok"
        assert loader.calls == 2
        assert len(fake_sleep.calls) == 1

    @pytest.mark.asyncio
    async def test_non_retryable_error_is_raised_immediately(self, retry, fake_sleep):
        loader = CountingLoader(errors=[AuthenticationError("HTTP 401")])

        with pytest.raises(AuthenticationError) as exc_info:
            await retry.execute(loader, "search:typescript", service_id="search")

        assert loader.calls == 1
        assert fake_sleep.calls == []
        assert exc_info.value.attempts == 1
        assert exc_info.value.service_id == "search"

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error_with_attempt_count(self, fake_sleep):
        retry = RetryController(RetryConfig(max_retries=2, jitter=False), sleep=fake_sleep)
        loader = CountingLoader(errors=[NetworkError(f"reset {i}") for i in range(5)])

        with pytest.raises(NetworkError) as exc_info:
            await retry.execute(loader, "forum:rust")

        assert loader.calls == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.label == "forum:rust"
        assert "reset 2" in str(exc_info.value)
        assert "[forum:rust: 3 attempt(s)]" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_foreign_errors_are_classified(self, retry):
        original = ConnectionRefusedError("refused")
        loader = CountingLoader(errors=[original] * 4)

        with pytest.raises(NetworkError) as exc_info:
            await retry.execute(loader, "search:typescript")

        assert exc_info.value.__cause__ is original

    @pytest.mark.asyncio
    async def test_retry_after_overrides_backoff(self, retry, fake_sleep):
        loader = CountingLoader(
            value="ok", errors=[RateLimitError("search", retry_after=7.0)]
        )

        await retry.execute(loader, "search:typescript")

        assert fake_sleep.calls == [7.0]

    @pytest.mark.asyncio
    async def test_zero_retries_means_single_attempt(self, fake_sleep):
        retry = RetryController(RetryConfig(max_retries=0), sleep=fake_sleep)
        loader = CountingLoader(errors=[NetworkError("reset")])

        with pytest.raises(NetworkError):
            await retry.execute(loader, "search:typescript")

        assert loader.calls == 1
        assert fake_sleep.calls == []


class TestComputeDelay:
    def test_exponential_backoff_is_capped(self):
        retry = RetryController(
            RetryConfig(
                initial_delay=timedelta(seconds=1),
                max_delay=timedelta(seconds=5),
                backoff_multiplier=2.0,
                jitter=False,
            )
        )

        assert [retry.compute_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_within_bounds(self):
        retry = RetryController(RetryConfig(), rng=random.Random(42))

        for attempt in range(4):
            base = min(30.0, 2.0**attempt)
            for _ in range(20):
                delay = retry.compute_delay(attempt)
                assert 0.5 * base <= delay <= 1.5 * base

    def test_invalid_config_is_rejected(self):
        with pytest.raises(ValueError):
            RetryConfig(max_retries=-1)
        with pytest.raises(ValueError):
            RetryConfig(backoff_multiplier=0.5)
