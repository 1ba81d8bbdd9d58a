"""Tests for environment-driven settings."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from outbound.services.client import ResilientClient
from outbound.services.rate_limiter import RateLimitConfig
from outbound.settings import Settings
from tests.conftest import CountingLoader, FakeClock


def test_defaults():
    settings = Settings.from_env({})

    assert settings.cache_max_bytes == 100 * 1024 * 1024
    assert settings.circuit_failure_threshold == 5
    assert settings.retry_max_retries == 3
    assert set(settings.rate_limits) == {"forum", "social", "default"}


def test_values_are_read_from_prefixed_variables():
    settings = Settings.from_env(
        {
            "OUTBOUND_CACHE_MAX_BYTES": "4096",
            "OUTBOUND_WARMING_ENABLED": "false",
            "OUTBOUND_REQUEST_TIMEOUT": "2.5",
            "UNRELATED": "ignored",
        }
    )

    assert settings.cache_max_bytes == 4096
    assert settings.warming_enabled is False
    assert settings.request_timeout_seconds == 2.5


def test_rate_limits_accept_json():
    settings = Settings.from_env(
        {"OUTBOUND_RATE_LIMITS": '{"search": {"max_requests": 5, "window_seconds": 60}}'}
    )

    configs = settings.to_rate_limit_configs()
    assert configs == {
        "search": RateLimitConfig(max_requests=5, window=timedelta(seconds=60), max_per_second=None)
    }


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        Settings.from_env({"OUTBOUND_CIRCUIT_FAILURE_THRESHOLD": "0"})
    with pytest.raises(ValidationError):
        Settings.from_env({"OUTBOUND_WARMING_REFRESH_THRESHOLD": "1.5"})


def test_component_configs():
    settings = Settings(
        circuit_reset_timeout_seconds=10,
        retry_initial_delay_seconds=0.5,
        warming_interval_seconds=120,
    )

    assert settings.to_circuit_breaker_config().reset_timeout == timedelta(seconds=10)
    assert settings.to_retry_config().initial_delay == timedelta(milliseconds=500)
    assert settings.to_warming_config().interval == timedelta(minutes=2)


def test_client_from_settings():
    settings = Settings(
        cache_max_bytes=2048,
        circuit_failure_threshold=2,
        popularity_threshold=4,
        rate_limit_max_wait_seconds=1,
    )

    client = ResilientClient.from_settings(settings)

    assert client.cache.max_bytes == 2048
    assert client.breakers.get("search").config.failure_threshold == 2
    assert client.popularity.threshold == 4
    assert client.rate_limiter.config_for("social").max_per_second == 1


@pytest.mark.asyncio
async def test_default_ttl_applies_to_unknown_resource_classes():
    clock = FakeClock()
    client = ResilientClient.from_settings(
        Settings(cache_default_ttl_seconds=1200), clock=clock
    )

    result = await client.fetch("inventory", "sku-1", CountingLoader(value={"id": 1}))

    assert result.ttl == timedelta(minutes=20)
    assert client.cache.peek("inventory:sku-1").expires_at == clock.now + timedelta(minutes=20)
