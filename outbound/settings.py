import json
import os
from datetime import timedelta
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from outbound.services.circuit_breaker import CircuitBreakerConfig
from outbound.services.rate_limiter import RateLimitConfig
from outbound.services.retry import RetryConfig
from outbound.services.warmer import WarmingConfig

load_dotenv()


class RateLimitSettings(BaseModel):
    max_requests: int = Field(gt=0)
    window_seconds: float = Field(gt=0)
    max_per_second: int | None = Field(default=None, gt=0)

    def to_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            max_requests=self.max_requests,
            window=timedelta(seconds=self.window_seconds),
            max_per_second=self.max_per_second,
        )


def _default_rate_limits() -> dict[str, RateLimitSettings]:
    return {
        "forum": RateLimitSettings(max_requests=10000, window_seconds=3600, max_per_second=10),
        "social": RateLimitSettings(max_requests=60, window_seconds=600, max_per_second=1),
        "default": RateLimitSettings(max_requests=1000, window_seconds=3600, max_per_second=5),
    }


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Cache Configuration
    cache_max_bytes: int = Field(
        default=100 * 1024 * 1024, gt=0, alias="OUTBOUND_CACHE_MAX_BYTES"
    )
    cache_default_ttl_seconds: float = Field(
        default=3600, gt=0, alias="OUTBOUND_CACHE_DEFAULT_TTL"
    )
    cache_sweep_interval_seconds: float = Field(
        default=60, gt=0, alias="OUTBOUND_CACHE_SWEEP_INTERVAL"
    )

    # Rate Limit Configuration
    rate_limits: dict[str, RateLimitSettings] = Field(
        default_factory=_default_rate_limits, alias="OUTBOUND_RATE_LIMITS"
    )
    rate_limit_max_wait_seconds: float = Field(
        default=30, ge=0, alias="OUTBOUND_RATE_LIMIT_MAX_WAIT"
    )

    # Circuit Breaker Configuration
    circuit_failure_threshold: int = Field(
        default=5, gt=0, alias="OUTBOUND_CIRCUIT_FAILURE_THRESHOLD"
    )
    circuit_reset_timeout_seconds: float = Field(
        default=30, gt=0, alias="OUTBOUND_CIRCUIT_RESET_TIMEOUT"
    )
    circuit_success_threshold: int = Field(
        default=2, gt=0, alias="OUTBOUND_CIRCUIT_SUCCESS_THRESHOLD"
    )
    circuit_window_seconds: float = Field(
        default=60, gt=0, alias="OUTBOUND_CIRCUIT_WINDOW"
    )

    # Retry Configuration
    retry_max_retries: int = Field(default=3, ge=0, alias="OUTBOUND_RETRY_MAX_RETRIES")
    retry_initial_delay_seconds: float = Field(
        default=1, gt=0, alias="OUTBOUND_RETRY_INITIAL_DELAY"
    )
    retry_max_delay_seconds: float = Field(
        default=30, gt=0, alias="OUTBOUND_RETRY_MAX_DELAY"
    )
    retry_backoff_multiplier: float = Field(
        default=2, ge=1, alias="OUTBOUND_RETRY_BACKOFF_MULTIPLIER"
    )
    request_timeout_seconds: float | None = Field(
        default=30, alias="OUTBOUND_REQUEST_TIMEOUT"
    )

    # Cache Warming Configuration
    warming_enabled: bool = Field(default=True, alias="OUTBOUND_WARMING_ENABLED")
    warming_interval_seconds: float = Field(
        default=300, gt=0, alias="OUTBOUND_WARMING_INTERVAL"
    )
    warming_refresh_threshold: float = Field(
        default=0.25, ge=0, le=1, alias="OUTBOUND_WARMING_REFRESH_THRESHOLD"
    )
    warming_min_popularity: int = Field(
        default=3, ge=0, alias="OUTBOUND_WARMING_MIN_POPULARITY"
    )
    warming_max_queries_per_cycle: int = Field(
        default=10, gt=0, alias="OUTBOUND_WARMING_MAX_QUERIES"
    )
    popularity_threshold: int = Field(
        default=10, gt=0, alias="OUTBOUND_POPULARITY_THRESHOLD"
    )

    shutdown_grace_seconds: float = Field(
        default=5, ge=0, alias="OUTBOUND_SHUTDOWN_GRACE"
    )
    debug: bool = Field(default=False, alias="OUTBOUND_DEBUG")

    @field_validator("rate_limits", mode="before")
    @classmethod
    def _parse_rate_limits(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value)
        return value

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        """Build settings from ``OUTBOUND_*`` environment variables."""
        source = os.environ if environ is None else environ
        return cls.model_validate(
            {k: v for k, v in source.items() if k.startswith("OUTBOUND_")}
        )

    def to_rate_limit_configs(self) -> dict[str, RateLimitConfig]:
        return {name: limits.to_config() for name, limits in self.rate_limits.items()}

    def to_circuit_breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.circuit_failure_threshold,
            reset_timeout=timedelta(seconds=self.circuit_reset_timeout_seconds),
            success_threshold=self.circuit_success_threshold,
            window=timedelta(seconds=self.circuit_window_seconds),
        )

    def to_retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.retry_max_retries,
            initial_delay=timedelta(seconds=self.retry_initial_delay_seconds),
            max_delay=timedelta(seconds=self.retry_max_delay_seconds),
            backoff_multiplier=self.retry_backoff_multiplier,
        )

    def to_warming_config(self) -> WarmingConfig:
        return WarmingConfig(
            enabled=self.warming_enabled,
            interval=timedelta(seconds=self.warming_interval_seconds),
            refresh_threshold=self.warming_refresh_threshold,
            min_popularity=self.warming_min_popularity,
            max_queries_per_cycle=self.warming_max_queries_per_cycle,
        )


global_settings = Settings.from_env()
