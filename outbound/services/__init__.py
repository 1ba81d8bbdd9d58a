"""
Service layer infrastructure - resilience patterns for outbound calls.

Provides:
- CacheStore: Byte-bounded LRU cache with per-entry lifetimes
- AdaptiveTTLEngine: Strategy-based cache lifetimes
- RateLimiter: Sliding-window admission per resource class
- CircuitBreaker: Prevents cascading failures
- RetryController: Exponential backoff with jitter
- RequestDeduplicator: Prevents duplicate concurrent requests
- CacheWarmer: Background refresh of popular entries
- Cache key helpers: Deterministic keys for resources and queries
- ResilientClient: Unified client combining all patterns
"""

from outbound.services.errors import (
    ServiceError,
    CacheError,
    EntryTooLargeError,
    CircuitOpenError,
    RequestTimeoutError,
    RateLimitError,
    NetworkError,
    AuthenticationError,
    UpstreamError,
    ClientError,
    UnknownError,
)
from outbound.services.classifier import ErrorClassifier, parse_retry_after
from outbound.services.cache import CacheStore, CacheEntry, CacheResult, CacheStats
from outbound.services.ttl import (
    AdaptiveTTLEngine,
    TTLContext,
    TTLStrategy,
    BaseTTLStrategy,
    LexicalTTLStrategy,
    TemporalTTLStrategy,
    CombinedTTLStrategy,
)
from outbound.services.rate_limiter import (
    RateLimiter,
    RateLimitConfig,
    RateLimitCheck,
    RateLimitStats,
)
from outbound.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from outbound.services.retry import RetryController, RetryConfig
from outbound.services.deduplicator import RequestDeduplicator
from outbound.services.popularity import PopularityTracker
from outbound.services.metrics import MetricsCollector
from outbound.services.keys import (
    generate_key,
    generate_search_key,
    generate_composite_key,
    generate_time_based_key,
    parse_key,
)
from outbound.services.warmer import CacheWarmer, WarmingConfig, WarmTarget, WarmingStats
from outbound.services.client import ResilientClient, FetchContext, FetchResult
from outbound.services.http import http_loader, create_http_client

__all__ = [
    # Errors
    "ServiceError",
    "CacheError",
    "EntryTooLargeError",
    "CircuitOpenError",
    "RequestTimeoutError",
    "RateLimitError",
    "NetworkError",
    "AuthenticationError",
    "UpstreamError",
    "ClientError",
    "UnknownError",
    "ErrorClassifier",
    "parse_retry_after",
    # Cache
    "CacheStore",
    "CacheEntry",
    "CacheResult",
    "CacheStats",
    # TTL
    "AdaptiveTTLEngine",
    "TTLContext",
    "TTLStrategy",
    "BaseTTLStrategy",
    "LexicalTTLStrategy",
    "TemporalTTLStrategy",
    "CombinedTTLStrategy",
    # Rate Limiter
    "RateLimiter",
    "RateLimitConfig",
    "RateLimitCheck",
    "RateLimitStats",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Retry
    "RetryController",
    "RetryConfig",
    # Deduplicator
    "RequestDeduplicator",
    # Popularity / Metrics
    "PopularityTracker",
    "MetricsCollector",
    # Keys
    "generate_key",
    "generate_search_key",
    "generate_composite_key",
    "generate_time_based_key",
    "parse_key",
    # Warmer
    "CacheWarmer",
    "WarmingConfig",
    "WarmTarget",
    "WarmingStats",
    # Client
    "ResilientClient",
    "FetchContext",
    "FetchResult",
    "http_loader",
    "create_http_client",
]
