"""
ResilientClient - Single entry point for outbound calls.

Combines:
- CacheStore for adaptive-lifetime response caching
- RequestDeduplicator so concurrent misses share one load
- RateLimiter for per-resource admission
- CircuitBreaker and RetryController around the loader
- CacheWarmer for background refresh of popular entries
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Generic, TypeVar

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from outbound.services.cache import CacheStore, CacheStats
from outbound.services.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitStats,
)
from outbound.services.deduplicator import RequestDeduplicator
from outbound.services.errors import (
    AuthenticationError,
    ClientError,
    EntryTooLargeError,
    RateLimitError,
    RequestTimeoutError,
    ServiceError,
)
from outbound.services.metrics import MetricsCollector
from outbound.services.popularity import PopularityTracker, normalize_query
from outbound.services.rate_limiter import RateLimiter, RateLimitStats
from outbound.services.retry import RetryController
from outbound.services.ttl import AdaptiveTTLEngine, TTLContext
from outbound.services.warmer import (
    CacheWarmer,
    WarmingConfig,
    WarmingStats,
    WarmTarget,
)
from outbound.utils import logged_job

if TYPE_CHECKING:
    from outbound.settings import Settings

T = TypeVar("T")

Loader = Callable[[], Awaitable[Any]]

SWEEP_JOB_ID = "cache_sweep"


@dataclass(frozen=True)
class FetchContext:
    """Hints used for TTL computation and popularity tracking."""

    query: str | None = None
    result_count: int | None = None


@dataclass
class FetchResult(Generic[T]):
    """Result from a fetch."""

    value: T
    from_cache: bool
    resource_class: str
    key: str
    ttl: timedelta | None = None  # lifetime assigned on a fresh load
    attempts: int = 0  # loader invocations; 0 on a cache hit


@dataclass(frozen=True)
class LoaderRegistration:
    """Most recent loader seen for a cache key, reused by the warmer."""

    resource_class: str
    key: str
    loader: Loader
    query: str | None = None

    @property
    def popularity_key(self) -> str:
        return normalize_query(self.query or self.key)


def default_breaker_config() -> CircuitBreakerConfig:
    # Caller mistakes say nothing about upstream health
    return CircuitBreakerConfig(excluded_exceptions=(AuthenticationError, ClientError))


class ResilientClient:
    """
    Cached, rate-limited, circuit-protected, retrying fetches.

    Usage:
        async with ResilientClient() as client:
            result = await client.fetch(
                "search",
                "typescript",
                load_typescript,
                FetchContext(query="typescript"),
            )
            print(result.value, result.from_cache)

    Failures are raised as ServiceError subclasses. Errors with ``local``
    set (open circuit, local rate limit) were decided without calling the
    upstream.
    """

    def __init__(
        self,
        cache: CacheStore | None = None,
        ttl_engine: AdaptiveTTLEngine | None = None,
        rate_limiter: RateLimiter | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        retry: RetryController | None = None,
        popularity: PopularityTracker | None = None,
        metrics: MetricsCollector | None = None,
        warming_config: WarmingConfig | None = None,
        predefined: list[WarmTarget] | None = None,
        rate_limit_max_wait: timedelta | None = timedelta(seconds=30),
        request_timeout: float | None = 30.0,
        sweep_interval: timedelta = timedelta(minutes=1),
        shutdown_grace: timedelta = timedelta(seconds=5),
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        self._clock = clock
        self._debug = debug

        # Initialize components
        self.cache = cache or CacheStore(clock=clock, debug=debug)
        self.ttl_engine = ttl_engine or AdaptiveTTLEngine(clock=clock)
        self.rate_limiter = rate_limiter or RateLimiter(clock=clock)
        self.breakers = breakers or CircuitBreakerRegistry(
            default_breaker_config(), clock=clock
        )
        self.retry = retry or RetryController()
        self.popularity = popularity or PopularityTracker(clock=clock)
        self.metrics = metrics or MetricsCollector(clock=clock)
        self.warmer = CacheWarmer(self, warming_config, predefined, clock=clock)
        self._deduplicator = RequestDeduplicator(debug=debug)

        self._rate_limit_max_wait = rate_limit_max_wait
        self._request_timeout = request_timeout
        self._sweep_interval = sweep_interval
        self._shutdown_grace = shutdown_grace

        self._registrations: dict[str, LoaderRegistration] = {}
        # Loaders still running after their caller gave up on them
        self._pending: set[asyncio.Future[Any]] = set()

        self.scheduler = AsyncIOScheduler()
        self._is_running = False

    @classmethod
    def from_settings(
        cls, settings: "Settings | None" = None, **overrides: Any
    ) -> "ResilientClient":
        """Build a client from ``Settings`` (defaults to the global settings)."""
        if settings is None:
            from outbound.settings import global_settings

            settings = global_settings

        clock = overrides.pop("clock", datetime.now)
        breaker_config = settings.to_circuit_breaker_config()
        default_ttl = timedelta(seconds=settings.cache_default_ttl_seconds)
        options: dict[str, Any] = {
            "cache": CacheStore(
                max_bytes=settings.cache_max_bytes,
                default_ttl=default_ttl,
                clock=clock,
                debug=settings.debug,
            ),
            "ttl_engine": AdaptiveTTLEngine(default_ttl=default_ttl, clock=clock),
            "rate_limiter": RateLimiter(settings.to_rate_limit_configs(), clock=clock),
            "breakers": CircuitBreakerRegistry(
                CircuitBreakerConfig(
                    failure_threshold=breaker_config.failure_threshold,
                    reset_timeout=breaker_config.reset_timeout,
                    success_threshold=breaker_config.success_threshold,
                    window=breaker_config.window,
                    excluded_exceptions=default_breaker_config().excluded_exceptions,
                ),
                clock=clock,
            ),
            "retry": RetryController(settings.to_retry_config()),
            "popularity": PopularityTracker(
                threshold=settings.popularity_threshold, clock=clock
            ),
            "warming_config": settings.to_warming_config(),
            "rate_limit_max_wait": timedelta(
                seconds=settings.rate_limit_max_wait_seconds
            ),
            "request_timeout": settings.request_timeout_seconds,
            "sweep_interval": timedelta(seconds=settings.cache_sweep_interval_seconds),
            "shutdown_grace": timedelta(seconds=settings.shutdown_grace_seconds),
            "debug": settings.debug,
        }
        options.update(overrides)
        return cls(clock=clock, **options)

    @staticmethod
    def cache_key(resource_class: str, key: str) -> str:
        return f"{resource_class}:{key}"

    def registration(self, cache_key: str) -> LoaderRegistration | None:
        return self._registrations.get(cache_key)

    async def fetch(
        self,
        resource_class: str,
        key: str,
        loader: Loader,
        context: FetchContext | None = None,
        *,
        timeout: float | None = None,
        refresh: bool = False,
        warming: bool = False,
    ) -> FetchResult[Any]:
        """
        Return the cached value for ``key`` or load it through the resilience stack.

        Args:
            resource_class: Category of upstream (search, forum, social, ...)
            key: Resource key, unique within the class
            loader: Zero-argument coroutine function producing the value
            context: Query and result-count hints
            timeout: Per-attempt timeout override, in seconds
            refresh: Skip the cache lookup and reload
            warming: Internal refresh; not counted towards popularity

        Raises:
            CircuitOpenError: If the circuit for the class is open
            RateLimitError: If admission was denied (local) or the
                upstream kept rejecting (remote)
            ServiceError: For other classified loader failures
        """
        context = context or FetchContext()
        cache_key = self.cache_key(resource_class, key)
        registration = LoaderRegistration(resource_class, key, loader, context.query)
        self._registrations[cache_key] = registration

        if not warming:
            self.popularity.record(registration.popularity_key)

        if not refresh:
            cached = await self.cache.get(cache_key)
            self.metrics.record_cache_hit(resource_class, cached is not None)
            if cached is not None:
                return FetchResult(
                    value=cached.value,
                    from_cache=True,
                    resource_class=resource_class,
                    key=key,
                )

        return await self._deduplicator.dedupe(
            cache_key,
            lambda: self._load(registration, cache_key, context, timeout),
        )

    async def _load(
        self,
        registration: LoaderRegistration,
        cache_key: str,
        context: FetchContext,
        timeout: float | None,
    ) -> FetchResult[Any]:
        resource_class = registration.resource_class

        try:
            await self.rate_limiter.acquire(resource_class, self._rate_limit_max_wait)
        except RateLimitError as e:
            self.metrics.record_rate_limit(resource_class, True, e.retry_after)
            logger.warning(f"Rate limited locally: {cache_key} ({e.reason})")
            raise
        self.metrics.record_rate_limit(resource_class, False)

        breaker = self.breakers.get(resource_class)
        attempt_timeout = timeout or self._request_timeout
        attempts = 0

        async def attempt() -> Any:
            nonlocal attempts
            attempts += 1
            return await self._attempt(registration, attempt_timeout)

        started = time.perf_counter()
        try:
            value = await breaker.call(
                lambda: self.retry.execute(attempt, cache_key, service_id=resource_class)
            )
        except ServiceError as e:
            if not e.local:
                self.metrics.record_latency(
                    resource_class, "fetch", (time.perf_counter() - started) * 1000
                )
                self.metrics.record_error(resource_class, "fetch", type(e).__name__)
            raise
        self.metrics.record_latency(
            resource_class, "fetch", (time.perf_counter() - started) * 1000
        )

        ttl = self.ttl_engine.compute(
            TTLContext(
                resource_class,
                query=context.query,
                result_count=self._result_count(context, value),
                is_popular=self.popularity.is_popular(registration.popularity_key),
            )
        )

        try:
            await self.cache.set(cache_key, value, ttl)
        except EntryTooLargeError as e:
            logger.warning(f"Not caching {cache_key}: {e}")

        self._log(f"Loaded {cache_key} after {attempts} attempt(s), ttl={ttl}")
        return FetchResult(
            value=value,
            from_cache=False,
            resource_class=resource_class,
            key=registration.key,
            ttl=ttl,
            attempts=attempts,
        )

    async def _attempt(
        self, registration: LoaderRegistration, timeout: float | None
    ) -> Any:
        """One loader invocation. The loader itself is never cancelled."""
        resource_class = registration.resource_class
        task = asyncio.ensure_future(registration.loader())
        self._track(task)

        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task not in done:
            logger.warning(
                f"Loader for {resource_class}:{registration.key} timed out after {timeout}s"
            )
            raise RequestTimeoutError(resource_class, timeout)

        try:
            return task.result()
        except Exception as e:
            error = self.retry.classifier.classify(e, resource_class)
            if isinstance(error, RateLimitError) and not error.local:
                await self.rate_limiter.record_rejection(
                    resource_class, error.retry_after
                )
            if error is e:
                raise
            raise error from e

    def _track(self, task: asyncio.Future[Any]) -> None:
        self._pending.add(task)
        task.add_done_callback(self._untrack)

    def _untrack(self, task: asyncio.Future[Any]) -> None:
        self._pending.discard(task)
        if not task.cancelled():
            # Mark the exception retrieved; abandoned results are discarded
            task.exception()

    @staticmethod
    def _result_count(context: FetchContext, value: Any) -> int | None:
        if context.result_count is not None:
            return context.result_count
        if isinstance(value, (list, tuple)):
            return len(value)
        return None

    async def invalidate(self, resource_class: str, key: str) -> bool:
        """Drop a cached entry. Returns True if one was removed."""
        return await self.cache.delete(self.cache_key(resource_class, key))

    def get_cache_stats(self) -> CacheStats:
        return self.cache.stats()

    def get_rate_limit_stats(self, resource_class: str) -> RateLimitStats:
        return self.rate_limiter.stats(resource_class)

    def get_circuit_stats(self, resource_class: str) -> CircuitStats:
        return self.breakers.get(resource_class).stats()

    def get_warming_stats(self) -> WarmingStats:
        return self.warmer.stats()

    def get_metrics(self) -> dict[str, Any]:
        return self.metrics.export()

    def get_health_status(self) -> dict[str, Any]:
        """Get health status of all components."""
        return {
            "cache": self.cache.stats().to_dict(),
            "rate_limits": {
                name: stats.to_dict()
                for name, stats in self.rate_limiter.all_stats().items()
            },
            "circuits": {
                name: stats.to_dict()
                for name, stats in self.breakers.get_all_stats().items()
            },
            "open_circuits": self.breakers.get_open_circuits(),
            "deduplicator": self._deduplicator.get_stats().to_dict(),
            "warming": self.warmer.stats().to_dict(),
            "pending_loaders": len(self._pending),
        }

    def reset_circuit(self, resource_class: str) -> bool:
        return self.breakers.reset(resource_class)

    @property
    def is_running(self) -> bool:
        return self._is_running

    def start(self) -> None:
        """Start the background sweep and warming jobs."""
        if self._is_running:
            logger.warning("Resilient client is already running")
            return

        self.scheduler.add_job(
            self._sweep,
            trigger="interval",
            seconds=self._sweep_interval.total_seconds(),
            id=SWEEP_JOB_ID,
            name="Cache Sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.warmer.schedule(self.scheduler)

        self.scheduler.start()
        self._is_running = True
        logger.info(
            f"Resilient client started: sweeping every "
            f"{self._sweep_interval.total_seconds():.0f}s"
        )

    async def close(self) -> None:
        """Stop background jobs and give running loaders a grace period."""
        if self._is_running:
            self.scheduler.shutdown(wait=False)
            self._is_running = False

        if self._pending:
            _, still_running = await asyncio.wait(
                set(self._pending), timeout=self._shutdown_grace.total_seconds()
            )
            if still_running:
                logger.warning(
                    f"Abandoning {len(still_running)} loaders still running at shutdown"
                )
        logger.info("Resilient client closed")

    async def __aenter__(self) -> "ResilientClient":
        self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @logged_job
    async def _sweep(self) -> None:
        removed = await self.cache.cleanup_expired()
        stats = self.cache.stats()
        self.metrics.record_cache_size(stats.total_bytes, stats.entries, stats.evictions)

        # Forget loaders for keys that left the cache
        stale = [key for key in self._registrations if self.cache.peek(key) is None]
        for key in stale:
            del self._registrations[key]
        forgotten = self.popularity.prune()

        if removed or stale or forgotten:
            logger.info(
                f"Cache sweep: {removed} expired entries, {len(stale)} loader registrations, "
                f"{forgotten} idle queries dropped"
            )

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[ResilientClient] {message}")
