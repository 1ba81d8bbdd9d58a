"""
RateLimiter - Per-resource sliding-window admission control.

Each resource class keeps its own window of request timestamps, its own
configuration and its own lock, so unrelated resources never contend.

Admission runs two independent gates: the sliding window (max requests per
window) and a per-second burst limit. A remote-reported rate limit sets an
explicit block that denies everything until it expires.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from loguru import logger

from outbound.services.errors import RateLimitError

ONE_SECOND = timedelta(seconds=1)
DEFAULT_BLOCK = timedelta(seconds=60)

REASON_BLOCKED = "explicit block"
REASON_WINDOW = "window limit"
REASON_PER_SECOND = "per-second limit"


@dataclass(frozen=True)
class RateLimitConfig:
    """Limits for a single resource class."""

    max_requests: int = 1000
    window: timedelta = timedelta(hours=1)
    max_per_second: int | None = 5

    def __post_init__(self) -> None:
        if self.max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if self.window <= timedelta(0):
            raise ValueError("window must be positive")
        if self.max_per_second is not None and self.max_per_second <= 0:
            raise ValueError("max_per_second must be positive")


DEFAULT_RATE_LIMITS: dict[str, RateLimitConfig] = {
    "forum": RateLimitConfig(
        max_requests=10000, window=timedelta(hours=1), max_per_second=10
    ),
    "social": RateLimitConfig(
        max_requests=60, window=timedelta(minutes=10), max_per_second=1
    ),
    "default": RateLimitConfig(
        max_requests=1000, window=timedelta(hours=1), max_per_second=5
    ),
}


@dataclass
class RateLimitCheck:
    """Outcome of an admission check."""

    allowed: bool
    remaining: int
    reset_in: timedelta
    wait_time: timedelta
    reason: str | None = None


@dataclass
class RateLimitStats:
    """Window occupancy for one resource."""

    current_requests: int
    is_blocked: bool
    oldest_request: datetime | None = None
    newest_request: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_requests": self.current_requests,
            "is_blocked": self.is_blocked,
            "oldest_request": self.oldest_request.isoformat() if self.oldest_request else None,
            "newest_request": self.newest_request.isoformat() if self.newest_request else None,
        }


@dataclass
class RateWindow:
    """Request history and block state of one resource."""

    config: RateLimitConfig
    timestamps: deque[datetime] = field(default_factory=deque)
    blocked_until: datetime | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def prune(self, now: datetime) -> None:
        """Drop timestamps that have left the window."""
        cutoff = now - self.config.window
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()

    def is_blocked(self, now: datetime) -> bool:
        return self.blocked_until is not None and now < self.blocked_until


class RateLimiter:
    """
    Sliding-window rate limiter keyed by resource class.

    Usage:
        limiter = RateLimiter({"social": RateLimitConfig(60, timedelta(minutes=10), 1)})

        check = await limiter.check_limit("social")
        if check.allowed:
            await limiter.record_request("social")

        # or wait for admission and record it in one step
        await limiter.acquire("social", max_wait=timedelta(seconds=30))
    """

    def __init__(
        self,
        configs: dict[str, RateLimitConfig] | None = None,
        default_config: RateLimitConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._configs = dict(configs if configs is not None else DEFAULT_RATE_LIMITS)
        self._default_config = (
            default_config or self._configs.get("default") or RateLimitConfig()
        )
        self._windows: dict[str, RateWindow] = {}
        self._clock = clock
        self._sleep = sleep

    def config_for(self, resource: str) -> RateLimitConfig:
        return self._configs.get(resource, self._default_config)

    def configure(self, resource: str, config: RateLimitConfig) -> None:
        """Replace the limits of one resource, keeping its history."""
        self._configs[resource] = config
        if resource in self._windows:
            self._windows[resource].config = config
        logger.info(
            f"Rate limit for '{resource}' set to {config.max_requests}/"
            f"{config.window.total_seconds():.0f}s, {config.max_per_second}/s"
        )

    async def check_limit(self, resource: str) -> RateLimitCheck:
        """Check whether a request for ``resource`` would be admitted now."""
        window = self._window(resource)
        async with window.lock:
            return self._check(window, self._clock())

    async def record_request(self, resource: str) -> None:
        """Record that a request was sent."""
        window = self._window(resource)
        async with window.lock:
            window.timestamps.append(self._clock())

    async def record_rejection(
        self, resource: str, retry_after: timedelta | float | None = None
    ) -> None:
        """
        Record a rate-limit rejection reported by the remote.

        Blocks the resource for ``retry_after`` (seconds or timedelta,
        default 60s) so local checks fail fast.
        """
        if retry_after is None:
            block = DEFAULT_BLOCK
        elif isinstance(retry_after, timedelta):
            block = retry_after
        else:
            block = timedelta(seconds=retry_after)

        window = self._window(resource)
        async with window.lock:
            window.blocked_until = self._clock() + block
        logger.warning(
            f"Remote rate limit for '{resource}', blocked for {block.total_seconds():.1f}s"
        )

    async def wait_for_slot(self, resource: str) -> None:
        """Suspend until ``check_limit`` would admit a request."""
        while True:
            check = await self.check_limit(resource)
            if check.allowed:
                return
            logger.debug(
                f"[RateLimiter] {resource}: {check.reason}, "
                f"waiting {check.wait_time.total_seconds():.2f}s"
            )
            await self._sleep(check.wait_time.total_seconds())

    async def acquire(
        self, resource: str, max_wait: timedelta | None = None
    ) -> RateLimitCheck:
        """
        Wait for admission and record the request atomically.

        Explicit blocks are never waited out. Raises a local RateLimitError
        when blocked or when the required wait exceeds ``max_wait``.
        """
        window = self._window(resource)
        deadline = self._clock() + max_wait if max_wait is not None else None

        while True:
            async with window.lock:
                now = self._clock()
                check = self._check(window, now)
                if check.allowed:
                    window.timestamps.append(now)
                    return check

                if check.reason == REASON_BLOCKED or (
                    deadline is not None and now + check.wait_time > deadline
                ):
                    raise RateLimitError(
                        resource,
                        retry_after=check.wait_time.total_seconds(),
                        reason=check.reason,
                        local=True,
                    )

            await self._sleep(check.wait_time.total_seconds())

    def reset(self, resource: str | None = None) -> None:
        """Forget history for one resource, or for all of them."""
        if resource is None:
            self._windows.clear()
        else:
            self._windows.pop(resource, None)

    def stats(self, resource: str) -> RateLimitStats:
        """Current window occupancy for ``resource``."""
        window = self._window(resource)
        now = self._clock()
        window.prune(now)
        return RateLimitStats(
            current_requests=len(window.timestamps),
            is_blocked=window.is_blocked(now),
            oldest_request=window.timestamps[0] if window.timestamps else None,
            newest_request=window.timestamps[-1] if window.timestamps else None,
        )

    def all_stats(self) -> dict[str, RateLimitStats]:
        return {resource: self.stats(resource) for resource in list(self._windows)}

    def _window(self, resource: str) -> RateWindow:
        window = self._windows.get(resource)
        if window is None:
            window = RateWindow(config=self.config_for(resource))
            self._windows[resource] = window
        return window

    def _check(self, window: RateWindow, now: datetime) -> RateLimitCheck:
        config = window.config

        if window.is_blocked(now):
            remaining_block = window.blocked_until - now
            return RateLimitCheck(
                allowed=False,
                remaining=0,
                reset_in=remaining_block,
                wait_time=remaining_block,
                reason=REASON_BLOCKED,
            )
        window.blocked_until = None

        window.prune(now)
        count = len(window.timestamps)

        if count >= config.max_requests:
            reset_in = config.window - (now - window.timestamps[0])
            return RateLimitCheck(
                allowed=False,
                remaining=0,
                reset_in=reset_in,
                wait_time=reset_in,
                reason=REASON_WINDOW,
            )

        if config.max_per_second is not None:
            recent = [ts for ts in window.timestamps if now - ts < ONE_SECOND]
            if len(recent) >= config.max_per_second:
                return RateLimitCheck(
                    allowed=False,
                    remaining=config.max_requests - count,
                    reset_in=config.window,
                    wait_time=ONE_SECOND - (now - recent[-1]),
                    reason=REASON_PER_SECOND,
                )

        return RateLimitCheck(
            allowed=True,
            remaining=config.max_requests - count,
            reset_in=config.window,
            wait_time=timedelta(0),
        )
