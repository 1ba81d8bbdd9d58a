"""
CircuitBreaker - Prevents cascading failures by stopping calls to failing resources.

States:
- CLOSED: Normal operation, calls pass through
- OPEN: Resource is failing, calls are rejected immediately
- HALF_OPEN: Testing if the resource has recovered

Transitions:
- CLOSED → OPEN: When failure_threshold failures fall inside the window
- OPEN → HALF_OPEN: On the first call after reset_timeout since opening
- HALF_OPEN → CLOSED: After success_threshold successes
- HALF_OPEN → OPEN: On any failure (the open timer restarts)
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from outbound.services.errors import CircuitOpenError

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Blocking requests
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Failures inside the window before opening
    reset_timeout: timedelta = timedelta(seconds=30)  # Open time before half-open
    success_threshold: int = 2  # Successes needed to close from half-open
    window: timedelta = timedelta(seconds=60)  # Failure counting window
    excluded_exceptions: tuple[type[BaseException], ...] = ()  # Not counted as failures


@dataclass
class CircuitStats:
    """Snapshot of a breaker for observability."""

    service_id: str
    state: CircuitState
    failures: int
    successes: int
    total_requests: int
    total_failures: int
    total_successes: int
    last_failure_at: datetime | None
    opened_at: datetime | None
    last_state_change: datetime
    time_until_reset: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "state": self.state.value,
            "failures": self.failures,
            "successes": self.successes,
            "total_requests": self.total_requests,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "last_failure_at": (
                self.last_failure_at.isoformat() if self.last_failure_at else None
            ),
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "last_state_change": self.last_state_change.isoformat(),
            "time_until_reset": self.time_until_reset,
        }


class CircuitBreaker:
    """
    Circuit breaker implementation for a single resource.

    Usage:
        cb = CircuitBreaker("search")
        result = await cb.call(lambda: load_search_results())

    or, when the caller drives the call itself:

        await cb.before_call()        # raises CircuitOpenError when open
        try:
            result = await make_request()
        except Exception as e:
            await cb.record_failure(e)
            raise
        await cb.record_success()
    """

    def __init__(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.service_id = service_id
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_times: deque[datetime] = deque()
        self._success_count = 0
        self._last_failure_time: datetime | None = None
        self._opened_at: datetime | None = None
        self._last_state_change = clock()
        self._total_requests = 0
        self._total_failures = 0
        self._total_successes = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        """Current state, without triggering the OPEN → HALF_OPEN transition."""
        return self._state

    @property
    def failure_count(self) -> int:
        self._prune_failures(self._clock())
        return len(self._failure_times)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under breaker protection."""
        await self.before_call()
        try:
            result = await operation()
        except Exception as e:
            await self.record_failure(e)
            raise
        await self.record_success()
        return result

    async def before_call(self) -> None:
        """
        Admit or reject a call.

        An OPEN breaker whose reset timeout has elapsed moves to HALF_OPEN
        here, on the call attempt rather than on a timer.

        Raises:
            CircuitOpenError: If the breaker is (still) open
        """
        async with self._lock:
            self._total_requests += 1
            if self._state == CircuitState.OPEN:
                now = self._clock()
                if self._opened_at and now >= self._opened_at + self.config.reset_timeout:
                    self._transition(CircuitState.HALF_OPEN)
                    self._success_count = 0
                else:
                    raise CircuitOpenError(
                        self.service_id, self.get_time_until_reset() or 0.0
                    )

    async def record_success(self) -> None:
        """Record a successful call."""
        async with self._lock:
            self._total_successes += 1
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._close()
            elif self._state == CircuitState.CLOSED:
                # last_failure_time is kept for observability
                self._failure_times.clear()

    async def record_failure(self, error: BaseException | None = None) -> None:
        """Record a failed call. Excluded exception types are ignored."""
        if error is not None and isinstance(error, self.config.excluded_exceptions):
            logger.debug(
                f"[CircuitBreaker] {self.service_id}: ignoring {type(error).__name__}"
            )
            return

        async with self._lock:
            now = self._clock()
            self._total_failures += 1
            self._last_failure_time = now
            self._failure_times.append(now)
            self._prune_failures(now)

            if self._state == CircuitState.HALF_OPEN:
                # Any failure in half-open reopens the circuit
                self._open(now)
            elif self._state == CircuitState.CLOSED:
                if len(self._failure_times) >= self.config.failure_threshold:
                    self._open(now)

    def force_open(self) -> None:
        """Open the circuit regardless of its history."""
        self._open(self._clock())

    def force_closed(self) -> None:
        """Close the circuit regardless of its history."""
        self._close()

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        self._state = CircuitState.CLOSED
        self._failure_times.clear()
        self._success_count = 0
        self._opened_at = None
        self._last_failure_time = None
        self._last_state_change = self._clock()
        logger.info(f"Circuit breaker '{self.service_id}' manually reset")

    def get_time_until_reset(self) -> float | None:
        """Get seconds until the circuit may move to half-open."""
        if self._state != CircuitState.OPEN or not self._opened_at:
            return None

        reset_at = self._opened_at + self.config.reset_timeout
        remaining = (reset_at - self._clock()).total_seconds()
        return max(0.0, remaining)

    def stats(self) -> CircuitStats:
        """Get current status."""
        return CircuitStats(
            service_id=self.service_id,
            state=self._state,
            failures=self.failure_count,
            successes=self._success_count,
            total_requests=self._total_requests,
            total_failures=self._total_failures,
            total_successes=self._total_successes,
            last_failure_at=self._last_failure_time,
            opened_at=self._opened_at,
            last_state_change=self._last_state_change,
            time_until_reset=self.get_time_until_reset(),
        )

    def _prune_failures(self, now: datetime) -> None:
        cutoff = now - self.config.window
        while self._failure_times and self._failure_times[0] <= cutoff:
            self._failure_times.popleft()

    def _open(self, now: datetime) -> None:
        """Transition to OPEN state, restarting the open timer."""
        failures = len(self._failure_times)
        self._opened_at = now
        self._success_count = 0
        self._transition(CircuitState.OPEN)
        logger.warning(
            f"Circuit breaker '{self.service_id}' OPENED after {failures} failures"
        )

    def _close(self) -> None:
        """Transition to CLOSED state."""
        self._failure_times.clear()
        self._success_count = 0
        self._opened_at = None
        if self._transition(CircuitState.CLOSED):
            logger.info(f"Circuit breaker '{self.service_id}' CLOSED (recovered)")

    def _transition(self, new_state: CircuitState) -> bool:
        if self._state == new_state:
            return False
        logger.info(
            f"Circuit breaker '{self.service_id}': {self._state.value} -> {new_state.value}"
        )
        self._state = new_state
        self._last_state_change = self._clock()
        return True


class CircuitBreakerRegistry:
    """
    Registry for managing one circuit breaker per resource class.

    Usage:
        registry = CircuitBreakerRegistry()
        cb = registry.get("search")
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        configs: dict[str, CircuitBreakerConfig] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._default_config = default_config or CircuitBreakerConfig()
        self._configs = dict(configs or {})
        self._clock = clock

    def get(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Get or create a circuit breaker for a resource."""
        if service_id not in self._breakers:
            self._breakers[service_id] = CircuitBreaker(
                service_id,
                config or self._configs.get(service_id, self._default_config),
                clock=self._clock,
            )
        return self._breakers[service_id]

    def find(self, service_id: str) -> CircuitBreaker | None:
        """Existing breaker for a resource, without creating one."""
        return self._breakers.get(service_id)

    def get_all_stats(self) -> dict[str, CircuitStats]:
        """Get status of all circuit breakers."""
        return {service_id: cb.stats() for service_id, cb in self._breakers.items()}

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for cb in self._breakers.values():
            cb.reset()
        logger.info(f"Reset {len(self._breakers)} circuit breakers")

    def reset(self, service_id: str) -> bool:
        """Reset a specific circuit breaker."""
        if service_id in self._breakers:
            self._breakers[service_id].reset()
            return True
        return False

    def get_open_circuits(self) -> list[str]:
        """Get list of resources with open circuits."""
        return [
            service_id
            for service_id, cb in self._breakers.items()
            if cb.state == CircuitState.OPEN
        ]
