"""
RetryController - Retries failed operations with exponential backoff and jitter.

Every failure is handed to the classifier once. Non-retryable failures are
raised on the spot; retryable ones are retried after
``min(max_delay, initial_delay * multiplier ** attempt) * jitter`` with jitter
drawn uniformly from [0.5, 1.5], unless the failure carries an explicit
retry-after delay, which then wins.
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, NoReturn, TypeVar

from loguru import logger

from outbound.services.classifier import Classifier, ErrorClassifier
from outbound.services.errors import ServiceError

T = TypeVar("T")

JITTER_MIN = 0.5
JITTER_MAX = 1.5


@dataclass(frozen=True)
class RetryConfig:
    """Retry behaviour."""

    max_retries: int = 3  # additional attempts after the first
    initial_delay: timedelta = timedelta(seconds=1)
    max_delay: timedelta = timedelta(seconds=30)
    backoff_multiplier: float = 2.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")


class RetryController:
    """
    Drives 1..max_retries+1 attempts of an async operation.

    Usage:
        retry = RetryController(RetryConfig(max_retries=3))
        data = await retry.execute(lambda: load_page(url), "search:typescript")
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        classifier: Classifier | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.config = config or RetryConfig()
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str,
        service_id: str | None = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds or retries are exhausted.

        Raises:
            ServiceError: The classified last failure, annotated with the
                attempt count and ``label``
        """
        attempts_allowed = self.config.max_retries + 1

        for attempt in range(attempts_allowed):
            try:
                return await operation()
            except Exception as e:
                error = self.classifier.classify(e, service_id)
                attempts = attempt + 1

                if not self.classifier.is_retryable(error):
                    logger.error(
                        f"[{label}] Non-retryable {type(error).__name__} "
                        f"on attempt {attempts}: {error}"
                    )
                    self._raise(error, e, attempts, label)

                if attempts >= attempts_allowed:
                    logger.error(
                        f"[{label}] Failed after {attempts} attempts: "
                        f"{type(error).__name__}: {error}"
                    )
                    self._raise(error, e, attempts, label)

                delay = self.compute_delay(attempt, error)
                logger.warning(
                    f"[{label}] Attempt {attempts}/{attempts_allowed} failed "
                    f"({type(error).__name__}). Retrying in {delay:.2f}s..."
                )
                await self._sleep(delay)

        raise AssertionError("unreachable")  # pragma: no cover

    def compute_delay(self, attempt: int, error: BaseException | None = None) -> float:
        """Delay in seconds before retrying after the 0-indexed ``attempt``."""
        if error is not None:
            retry_after = self.classifier.retry_after(error)
            if retry_after is not None:
                return retry_after

        initial = self.config.initial_delay.total_seconds()
        delay = min(
            self.config.max_delay.total_seconds(),
            initial * self.config.backoff_multiplier**attempt,
        )
        if self.config.jitter:
            delay *= self._rng.uniform(JITTER_MIN, JITTER_MAX)
        return delay

    @staticmethod
    def _raise(
        error: ServiceError, original: Exception, attempts: int, label: str
    ) -> NoReturn:
        error.annotate(attempts, label)
        if error is original:
            raise error
        raise error from original
