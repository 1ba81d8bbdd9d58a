"""
ErrorClassifier - Normalises loader failures into the service error taxonomy.

The retry controller asks the classifier two questions about every failure:
is it retryable, and does it carry an explicit retry-after delay.
"""

import asyncio
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

import httpx
from dateutil import parser as date_parser
from loguru import logger

from outbound.services.errors import (
    AuthenticationError,
    ClientError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    ServiceError,
    UnknownError,
    UpstreamError,
)

DEFAULT_RETRY_AFTER_SECONDS = 60.0
MIN_RETRY_AFTER_SECONDS = 1.0

RETRYABLE_ERRORS: tuple[type[ServiceError], ...] = (
    NetworkError,
    RequestTimeoutError,
    UpstreamError,
    RateLimitError,
)


@runtime_checkable
class Classifier(Protocol):
    """Anything the retry controller can ask about a failure."""

    def classify(
        self, error: BaseException, service_id: str | None = None
    ) -> ServiceError: ...

    def is_retryable(self, error: BaseException) -> bool: ...

    def retry_after(self, error: BaseException) -> float | None: ...


class ErrorClassifier:
    """
    Default classifier for loaders built on httpx or plain asyncio.

    Usage:
        classifier = ErrorClassifier()
        err = classifier.classify(exc, service_id="search")
        if classifier.is_retryable(err):
            ...
    """

    def classify(
        self, error: BaseException, service_id: str | None = None
    ) -> ServiceError:
        """Map any exception onto a ServiceError subclass."""
        if isinstance(error, ServiceError):
            if error.service_id is None:
                error.service_id = service_id
            return error

        classified = self._classify_foreign(error, service_id)
        classified.__cause__ = error
        return classified

    def is_retryable(self, error: BaseException) -> bool:
        """Whether another attempt could plausibly succeed."""
        return isinstance(self.classify(error), RETRYABLE_ERRORS)

    def retry_after(self, error: BaseException) -> float | None:
        """Explicit delay in seconds requested by the remote, if any."""
        classified = self.classify(error)
        if isinstance(classified, RateLimitError):
            return classified.retry_after
        return None

    def _classify_foreign(
        self, error: BaseException, service_id: str | None
    ) -> ServiceError:
        if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
            return RequestTimeoutError(service_id, None)

        if isinstance(error, httpx.HTTPStatusError):
            return self._classify_status(error, service_id)

        if isinstance(error, (httpx.RequestError, ConnectionError, OSError)):
            return NetworkError(str(error) or type(error).__name__, service_id=service_id)

        logger.debug(f"[ErrorClassifier] Unrecognised error {type(error).__name__}: {error}")
        return UnknownError(
            str(error) or "Unknown error occurred", service_id=service_id
        )

    def _classify_status(
        self, error: httpx.HTTPStatusError, service_id: str | None
    ) -> ServiceError:
        response = error.response
        status = response.status_code
        message = f"HTTP {status}: {response.text[:200]}"

        if status in (401, 403):
            return AuthenticationError(message, service_id=service_id)

        if status == 429:
            return RateLimitError(
                service_id,
                retry_after=parse_retry_after(response.headers),
                reason="remote limit",
            )

        if status >= 500:
            return UpstreamError(message, service_id=service_id, status_code=status)

        return ClientError(message, service_id=service_id, status_code=status)


def parse_retry_after(
    headers: httpx.Headers | dict[str, str], now: datetime | None = None
) -> float:
    """
    Extract a retry-after delay (seconds) from response headers.

    Honours ``Retry-After`` as delta-seconds or an HTTP date, then
    ``X-RateLimit-Reset`` as a unix timestamp, then falls back to 60s.
    The result is never below one second.
    """
    headers = httpx.Headers(headers)
    now = now or datetime.now(timezone.utc)
    retry_after = DEFAULT_RETRY_AFTER_SECONDS

    header_value = headers.get("retry-after")
    reset_value = headers.get("x-ratelimit-reset")

    if header_value:
        try:
            retry_after = float(header_value)
        except ValueError:
            try:
                when = date_parser.parse(header_value)
                if when.tzinfo is None:
                    when = when.replace(tzinfo=timezone.utc)
                retry_after = (when - now).total_seconds()
            except (ValueError, OverflowError):
                logger.warning(f"Unparseable Retry-After header: {header_value!r}")
    elif reset_value:
        try:
            retry_after = float(reset_value) - now.timestamp()
        except ValueError:
            logger.warning(f"Unparseable X-RateLimit-Reset header: {reset_value!r}")

    return max(retry_after, MIN_RETRY_AFTER_SECONDS)
