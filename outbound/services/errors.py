"""
Service layer exceptions.

Errors flagged ``local`` were produced by this layer without calling the
loader (cache rejection, local rate-limit denial, open circuit).
"""


class ServiceError(Exception):
    """Base exception for service layer errors."""

    local: bool = False

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        self.attempts: int | None = None
        self.label: str | None = None
        super().__init__(message)

    def annotate(self, attempts: int, label: str) -> "ServiceError":
        """Attach retry bookkeeping to the error."""
        self.attempts = attempts
        self.label = label
        return self

    def __str__(self) -> str:
        message = super().__str__()
        if self.attempts is not None:
            message = f"{message} [{self.label}: {self.attempts} attempt(s)]"
        return message


class CacheError(ServiceError):
    """Cache operation failed."""

    local = True


class EntryTooLargeError(CacheError):
    """Entry is bigger than the whole cache."""

    def __init__(self, size: int, capacity: int):
        self.size = size
        self.capacity = capacity
        super().__init__(
            f"Entry size ({size} bytes) exceeds cache capacity ({capacity} bytes)"
        )


class CircuitOpenError(ServiceError):
    """Circuit breaker is open, request blocked."""

    local = True

    def __init__(self, service_id: str, reset_after_seconds: float):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            f"Circuit breaker open for service '{service_id}', "
            f"retry after {reset_after_seconds:.1f}s",
            service_id=service_id,
        )


class RequestTimeoutError(ServiceError):
    """Request timed out."""

    def __init__(self, service_id: str | None, timeout: float | None):
        self.timeout = timeout
        msg = f"Request to service '{service_id}' timed out"
        if timeout is not None:
            msg += f" after {timeout}s"
        super().__init__(msg, service_id=service_id)


class RateLimitError(ServiceError):
    """Rate limit exceeded, either locally or as reported by the remote."""

    def __init__(
        self,
        service_id: str | None,
        retry_after: float | None = None,
        reason: str | None = None,
        local: bool = False,
    ):
        self.retry_after = retry_after
        self.reason = reason
        self.local = local
        msg = f"Rate limit exceeded for service '{service_id}'"
        if reason:
            msg += f" ({reason})"
        if retry_after:
            msg += f", retry after {retry_after:.1f}s"
        super().__init__(msg, service_id=service_id)


class NetworkError(ServiceError):
    """Connection could not be established or was dropped."""

    pass


class AuthenticationError(ServiceError):
    """Remote rejected our credentials. Never retried."""

    pass


class UpstreamError(ServiceError):
    """Remote answered with a 5xx-class error."""

    def __init__(
        self, message: str, service_id: str | None = None, status_code: int | None = None
    ):
        self.status_code = status_code
        super().__init__(message, service_id=service_id)


class ClientError(ServiceError):
    """Remote rejected the request itself (4xx other than auth or rate limit)."""

    def __init__(
        self, message: str, service_id: str | None = None, status_code: int | None = None
    ):
        self.status_code = status_code
        super().__init__(message, service_id=service_id)


class UnknownError(ServiceError):
    """Fallback for anything the classifier does not recognise."""

    pass
