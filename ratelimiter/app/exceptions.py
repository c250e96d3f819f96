"""Custom exceptions for the rate limiter service."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ratelimiter.app.services.rate_limiter.models import Decision


class RateLimiterException(Exception):
    """Base class for rate limiter exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Rate limiter error"):
        self.message = message
        super().__init__(message)


class StoreUnavailableError(RateLimiterException):
    """Raised when the shared counter store is not connected or not ready.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, detail: str = "Counter store unavailable"):
        super().__init__(detail)


class StoreOperationError(RateLimiterException):
    """Raised when a store command fails, times out, or a transaction aborts.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, operation: str, detail: str | None = None):
        self.operation = operation
        message = f"Counter store operation '{operation}' failed"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class RateLimitExceededError(RateLimiterException):
    """Raised by the HTTP layer when a request is not admitted.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, decision: "Decision"):
        self.decision = decision
        super().__init__(
            f"Rate limit exceeded: {decision.current}/{decision.limit}"
        )
