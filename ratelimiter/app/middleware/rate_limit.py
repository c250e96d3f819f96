"""Rate limiting middleware for the service.

Turns admission decisions into response headers and 429 responses. The
decision itself is made by the RateLimitEngine installed on app.state.
"""

import math
from typing import Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from ratelimiter.app.core.config import settings
from ratelimiter.app.core.logging import get_log_context, get_logger
from ratelimiter.app.core.utils import now_ms
from ratelimiter.app.exceptions import RateLimitExceededError
from ratelimiter.app.services.rate_limiter import Decision, RateLimitEngine, RateLimitOptions

logger = get_logger(__name__)


def get_client_identifier(request: Request) -> str:
    """Identifier used for rate limiting: the client IP.

    Uses the first X-Forwarded-For hop when present.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def rate_limit_response(exc: RateLimitExceededError) -> JSONResponse:
    """Build the 429 response for a rejected request."""
    decision = exc.decision
    retry_after = max(0, math.ceil((decision.reset_at - now_ms()) / 1000))
    headers = decision.headers()
    headers["Retry-After"] = str(retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "Too Many Requests",
            "retryAfter": decision.reset_time.isoformat(),
        },
        headers=headers,
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    Limits are applied per client IP with the given options (deployment
    defaults when omitted). If the limiter itself fails, the request is let
    through so the limiter never becomes a point of failure.
    """

    def __init__(
        self,
        app,
        options: Optional[RateLimitOptions] = None,
        exempt_paths: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.options = options
        self.exempt_paths = set(
            exempt_paths if exempt_paths is not None else settings.rate_limit_exempt_paths
        )

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        engine: Optional[RateLimitEngine] = getattr(request.app.state, "rate_limiter", None)
        if engine is None or request.url.path in self.exempt_paths:
            return await call_next(request)

        identifier = get_client_identifier(request)
        decision: Optional[Decision] = None
        try:
            decision = await engine.check(identifier, self.options)
        except Exception as e:
            logger.error(
                f"Rate limiter middleware error: {e}",
                extra=get_log_context(identifier=identifier, path=request.url.path),
            )

        if decision is not None and not decision.allowed:
            return rate_limit_response(RateLimitExceededError(decision))

        response = await call_next(request)

        if decision is not None:
            response.headers.update(decision.headers())

        return response
