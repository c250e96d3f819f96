"""Data models for sliding-window admission decisions."""

import math
from dataclasses import dataclass
from typing import Dict, Literal, Optional, Union

from ratelimiter.app.core.utils import ms_to_datetime

BurstState = Literal["used", "available"]


@dataclass(frozen=True)
class RateLimitOptions:
    """Per-call overrides for a check.

    Attributes:
        limit: Nominal requests allowed per window
        window_ms: Window length in milliseconds
        action: Action part of the limiter key ("default" when None)
        burst: Extra requests allowed above limit (ceil(limit * ratio) when None)
    """
    limit: Optional[int] = None
    window_ms: Optional[int] = None
    action: Optional[str] = None
    burst: Optional[int] = None

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit < 1:
            raise ValueError("limit must be > 0")
        if self.window_ms is not None and self.window_ms < 1:
            raise ValueError("window_ms must be > 0")
        if self.burst is not None and self.burst < 0:
            raise ValueError("burst must be >= 0")


@dataclass(frozen=True)
class ResolvedOptions:
    """Options after defaults have been applied."""
    limit: int
    window_ms: int
    action: str
    burst: int

    @classmethod
    def resolve(
        cls,
        options: RateLimitOptions,
        default_limit: int,
        default_window_ms: int,
        burst_ratio: float,
    ) -> "ResolvedOptions":
        limit = options.limit if options.limit is not None else default_limit
        burst = options.burst
        if burst is None:
            burst = math.ceil(limit * burst_ratio)
        return cls(
            limit=limit,
            window_ms=options.window_ms if options.window_ms is not None else default_window_ms,
            action=options.action or "default",
            burst=burst,
        )


@dataclass(frozen=True)
class Decision:
    """Outcome of an admission check.

    Attributes:
        allowed: Whether the request is admitted
        current: Requests counted in the window, including this one
        limit: Nominal limit (burst excluded)
        remaining: max(0, limit + burst - current)
        reset_at: Epoch milliseconds when the window ending now has fully slid
        burst_state: "used" once current exceeds limit, "available" otherwise,
            None when the count is not authoritative (fallback)
        fallback: True when decided by the process-local cache
    """
    allowed: bool
    current: int
    limit: int
    remaining: int
    reset_at: int
    burst_state: Optional[BurstState] = None
    fallback: bool = False

    @property
    def reset_time(self):
        return ms_to_datetime(self.reset_at)

    def headers(self) -> Dict[str, str]:
        """Response metadata headers derived from the decision."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
            "X-RateLimit-Used": str(self.current),
        }

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        data = {
            "allowed": self.allowed,
            "current": self.current,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset": self.reset_time.isoformat(),
            "fallback": self.fallback,
        }
        if self.burst_state is not None:
            data["burst"] = self.burst_state
        return data


@dataclass(frozen=True)
class Served:
    """Store attempt completed; ``count`` is the authoritative window size."""
    count: int


@dataclass(frozen=True)
class Unavailable:
    """Store attempt did not complete; the caller must fall back."""
    reason: str


StoreOutcome = Union[Served, Unavailable]


@dataclass(frozen=True)
class StatusResult:
    """Authoritative window count for an identifier/action pair."""
    current: int
    identifier: str
    action: str

    def to_dict(self) -> dict:
        return {"current": self.current, "identifier": self.identifier, "action": self.action}


@dataclass(frozen=True)
class StatusError:
    """Status could not be read from the shared store."""
    error: str

    def to_dict(self) -> dict:
        return {"error": self.error}
