"""Retry mechanism with capped linear backoff for the counter store.

This module provides a configurable retry policy and decorator used when
(re)connecting to the shared store. Delays grow linearly with the attempt
number and are capped, so a flapping store is probed quickly at first
without hammering it later.
"""

import asyncio
import functools
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

import redis.exceptions

from ratelimiter.app.core.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


@dataclass
class RetryPolicy:
    """Configuration for retry behavior with linear backoff.

    Attributes:
        max_retries: Maximum number of retry attempts (default: 3)
        step_delay: Delay added per attempt in seconds (default: 0.1)
        max_delay: Maximum delay between retries in seconds (default: 2.0)
        retryable_exceptions: Tuple of exception types that trigger a retry

    Example:
        >>> policy = RetryPolicy(step_delay=0.1, max_delay=2.0)
        >>> policy.calculate_delay(attempt=3)
        0.3
    """

    max_retries: int = 3
    step_delay: float = 0.1
    max_delay: float = 2.0
    retryable_exceptions: Tuple[Type[BaseException], ...] = (
        redis.exceptions.ConnectionError,
        redis.exceptions.TimeoutError,
        asyncio.TimeoutError,
        OSError,
    )

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay before a given retry attempt.

        delay = min(step_delay * attempt, max_delay)

        Args:
            attempt: The retry attempt number (1-indexed)

        Returns:
            Delay in seconds
        """
        return min(self.step_delay * max(attempt, 0), self.max_delay)

    def is_retryable(self, exception: BaseException) -> bool:
        """Check if an exception should trigger a retry."""
        return isinstance(exception, self.retryable_exceptions)


def with_retry(policy: Optional[RetryPolicy] = None) -> Callable[[F], F]:
    """Decorator that adds retry logic with capped linear backoff.

    Args:
        policy: RetryPolicy configuration. Uses defaults if not provided.

    Returns:
        Decorated function with retry logic

    Example:
        >>> @with_retry(policy=RetryPolicy(max_retries=3))
        ... async def connect(self):
        ...     return await self._client.ping()
    """
    retry_policy = policy or RetryPolicy()

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not retry_policy.is_retryable(e):
                        logger.debug(
                            f"Non-retryable exception in {func.__name__}: {type(e).__name__}: {e}"
                        )
                        raise

                    attempt += 1
                    if attempt > retry_policy.max_retries:
                        logger.warning(
                            f"Max retries ({retry_policy.max_retries}) exceeded for {func.__name__}: "
                            f"{type(e).__name__}: {e}"
                        )
                        raise

                    delay = retry_policy.calculate_delay(attempt)
                    logger.info(
                        f"Retry attempt {attempt}/{retry_policy.max_retries} for {func.__name__} "
                        f"after {type(e).__name__}: {e}. Retrying in {delay * 1000:.0f}ms"
                    )
                    await asyncio.sleep(delay)

        return wrapper  # type: ignore

    return decorator
