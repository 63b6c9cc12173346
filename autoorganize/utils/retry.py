"""
Retry with exponential backoff.

Only calls that leave the process (the HTTP embedding backend) are retried.
Extraction and relationship building fail fast and leave retrying to the
caller.
"""

import asyncio
import random
from dataclasses import dataclass
from functools import wraps
from typing import Awaitable, Callable, Optional, TypeVar

from autoorganize.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _always(exc: BaseException) -> bool:
    return True


@dataclass
class RetryConfig:
    """
    Backoff policy.

    ``exceptions`` selects which errors are candidates for a retry and
    ``retry_if`` can veto individual ones (e.g. an HTTP 4xx that will not
    get better by asking again).
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True
    exceptions: tuple[type[BaseException], ...] = (Exception,)
    retry_if: Callable[[BaseException], bool] = _always

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given zero-based attempt."""
        delay = min(self.base_delay * 2 ** attempt, self.max_delay)
        return delay * random.uniform(0.5, 1.5) if self.jitter else delay

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        return attempt + 1 < self.max_attempts and self.retry_if(exc)


def with_retry(
    config: Optional[RetryConfig] = None,
    **overrides,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Retry a coroutine function according to ``config``.

    Keyword overrides build a config on the fly:
    ``@with_retry(max_attempts=3, exceptions=(httpx.HTTPError,))``.
    The last error is re-raised unchanged once the policy gives up.
    """
    policy = config or RetryConfig(**overrides)

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except policy.exceptions as e:
                    if not policy.should_retry(e, attempt):
                        if attempt:
                            logger.error(f"{func.__qualname__} failed after {attempt + 1} attempts: {e}")
                        raise
                    delay = policy.delay_for(attempt)
                    attempt += 1
                    logger.warning(
                        f"{func.__qualname__} attempt {attempt}/{policy.max_attempts} failed: {e}; "
                        f"retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
