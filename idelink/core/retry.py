"""Bounded retries for host discovery.

The relay polls the instance registry a fixed number of times while an IDE
is starting up; the schedule is either a fixed interval or exponential.
"""

import asyncio
from dataclasses import dataclass
from functools import wraps
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

log = structlog.get_logger()

T = TypeVar('T')


@dataclass
class RetryConfig:
    """Attempt budget and delay schedule."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    retryable_exceptions: tuple = (Exception,)

    @classmethod
    def fixed_interval(cls, attempts: int, interval: float, retryable: tuple) -> 'RetryConfig':
        """Same pause between every attempt."""
        return cls(
            max_attempts=attempts,
            base_delay=interval,
            max_delay=interval,
            exponential_base=1.0,
            retryable_exceptions=retryable,
        )

    def delay_for(self, attempt: int) -> float:
        """Pause after the given zero-based attempt."""
        return min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)

    def total_wait(self) -> float:
        """Worst-case time spent sleeping before giving up."""
        return sum(self.delay_for(i) for i in range(self.max_attempts - 1))


def with_retry(config: Optional[RetryConfig] = None):
    """Retry an async callable on the configured exceptions.

    Anything not listed in ``retryable_exceptions`` propagates at once. When
    the budget runs out the last retryable exception is re-raised.

    Example:
        @with_retry(RetryConfig.fixed_interval(10, 1.0, (HostNotFoundError,)))
        async def locate():
            ...
    """
    config = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            failure: Optional[BaseException] = None

            for attempt in range(config.max_attempts):
                try:
                    return await func(*args, **kwargs)
                except config.retryable_exceptions as e:
                    failure = e
                    remaining = config.max_attempts - attempt - 1
                    if not remaining:
                        break

                    delay = config.delay_for(attempt)
                    # Waiting for an IDE to start is routine, not a warning
                    log.debug(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt + 1,
                        remaining=remaining,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            log.warning(
                "retry_exhausted",
                function=func.__name__,
                attempts=config.max_attempts,
                error=str(failure),
            )
            raise failure

        return wrapper
    return decorator
