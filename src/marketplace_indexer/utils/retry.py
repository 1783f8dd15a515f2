"""Retry decorator with exponential backoff."""

from __future__ import annotations

import functools
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type

from marketplace_indexer.errors import MaxRetriesError

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Retry behaviour for a decorated call."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt number (0-based)."""
        delay = min(self.base_delay * (self.exponential_base**attempt), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random()  # 50-150% of calculated delay
        return delay


def with_retry(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = (),
    jitter: bool = True,
    sleep: Callable[[float], None] = time.sleep,
):
    """Retry a synchronous call with exponential backoff.

    Exceptions listed in ``give_up_on`` propagate immediately even when they
    also match ``retry_on``. After ``max_retries`` retries the last error is
    wrapped in :class:`MaxRetriesError`.

    Args:
        max_retries: Retries after the first attempt
        base_delay: Initial delay in seconds
        max_delay: Upper bound for a single delay
        retry_on: Exception types that trigger a retry
        give_up_on: Exception types that are never retried
        jitter: Randomise delays to avoid synchronised retries
        sleep: Sleep function (injectable for tests)
    """
    config = RetryConfig(
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=max_delay,
        jitter=jitter,
    )

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            last_error: BaseException | None = None
            for attempt in range(config.max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except give_up_on:
                    raise
                except retry_on as e:
                    last_error = e
                    if attempt >= config.max_retries:
                        break
                    delay = config.get_delay(attempt)
                    logger.debug(
                        "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                        func.__name__,
                        attempt + 1,
                        config.max_retries + 1,
                        e,
                        delay,
                    )
                    sleep(delay)
            raise MaxRetriesError(
                f"{func.__name__} failed after {config.max_retries + 1} attempts: {last_error}",
                attempts=config.max_retries + 1,
                last_error=last_error if isinstance(last_error, Exception) else None,
            )

        return wrapper

    return decorator
