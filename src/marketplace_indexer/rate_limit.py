"""Shared GitHub API quota gate.

The search client and the validator's reachability checks draw from the same
GitHub quota. A single :class:`RateBudget` instance is shared between them so
both throttle against the same ceiling instead of each assuming a full quota.

Two mechanisms live here:

- a quota counter (remaining requests and reset time, refreshed from API
  responses) checked before every request, and
- an asyncio semaphore bounding concurrent fetch/validate work.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from contextlib import asynccontextmanager
from typing import Callable, Mapping, Optional

from marketplace_indexer.errors import SearchRateLimited

logger = logging.getLogger(__name__)


class RateBudget:
    """Thread-safe quota counter plus concurrency limiter.

    Usage:
        budget = RateBudget(max_concurrency=5, max_wait=60)

        # Worker threads (PyGithub calls) block here until quota is available
        budget.wait_sync()

        # Async fan-out
        async with budget.slot():
            ...
    """

    def __init__(
        self,
        max_concurrency: int = 5,
        max_wait: float = 60.0,
        reserve: int = 5,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the budget.

        Args:
            max_concurrency: Maximum concurrent fan-out tasks
            max_wait: Longest wait in seconds for a quota reset before giving up
            reserve: Requests held back from the reported quota
            clock: Time source (epoch seconds)
            sleep: Blocking sleep used by ``wait_sync``
        """
        self.max_concurrency = max_concurrency
        self.max_wait = max_wait
        self.reserve = reserve
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self.remaining: Optional[int] = None
        self.limit: Optional[int] = None
        self.reset_at: Optional[float] = None
        self.requests_made = 0
        # Semaphore is created lazily in async context
        self._semaphore: Optional[asyncio.Semaphore] = None

    # ------------------------------------------------------------------
    # Quota tracking
    # ------------------------------------------------------------------

    def update(
        self,
        remaining: Optional[int],
        reset_at: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> None:
        """Record quota state reported by the API."""
        with self._lock:
            if remaining is not None:
                self.remaining = max(0, int(remaining))
            if reset_at is not None:
                self.reset_at = float(reset_at)
            if limit is not None:
                self.limit = int(limit)

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """Record quota state from ``x-ratelimit-*`` response headers."""
        lowered = {k.lower(): v for k, v in headers.items()}
        remaining = _int_or_none(lowered.get("x-ratelimit-remaining"))
        reset_at = _int_or_none(lowered.get("x-ratelimit-reset"))
        limit = _int_or_none(lowered.get("x-ratelimit-limit"))
        self.update(remaining, reset_at, limit)

    def mark_exhausted(self, reset_at: Optional[float] = None) -> None:
        """Record a rate-limit response."""
        with self._lock:
            self.remaining = 0
            if reset_at is not None:
                self.reset_at = float(reset_at)

    def seconds_until_reset(self) -> float:
        with self._lock:
            if self.reset_at is None:
                return 0.0
            return max(0.0, self.reset_at - self._clock())

    @property
    def exhausted(self) -> bool:
        with self._lock:
            return self.remaining is not None and self.remaining <= self.reserve

    def _reserve_request(self) -> Optional[float]:
        """Take one request from the quota, or return the wait needed first.

        Returns:
            ``None`` when the request was granted, else seconds until reset
        """
        with self._lock:
            if self.remaining is None or self.remaining > self.reserve:
                if self.remaining is not None:
                    self.remaining -= 1
                self.requests_made += 1
                return None
            if self.reset_at is None:
                # Exhausted with no reset information: nothing sensible to wait for
                raise SearchRateLimited("GitHub API quota exhausted (no reset time known)")
            wait = max(0.0, self.reset_at - self._clock())
            if wait > self.max_wait:
                raise SearchRateLimited(
                    f"GitHub API quota exhausted; reset in {wait:.0f}s exceeds "
                    f"max wait of {self.max_wait:.0f}s",
                    reset_at=self.reset_at,
                )
            return wait

    def wait_sync(self) -> None:
        """Block until a request may be made.

        Raises:
            SearchRateLimited: quota is exhausted and the reset is too far away
        """
        wait = self._reserve_request()
        if wait is None:
            return
        logger.warning("GitHub API quota exhausted, waiting %.1fs for reset", wait)
        if wait > 0:
            self._sleep(wait)
        with self._lock:
            # Quota is unknown until the next response reports it
            self.remaining = None
            self.reset_at = None
            self.requests_made += 1

    # ------------------------------------------------------------------
    # Concurrency
    # ------------------------------------------------------------------

    def _get_semaphore(self) -> asyncio.Semaphore:
        """Get or create the fan-out semaphore.

        Must be called from async context.
        """
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
        return self._semaphore

    @asynccontextmanager
    async def slot(self):
        """Hold one of ``max_concurrency`` fan-out slots."""
        semaphore = self._get_semaphore()
        async with semaphore:
            yield

    def snapshot(self) -> dict:
        """Current quota state, for reports and logs."""
        with self._lock:
            return {
                "remaining": self.remaining,
                "limit": self.limit,
                "reset_at": self.reset_at,
                "requests_made": self.requests_made,
            }


def _int_or_none(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None
