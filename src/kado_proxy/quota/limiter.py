"""
Token bucket admission gate for outbound traffic.

Bounds the rate of requests forwarded to the upstream to a fixed quota
per time window. The bucket is local to the process; it does not
coordinate with other proxy instances.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from kado_proxy.config import Settings

logger = logging.getLogger(__name__)


class RateLimitExceeded(Exception):
    """Raised when an admission cannot be granted in time."""

    def __init__(self, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        if retry_after is None:
            super().__init__("Rate limit exceeded")
        else:
            super().__init__(f"Rate limit exceeded. Retry after: {retry_after:.3f}s")


@dataclass
class AdmissionResult:
    """Result of a granted admission."""

    waited: float
    """Seconds the caller was held before the slot was granted."""

    remaining: int
    """Whole tokens left in the bucket after this admission."""


class AdmissionGate:
    """
    Token bucket gate with reservation semantics.

    Each call to ``acquire`` reserves one token. If the bucket is empty the
    reservation puts the balance into debt and the caller sleeps until the
    debt is repaid by refill, so concurrent waiters are served in arrival
    order at exactly the refill rate.
    """

    def __init__(
        self,
        limit: int = 5000,
        window_seconds: float = 3600.0,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the gate.

        Args:
            limit: Requests allowed per window
            window_seconds: Window size in seconds
            burst: Bucket capacity (tokens available at once)
            clock: Monotonic clock, injectable for tests
        """
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")

        self._limit = limit
        self._window_seconds = window_seconds
        self._capacity = float(burst)
        self._refill_rate = limit / window_seconds
        self._clock = clock
        self._tokens = float(burst)
        self._last_update = clock()
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> AdmissionGate:
        return cls(
            limit=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
            burst=settings.rate_limit_burst,
        )

    @property
    def refill_rate(self) -> float:
        """Tokens added per second."""
        return self._refill_rate

    @property
    def interval(self) -> float:
        """Seconds between two tokens."""
        return 1.0 / self._refill_rate

    def _advance(self, now: float) -> None:
        elapsed = max(0.0, now - self._last_update)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._refill_rate)
        self._last_update = now

    def available(self) -> float:
        """Current token balance after refill (negative while in debt)."""
        self._advance(self._clock())
        return self._tokens

    async def _reserve(self, timeout: float | None) -> float:
        """Take one token, returning the seconds until it is usable."""
        async with self._lock:
            self._advance(self._clock())
            balance = self._tokens - 1.0
            wait = -balance / self._refill_rate if balance < 0 else 0.0

            if timeout is not None and wait > timeout:
                # Nothing committed: the bucket is left as it was
                raise RateLimitExceeded(retry_after=wait)

            self._tokens = balance
            return wait

    async def _release(self) -> None:
        """Give a reserved token back."""
        async with self._lock:
            self._advance(self._clock())
            self._tokens = min(self._capacity, self._tokens + 1.0)

    async def acquire(
        self,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AdmissionResult:
        """
        Wait for an admission slot.

        Args:
            timeout: Maximum seconds to wait; None waits as long as needed
            cancel: Optional event that aborts the wait when set

        Returns:
            AdmissionResult describing the grant

        Raises:
            RateLimitExceeded: If the slot cannot be granted within timeout
                or the cancel event fires first
        """
        if cancel is not None and cancel.is_set():
            raise RateLimitExceeded()

        wait = await self._reserve(timeout)

        if wait > 0:
            try:
                if cancel is None:
                    await asyncio.sleep(wait)
                else:
                    await asyncio.wait_for(cancel.wait(), timeout=wait)
                    # Event fired before the slot came due
                    await self._release()
                    raise RateLimitExceeded(retry_after=wait)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                await self._release()
                raise

        remaining = max(0, int(self.available()))
        logger.debug(f"Admission granted after {wait:.3f}s ({remaining} tokens left)")
        return AdmissionResult(waited=wait, remaining=remaining)
