"""
Process-wide rate limit gate and retry policy for the Spotify API.

Hey future me - this is the ONE place that decides how long we back off!
Spotify answers 429 with an optional Retry-After header. When that happens
we don't just delay the one request that got limited: we set a shared
"rate limited until" deadline and EVERY request (even unrelated ones) waits
it out before hitting the network. Otherwise a burst of N requests would
each get their own 429 and we'd dig the hole deeper.

BACKOFF RULES:
- 429: up to 5 retries, linear 2s, 4s, 6s, 8s, 10s
  Retry-After (seconds > 0) replaces the linear delay
  Every wait is capped at max_retry_after_seconds (30s by default)
- 5xx: up to 3 retries, exponential 1s, 2s, 4s (capped at 5s)
- Successful response: deadline is cleared once it has passed

USAGE:
    gate = RateLimitGate()
    await gate.wait()           # before each request
    gate.block_for(delay)       # after a 429
    gate.reset()                # after a 2xx
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry and backoff configuration.

    Hey future me - the 30s cap is deliberate UX: a user is waiting on the
    other end of most requests. Spotify can ask for 60s+, so with the cap we
    may get limited again sooner than Spotify wants. Raise
    max_retry_after_seconds if that starts happening a lot.
    """

    max_rate_limit_retries: int = 5
    rate_limit_base_delay: float = 2.0
    max_retry_after_seconds: float = 30.0
    max_server_error_retries: int = 3
    server_error_base_delay: float = 1.0
    server_error_max_delay: float = 5.0

    def rate_limit_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait after the attempt-th 429 (0-based)."""
        delay = self.rate_limit_base_delay * (attempt + 1)
        if retry_after is not None and retry_after > 0:
            delay = retry_after
        return min(delay, self.max_retry_after_seconds)

    def server_error_delay(self, attempt: int) -> float:
        """Seconds to wait after the attempt-th 5xx (0-based)."""
        return min(
            self.server_error_base_delay * (2**attempt), self.server_error_max_delay
        )


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds.

    HTTP-date values are ignored (Spotify always sends seconds).
    """
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


class RateLimitGate:
    """Shared "rate limited until" deadline.

    All coordinates are on the injected monotonic clock, so tests can drive
    time without sleeping.
    """

    def __init__(self, clock: Clock | None = None, sleep: Sleep | None = None) -> None:
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._limited_until = 0.0

    @property
    def limited_until(self) -> float:
        """Deadline on the gate clock (0.0 when not limited)."""
        return self._limited_until

    def remaining(self) -> float:
        """Seconds left until requests may be dispatched again."""
        return max(0.0, self._limited_until - self._clock())

    # Listen up, this is a loop and not a single sleep on purpose: while we're sleeping another
    # request can hit a 429 and push the deadline further out. We only leave once the deadline
    # that is current NOW has passed.
    async def wait(self) -> float:
        """Block until the shared deadline has passed.

        Returns:
            Total seconds waited
        """
        waited = 0.0
        while (remaining := self.remaining()) > 0:
            logger.debug(f"RateLimitGate: waiting {remaining:.2f}s for rate limit window")
            await self._sleep(remaining)
            waited += remaining
        return waited

    def block_for(self, seconds: float) -> None:
        """Extend the deadline to at least now + seconds (never shortens it)."""
        self._limited_until = max(self._limited_until, self._clock() + seconds)

    def reset(self) -> None:
        """Clear the deadline after a successful request if it has already passed."""
        if self._limited_until and self._limited_until <= self._clock():
            self._limited_until = 0.0

    async def sleep(self, seconds: float) -> None:
        """Sleep using the injected sleep function."""
        await self._sleep(seconds)


__all__ = [
    "Clock",
    "RateLimitGate",
    "RetryPolicy",
    "Sleep",
    "parse_retry_after",
]
