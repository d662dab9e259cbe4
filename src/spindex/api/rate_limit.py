"""Per-client fixed-window request limiting for the public routes.

This protects OUR upstream quota from a single noisy client; it has nothing to
do with Spotify's own 429s (see infrastructure/rate_limiter.py for those).
State is in-memory and per-process, like every other guard in this app.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass

from spindex.infrastructure.rate_limiter import Clock


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one hit against a window."""

    allowed: bool
    remaining: int
    reset_in: float


@dataclass
class _Window:
    count: int
    reset_at: float


class RequestRateLimiter:
    """Fixed-window counter keyed by "<scope>:<client>".

    A window starts with the first hit and lasts window_seconds; once it has
    passed, the next hit opens a fresh one. The key map is bounded, expired
    windows are dropped first, then the oldest ones.
    """

    def __init__(self, max_keys: int = 10_000, clock: Clock | None = None) -> None:
        self._max_keys = max_keys
        self._clock = clock or time.monotonic
        self._windows: OrderedDict[str, _Window] = OrderedDict()

    def hit(self, key: str, limit: int, window_seconds: float) -> RateLimitDecision:
        """Count one request for key.

        Args:
            key: Scope plus client identifier
            limit: Requests allowed per window
            window_seconds: Window length

        Returns:
            Whether the request is allowed, and the window state after counting it
        """
        now = self._clock()
        window = self._windows.get(key)
        if window is None or window.reset_at <= now:
            window = _Window(count=1, reset_at=now + window_seconds)
            self._windows.pop(key, None)
            self._windows[key] = window
            self._evict(now)
            return RateLimitDecision(True, limit - 1, window_seconds)

        if window.count < limit:
            window.count += 1
            return RateLimitDecision(True, limit - window.count, window.reset_at - now)
        return RateLimitDecision(False, 0, window.reset_at - now)

    def _evict(self, now: float) -> None:
        if len(self._windows) <= self._max_keys:
            return
        for key in [k for k, w in self._windows.items() if w.reset_at <= now]:
            del self._windows[key]
        while len(self._windows) > self._max_keys:
            self._windows.popitem(last=False)

    def reset(self) -> None:
        """Forget every window."""
        self._windows.clear()

    def __len__(self) -> int:
        return len(self._windows)
