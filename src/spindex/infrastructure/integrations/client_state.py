"""Process-local state shared by every Spotify client call.

Hey future me - everything in here is IN-MEMORY and PER-PROCESS: the cached
app token, the shared rate-limit deadline, and the map of in-flight
requests. Run two instances and they'll each fetch their own token and
happily race each other upstream. That's accepted; we run one instance.

Build one ClientState at startup (see lifecycle.py) and hand it to the
client. Tests build a fresh one per test so nothing leaks between them.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial

from spindex.infrastructure.rate_limiter import Clock, RateLimitGate, Sleep

logger = logging.getLogger(__name__)

# Spotify tokens live 3600s; we treat them as expired one minute early so a request never
# goes out with a token that dies mid-flight.
TOKEN_EXPIRY_MARGIN_SECONDS = 60.0


@dataclass(frozen=True)
class AccessToken:
    """Cached bearer token with its expiry on the state clock."""

    value: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        """Check if the token can still be used at `now`."""
        return now < self.expires_at


@dataclass
class _Call[T]:
    task: asyncio.Future[T]
    waiters: int = 0


class SingleFlight[K, T]:
    """Collapse concurrent identical async calls into one.

    The first caller for a key starts the work as a task; everyone who asks
    for the same key while it runs awaits that same task and sees the same
    result (or the same exception). The entry disappears as soon as the task
    finishes, so the NEXT call after completion does real work again. This is
    de-duplication, not caching.

    If every waiter gives up (cancelled, e.g. by asyncio.wait_for), the task
    is cancelled too and the key is released.
    """

    def __init__(self) -> None:
        self._calls: dict[K, _Call[T]] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def __contains__(self, key: object) -> bool:
        return key in self._calls

    async def do(self, key: K, factory: Callable[[], Awaitable[T]]) -> T:
        """Run factory() once for all concurrent callers of key."""
        call = self._calls.get(key)
        if call is None:
            call = _Call(task=asyncio.ensure_future(factory()))
            self._calls[key] = call
            call.task.add_done_callback(partial(self._release, key))
        else:
            logger.debug(f"SingleFlight: joining in-flight call for {key}")

        call.waiters += 1
        try:
            return await asyncio.shield(call.task)
        except asyncio.CancelledError:
            if call.waiters == 1 and not call.task.done():
                call.task.cancel()
            raise
        finally:
            call.waiters -= 1

    def _release(self, key: K, task: asyncio.Future[T]) -> None:
        call = self._calls.get(key)
        if call is not None and call.task is task:
            del self._calls[key]


@dataclass
class ClientState:
    """Token cache, rate-limit gate and in-flight request map.

    Attributes:
        clock: Monotonic clock used for token expiry and the gate
        sleep: Sleep function used for every backoff wait
        gate: Shared "rate limited until" deadline
        requests: In-flight de-duplication for API calls
        token_requests: In-flight de-duplication for token fetches
    """

    clock: Clock = field(default=time.monotonic)
    sleep: Sleep = field(default=asyncio.sleep)
    gate: RateLimitGate = field(init=False)
    requests: SingleFlight[str, object] = field(default_factory=SingleFlight, init=False)
    token_requests: SingleFlight[str, str] = field(
        default_factory=SingleFlight, init=False
    )
    _token: AccessToken | None = field(default=None, init=False)

    def __post_init__(self) -> None:
        self.gate = RateLimitGate(clock=self.clock, sleep=self.sleep)

    @property
    def token(self) -> AccessToken | None:
        """Currently cached token (may be expired)."""
        return self._token

    def cached_token(self) -> str | None:
        """Return the cached token value if it is still valid."""
        if self._token is not None and self._token.is_valid(self.clock()):
            return self._token.value
        return None

    def store_token(self, value: str, expires_in: float) -> AccessToken:
        """Cache a freshly issued token.

        Args:
            value: Bearer token
            expires_in: Lifetime in seconds as declared by the token endpoint

        Returns:
            The cached token
        """
        self._token = AccessToken(
            value=value,
            expires_at=self.clock() + expires_in - TOKEN_EXPIRY_MARGIN_SECONDS,
        )
        return self._token

    def clear_token(self) -> None:
        """Drop the cached token."""
        self._token = None


__all__ = [
    "AccessToken",
    "ClientState",
    "SingleFlight",
    "TOKEN_EXPIRY_MARGIN_SECONDS",
]
