"""Fire-and-forget background work with per-key de-duplication and cooldowns.

Hey future me - this is how the detail pages kick off syncs WITHOUT making the
user wait for them. Three guard rails keep it from turning into a stampede:

1. At most ONE task in flight per key ("artist:<id>", "top_tracks:<id>", ...).
   A second submit for the same key while the first runs is ignored.
2. After a task finishes the key cools down: 60s after success, 5 minutes after
   failure. Submits during the cooldown are ignored too.
3. The cooldown map is bounded (oldest entries evicted first) and entries expire,
   so a long-running process that sees millions of ids can't grow it forever.

Task failures are logged and swallowed here - by the time they fail nobody is
waiting for them anymore. drain() exists for tests, shutdown() for the lifespan.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any

from spindex.infrastructure.rate_limiter import Clock

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


class CooldownMap[K]:
    """Size-bounded map of key -> cooldown deadline.

    Expired entries are dropped on read and whenever the map is over its
    bound; if it is still over the bound after that, the entries that were
    set longest ago go first.
    """

    def __init__(self, max_entries: int = 10_000, clock: Clock | None = None) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._clock = clock or time.monotonic
        self._deadlines: OrderedDict[K, float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._deadlines)

    def start(self, key: K, seconds: float) -> None:
        """Put key on cooldown for `seconds` from now (replaces any existing cooldown)."""
        self._deadlines.pop(key, None)
        self._deadlines[key] = self._clock() + seconds
        if len(self._deadlines) > self._max_entries:
            self.cleanup_expired()
            while len(self._deadlines) > self._max_entries:
                self._deadlines.popitem(last=False)

    def remaining(self, key: K) -> float:
        """Seconds of cooldown left for key (0.0 if none)."""
        deadline = self._deadlines.get(key)
        if deadline is None:
            return 0.0
        left = deadline - self._clock()
        if left <= 0:
            del self._deadlines[key]
            return 0.0
        return left

    def is_cooling(self, key: K) -> bool:
        """Check if key is still on cooldown."""
        return self.remaining(key) > 0

    def cleanup_expired(self) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [key for key, deadline in self._deadlines.items() if deadline <= now]
        for key in expired:
            del self._deadlines[key]
        return len(expired)

    def clear(self) -> None:
        """Drop every cooldown."""
        self._deadlines.clear()


class BackgroundTaskRunner:
    """Schedules background coroutines with at-most-one-in-flight-per-key."""

    def __init__(
        self,
        success_cooldown: float = 60.0,
        failure_cooldown: float = 300.0,
        max_cooldown_entries: int = 10_000,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            success_cooldown: Seconds a key is suppressed after a successful run
            failure_cooldown: Seconds a key is suppressed after a failed run
            max_cooldown_entries: Bound of the cooldown map
            clock: Monotonic clock (injectable for tests)
        """
        self._success_cooldown = success_cooldown
        self._failure_cooldown = failure_cooldown
        self._cooldowns: CooldownMap[str] = CooldownMap(max_cooldown_entries, clock)
        # Strong references: the event loop only keeps weak ones, so an unreferenced task
        # can be garbage collected mid-flight.
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._closed = False
        self._stats = {
            "submitted": 0,
            "skipped_in_flight": 0,
            "skipped_cooldown": 0,
            "succeeded": 0,
            "failed": 0,
        }

    def submit(self, key: str, factory: TaskFactory, *, cooldown: bool = True) -> bool:
        """Schedule factory() in the background unless key is busy or cooling down.

        Args:
            key: De-duplication key
            factory: Zero-arg callable returning the coroutine to run
            cooldown: Apply success/failure cooldowns to this key

        Returns:
            True if a task was scheduled
        """
        if self._closed:
            logger.debug(f"Runner closed, dropping background task {key}")
            return False
        if key in self._tasks:
            self._stats["skipped_in_flight"] += 1
            logger.debug(f"Background task {key} already in flight")
            return False
        if cooldown and self._cooldowns.is_cooling(key):
            self._stats["skipped_cooldown"] += 1
            logger.info(
                f"Background task {key} suppressed, cooling down for "
                f"{self._cooldowns.remaining(key):.0f}s"
            )
            return False

        self._stats["submitted"] += 1
        self._tasks[key] = asyncio.create_task(
            self._run(key, factory, cooldown), name=f"bg:{key}"
        )
        return True

    async def _run(self, key: str, factory: TaskFactory, cooldown: bool) -> None:
        try:
            await factory()
        except asyncio.CancelledError:
            logger.debug(f"Background task {key} cancelled")
            raise
        except Exception:
            self._stats["failed"] += 1
            logger.warning(f"Background task {key} failed", exc_info=True)
            if cooldown:
                self._cooldowns.start(key, self._failure_cooldown)
        else:
            self._stats["succeeded"] += 1
            logger.debug(f"Background task {key} completed")
            if cooldown:
                self._cooldowns.start(key, self._success_cooldown)
        finally:
            self._tasks.pop(key, None)

    def is_in_flight(self, key: str) -> bool:
        """Check if a task for key is running."""
        return key in self._tasks

    def cooldown_remaining(self, key: str) -> float:
        """Seconds of cooldown left for key."""
        return self._cooldowns.remaining(key)

    # Listen up, tasks can submit more tasks (a top-tracks sync schedules an artist sync), so we
    # keep waiting until the in-flight map stays empty instead of waiting on one snapshot of it.
    async def drain(self, timeout: float | None = None) -> None:
        """Wait until no background task is running."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                raise TimeoutError(f"{len(self._tasks)} background tasks still running")
            await asyncio.wait(list(self._tasks.values()), timeout=remaining)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop accepting work, give running tasks a grace period, then cancel them."""
        self._closed = True
        tasks = list(self._tasks.values())
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.info(f"Cancelled {len(pending)} background tasks on shutdown")
            await asyncio.gather(*pending, return_exceptions=True)

    def get_stats(self) -> dict[str, Any]:
        """Get runner statistics."""
        return {
            **self._stats,
            "in_flight": len(self._tasks),
            "cooldowns": len(self._cooldowns),
        }


__all__ = ["BackgroundTaskRunner", "CooldownMap", "TaskFactory"]
