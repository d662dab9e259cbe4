"""Tests for the background task runner and its bounded cooldown map."""

import asyncio

import pytest

from spindex.application.workers import BackgroundTaskRunner, CooldownMap


class TestCooldownMap:
    """Bounded, expiring cooldowns."""

    def test_cooldown_expires(self, clock) -> None:
        """A key stops cooling once its deadline passes, and is dropped on read."""
        cooldowns: CooldownMap[str] = CooldownMap(clock=clock)
        cooldowns.start("a", 10)
        assert cooldowns.is_cooling("a")
        assert cooldowns.remaining("a") == 10

        clock.advance(10)
        assert not cooldowns.is_cooling("a")
        assert len(cooldowns) == 0

    def test_bound_evicts_oldest(self, clock) -> None:
        """Over the bound, the entries set longest ago go first."""
        cooldowns: CooldownMap[str] = CooldownMap(max_entries=2, clock=clock)
        cooldowns.start("a", 100)
        cooldowns.start("b", 100)
        cooldowns.start("c", 100)

        assert len(cooldowns) == 2
        assert not cooldowns.is_cooling("a")
        assert cooldowns.is_cooling("b")
        assert cooldowns.is_cooling("c")

    def test_bound_prefers_dropping_expired(self, clock) -> None:
        """Expired entries are swept before any live one is evicted."""
        cooldowns: CooldownMap[str] = CooldownMap(max_entries=2, clock=clock)
        cooldowns.start("live", 100)
        cooldowns.start("short", 1)
        clock.advance(2)
        cooldowns.start("new", 100)

        assert cooldowns.is_cooling("live")
        assert cooldowns.is_cooling("new")

    def test_cleanup_expired(self, clock) -> None:
        """cleanup_expired reports how many entries it removed."""
        cooldowns: CooldownMap[str] = CooldownMap(clock=clock)
        cooldowns.start("a", 1)
        cooldowns.start("b", 5)
        clock.advance(2)
        assert cooldowns.cleanup_expired() == 1
        assert len(cooldowns) == 1

    def test_invalid_bound(self) -> None:
        """The bound must allow at least one entry."""
        with pytest.raises(ValueError):
            CooldownMap(max_entries=0)


class TestBackgroundTaskRunner:
    """At most one task per key, cooldowns after completion."""

    @pytest.mark.asyncio
    async def test_in_flight_key_is_not_resubmitted(self, clock) -> None:
        """A second submit while the first runs is ignored."""
        runner = BackgroundTaskRunner(clock=clock)
        release = asyncio.Event()
        runs = 0

        async def work() -> None:
            nonlocal runs
            runs += 1
            await release.wait()

        assert runner.submit("artist_sync:a1", work) is True
        assert runner.submit("artist_sync:a1", work) is False
        assert runner.is_in_flight("artist_sync:a1")

        release.set()
        await runner.drain(timeout=1)
        assert runs == 1
        assert runner.get_stats()["skipped_in_flight"] == 1

    @pytest.mark.asyncio
    async def test_success_cooldown(self, clock) -> None:
        """After a success the key is suppressed for the success cooldown."""
        runner = BackgroundTaskRunner(success_cooldown=60, failure_cooldown=300, clock=clock)

        async def work() -> None:
            return None

        runner.submit("k", work)
        await runner.drain(timeout=1)

        assert runner.cooldown_remaining("k") == 60
        assert runner.submit("k", work) is False
        clock.advance(60)
        assert runner.submit("k", work) is True
        await runner.drain(timeout=1)

    @pytest.mark.asyncio
    async def test_failure_is_logged_and_cooled_down(self, clock) -> None:
        """A failing task doesn't propagate and gets the longer cooldown."""
        runner = BackgroundTaskRunner(success_cooldown=60, failure_cooldown=300, clock=clock)

        async def boom() -> None:
            raise RuntimeError("nope")

        runner.submit("k", boom)
        await runner.drain(timeout=1)

        assert runner.cooldown_remaining("k") == 300
        assert runner.get_stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_cooldown_can_be_skipped(self, clock) -> None:
        """cooldown=False only de-duplicates in-flight work."""
        runner = BackgroundTaskRunner(clock=clock)

        async def work() -> None:
            return None

        runner.submit("k", work, cooldown=False)
        await runner.drain(timeout=1)
        assert runner.submit("k", work, cooldown=False) is True
        await runner.drain(timeout=1)

    @pytest.mark.asyncio
    async def test_drain_waits_for_chained_tasks(self, clock) -> None:
        """Tasks submitted by running tasks are drained too."""
        runner = BackgroundTaskRunner(clock=clock)
        done: list[str] = []

        async def child() -> None:
            done.append("child")

        async def parent() -> None:
            runner.submit("child", child)
            done.append("parent")

        runner.submit("parent", parent)
        await runner.drain(timeout=1)
        assert done == ["parent", "child"]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_stragglers(self, clock) -> None:
        """Shutdown stops accepting work and cancels what doesn't finish in time."""
        runner = BackgroundTaskRunner(clock=clock)

        async def forever() -> None:
            await asyncio.sleep(60)

        runner.submit("slow", forever)
        await runner.shutdown(timeout=0.01)

        assert not runner.is_in_flight("slow")
        assert runner.submit("other", forever) is False
