"""Snapshot cron - the periodic popularity sweep.

Hey future me - this is what keeps the charts moving. One run does:

1. Take the "snapshot_cron" lease (30 min TTL). Held by someone else? Log a
   cron_execution summary with the error and raise LockNotAcquiredError.
2. Claim up to 100 ingest requests (artists first seen on a detail page).
3. Refresh those artists FIRST, then every other cached artist, least recently
   updated first. Each refresh = re-fetch + today's snapshot.
4. Ack (delete) the claimed ingest requests.
5. Refresh every track that got a view/open event in the last 90 days (max 500).
6. Write a cron_execution summary into the event log, release the lease.

One failing artist or track is recorded in the summary and the run moves on.
Normally an external scheduler POSTs /api/cron/snapshot. SnapshotCronWorker
can run it in-process instead when CRON_INTERVAL_SECONDS > 0.
"""

import asyncio
import json
import logging
import os
import socket
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from spindex.application.services.catalog_service import CatalogService
from spindex.config import Settings
from spindex.domain.dtos import CronRunSummary
from spindex.domain.entities import TRACK_INTEREST_EVENTS, EventRecord, EventType
from spindex.domain.exceptions import DomainException, LockNotAcquiredError
from spindex.infrastructure.persistence import (
    ArtistRepository,
    CronLockRepository,
    Database,
    EventLogRepository,
    IngestRequestRepository,
)
from spindex.infrastructure.persistence.models import utc_now

logger = logging.getLogger(__name__)

CRON_LOCK_NAME = "snapshot_cron"


def _new_owner_token() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class SnapshotCronService:
    """Runs the snapshot sweep under the cron lease."""

    def __init__(
        self,
        database: Database,
        catalog: CatalogService,
        settings: Settings,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the cron service.

        Args:
            database: Database with session_scope()
            catalog: Refreshes artists/tracks and writes snapshots
            settings: Application settings (cron batch sizes, lock TTL)
            now: UTC clock (injectable for tests)
        """
        self._database = database
        self._catalog = catalog
        self._settings = settings
        self._now = now

    async def run_snapshot_cron(self) -> CronRunSummary:
        """Run one sweep.

        Returns:
            Summary of the run

        Raises:
            LockNotAcquiredError: Another run holds the lease
            PersistenceUnavailableError: Database unreachable before the sweep started
        """
        started = time.perf_counter()
        owner = _new_owner_token()
        cron = self._settings.cron
        ttl = timedelta(minutes=cron.lock_ttl_minutes)

        async with self._database.session_scope() as session:
            lease = await CronLockRepository(session).try_acquire(
                CRON_LOCK_NAME, owner, ttl, now=self._now()
            )

        if lease is None:
            error = LockNotAcquiredError()
            summary = CronRunSummary(duration_ms=_elapsed_ms(started), error=error.message)
            logger.warning(f"Snapshot cron skipped: {error.message}")
            await self._log_summary(summary)
            raise error

        logger.info(f"Snapshot cron started (owner={owner}, fencing={lease.fencing_token})")
        try:
            summary = await self._sweep(owner, ttl)
            summary.duration_ms = _elapsed_ms(started)
            if summary.failed or summary.tracks_failed:
                summary.error = (
                    f"{summary.failed} artists and {summary.tracks_failed} tracks failed"
                )
            await self._log_summary(summary)
            logger.info(
                f"Snapshot cron finished: {summary.succeeded}/{summary.processed} artists, "
                f"{summary.tracks_succeeded}/{summary.tracks_processed} tracks "
                f"in {summary.duration_ms}ms"
            )
            return summary
        finally:
            await self._release(owner)

    async def _sweep(self, owner: str, ttl: timedelta) -> CronRunSummary:
        cron = self._settings.cron
        now = self._now()
        summary = CronRunSummary()

        async with self._database.session_scope() as session:
            claimed = await IngestRequestRepository(session).claim_batch(
                owner, cron.ingest_batch_size, stale_before=now - ttl, now=now
            )
        requested = list(dict.fromkeys(request.artist_id for request in claimed))
        summary.requested = len(requested)

        async with self._database.session_scope() as session:
            remaining = await ArtistRepository(session).list_ids_by_staleness(exclude=requested)
        queue = requested + remaining
        summary.processed = len(queue)

        for artist_id in queue:
            try:
                await self._catalog.refresh_snapshots_for_artist(artist_id)
            except DomainException as e:
                summary.failed += 1
                summary.errors.append({"artist_id": artist_id, "error": e.message})
                logger.warning(f"Snapshot refresh failed for artist {artist_id}: {e.message}")
            except Exception as e:
                summary.failed += 1
                summary.errors.append({"artist_id": artist_id, "error": _describe(e)})
                logger.exception(f"Unexpected error refreshing artist {artist_id}")
            else:
                summary.succeeded += 1
                summary.artist_ids.append(artist_id)

        if claimed:
            async with self._database.session_scope() as session:
                acked = await IngestRequestRepository(session).ack(
                    owner, [request.id for request in claimed]
                )
            logger.info(f"Acked {acked} ingest requests")

        async with self._database.session_scope() as session:
            track_ids = await EventLogRepository(session).recent_track_ids(
                TRACK_INTEREST_EVENTS,
                since=now - timedelta(days=cron.track_lookback_days),
                limit=cron.track_batch_size,
            )
        summary.tracks_processed = len(track_ids)

        for track_id in track_ids:
            try:
                await self._catalog.refresh_snapshots_for_track(track_id)
            except DomainException as e:
                summary.tracks_failed += 1
                summary.errors.append({"track_id": track_id, "error": e.message})
                logger.warning(f"Snapshot refresh failed for track {track_id}: {e.message}")
            except Exception as e:
                summary.tracks_failed += 1
                summary.errors.append({"track_id": track_id, "error": _describe(e)})
                logger.exception(f"Unexpected error refreshing track {track_id}")
            else:
                summary.tracks_succeeded += 1

        return summary

    async def _log_summary(self, summary: CronRunSummary) -> None:
        event = EventRecord(
            id=str(uuid.uuid4()),
            type=EventType.CRON_EXECUTION.value,
            input=json.dumps(summary.to_log_payload()),
            created_at=self._now(),
        )
        try:
            async with self._database.session_scope() as session:
                await EventLogRepository(session).add(event)
        except DomainException:
            logger.warning("Failed to log cron execution summary", exc_info=True)

    # The lease expires on its own after the TTL, so a failed release only delays the next run.
    async def _release(self, owner: str) -> None:
        try:
            async with self._database.session_scope() as session:
                await CronLockRepository(session).release(CRON_LOCK_NAME, owner, now=self._now())
        except DomainException:
            logger.warning("Failed to release snapshot cron lock", exc_info=True)


def _describe(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class SnapshotCronWorker:
    """Runs the snapshot cron in-process on a fixed interval.

    Lifecycle:
    - Created in lifecycle.py when CRON_INTERVAL_SECONDS > 0
    - Runs as asyncio task via start()
    - Stopped gracefully via stop() during shutdown
    """

    def __init__(self, cron_service: SnapshotCronService, interval_seconds: int) -> None:
        """Initialize the worker.

        Args:
            cron_service: Service that performs one sweep
            interval_seconds: Seconds between runs
        """
        self._cron_service = cron_service
        self._interval_seconds = interval_seconds
        self._running = False
        self._stats: dict[str, Any] = {
            "runs": 0,
            "skipped_locked": 0,
            "errors": 0,
            "last_run_at": None,
            "last_summary": None,
        }

    async def start(self) -> None:
        """Run sweeps until stop() is called."""
        self._running = True
        logger.info(f"SnapshotCronWorker started (interval={self._interval_seconds}s)")

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                # Log but don't crash - we'll try again next cycle
                logger.exception(f"SnapshotCronWorker error: {e}")
                self._stats["errors"] += 1

            await asyncio.sleep(self._interval_seconds)

    def stop(self) -> None:
        """Signal the worker to stop."""
        self._running = False
        logger.info("SnapshotCronWorker stopping...")

    async def run_once(self) -> CronRunSummary | None:
        """Run a single sweep; a held lock is not an error here."""
        self._stats["last_run_at"] = datetime.now(UTC).isoformat()
        try:
            summary = await self._cron_service.run_snapshot_cron()
        except LockNotAcquiredError:
            self._stats["skipped_locked"] += 1
            logger.info("Snapshot cron already running elsewhere, skipping this cycle")
            return None
        self._stats["runs"] += 1
        self._stats["last_summary"] = summary.to_log_payload()
        return summary

    def get_stats(self) -> dict[str, Any]:
        """Get worker statistics."""
        return {
            **self._stats,
            "running": self._running,
            "interval_seconds": self._interval_seconds,
        }


def create_snapshot_cron_worker(
    cron_service: SnapshotCronService, settings: Settings
) -> SnapshotCronWorker | None:
    """Build the in-process worker, or None when the interval is 0 (externally triggered)."""
    if settings.cron.interval_seconds <= 0:
        return None
    return SnapshotCronWorker(cron_service, settings.cron.interval_seconds)
