"""Catalog service - the write path into the entity cache.

Hey future me - everything that turns upstream JSON into rows goes through here:
artist/track upserts, daily popularity snapshots, and the "make sure this artist
exists" helper the search and track pages lean on. The read-heavy detail pages
live in SyncOrchestrator, which calls into this service for its writes.

Each public method opens its OWN session_scope, so one failing write never
poisons another (the manual sync relies on that for per-track isolation).
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from spindex.application.services.resolver import Resolver
from spindex.config import Settings
from spindex.domain.dtos import ArtistSyncResult, SearchResult
from spindex.domain.entities import Artist, EntityKind, SnapshotPoint, Track
from spindex.domain.exceptions import (
    DomainException,
    UpstreamUnavailableError,
    ValidationException,
)
from spindex.domain.ports import ICatalogClient
from spindex.infrastructure.integrations import SingleFlight
from spindex.infrastructure.integrations.spotify_client import (
    artist_from_spotify,
    track_from_spotify,
)
from spindex.infrastructure.persistence import (
    ArtistRepository,
    Database,
    SnapshotRepository,
    TrackRepository,
)
from spindex.infrastructure.persistence.models import utc_now

logger = logging.getLogger(__name__)


class CatalogService:
    """Upserts, snapshots and search over the entity cache."""

    def __init__(
        self,
        database: Database,
        client: ICatalogClient,
        resolver: Resolver,
        settings: Settings,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the service.

        Args:
            database: Database with session_scope()
            client: Upstream catalog client
            resolver: Input resolver used by search
            settings: Application settings (sync timeouts, snapshot limits)
            now: UTC clock (injectable for tests)
        """
        self._database = database
        self._client = client
        self._resolver = resolver
        self._settings = settings
        self._now = now
        self._ensure_flights: SingleFlight[str, Artist] = SingleFlight()

    # =========================================================================
    # RECORDS
    # =========================================================================

    async def record_artist_from_spotify(self, artist_id: str) -> Artist:
        """Fetch an artist upstream and upsert it.

        Raises:
            ExternalServiceError: Upstream rejected the request
            RateLimitExceededError: Upstream rate limit exhausted
            PersistenceUnavailableError: Database unreachable
        """
        artist = artist_from_spotify(await self._client.get_artist(artist_id))
        async with self._database.session_scope() as session:
            stored, created = await ArtistRepository(session).upsert(artist, now=self._now())
        logger.info(
            f"{'Created' if created else 'Updated'} artist {stored.id} "
            f"({stored.name}, popularity={stored.popularity})"
        )
        return stored

    async def record_track_from_spotify(self, track_id: str, artist_id: str | None = None) -> Track:
        """Fetch a track upstream and upsert it.

        Args:
            track_id: Spotify track id
            artist_id: Owning artist; defaults to the first credited artist
        """
        track = track_from_spotify(await self._client.get_track(track_id), artist_id=artist_id)
        async with self._database.session_scope() as session:
            stored, _ = await TrackRepository(session).upsert(track, now=self._now())
        logger.debug(f"Stored track {stored.id} for artist {stored.artist_id}")
        return stored

    async def store_tracks(self, tracks: list[Track], with_snapshots: bool = False) -> int:
        """Upsert already-mapped tracks (e.g. from the top-tracks endpoint).

        Returns:
            Number of tracks stored
        """
        if not tracks:
            return 0
        now = self._now()
        async with self._database.session_scope() as session:
            track_repo = TrackRepository(session)
            snapshot_repo = SnapshotRepository(session)
            for track in tracks:
                await track_repo.upsert(track, now=now)
                if with_snapshots:
                    await snapshot_repo.save_track_snapshot(track.id, track.popularity, now)
        return len(tracks)

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    async def save_snapshot(
        self,
        *,
        artist_id: str | None = None,
        track_id: str | None = None,
        popularity: int,
        taken_at: datetime | None = None,
    ) -> bool:
        """Write the day's popularity snapshot for exactly one artist or track.

        A second write on the same UTC day overwrites the first.

        Returns:
            True if a new day row was created

        Raises:
            ValidationException: Neither or both of artist_id/track_id given
        """
        taken_at = taken_at or self._now()
        if artist_id and not track_id:
            async with self._database.session_scope() as session:
                return await SnapshotRepository(session).save_artist_snapshot(
                    artist_id, popularity, taken_at
                )
        if track_id and not artist_id:
            async with self._database.session_scope() as session:
                return await SnapshotRepository(session).save_track_snapshot(
                    track_id, popularity, taken_at
                )
        raise ValidationException("Exactly one of artist_id or track_id is required")

    async def refresh_snapshots_for_artist(self, artist_id: str) -> Artist:
        """Re-fetch an artist and record today's snapshot from the fresh popularity."""
        artist = await self.record_artist_from_spotify(artist_id)
        await self.save_snapshot(artist_id=artist.id, popularity=artist.popularity)
        return artist

    async def refresh_snapshots_for_track(self, track_id: str) -> Track:
        """Re-fetch a track and record today's snapshot from the fresh popularity."""
        track = await self.record_track_from_spotify(track_id)
        await self.save_snapshot(track_id=track.id, popularity=track.popularity)
        return track

    async def get_snapshots_for_artist(
        self, artist_id: str, limit: int | None = None
    ) -> list[SnapshotPoint]:
        """Artist popularity series, oldest first."""
        async with self._database.session_scope() as session:
            return await SnapshotRepository(session).list_for_artist(
                artist_id, limit or self._settings.sync.snapshot_history_limit
            )

    async def get_snapshots_for_track(
        self, track_id: str, limit: int | None = None
    ) -> list[SnapshotPoint]:
        """Track popularity series, oldest first."""
        async with self._database.session_scope() as session:
            return await SnapshotRepository(session).list_for_track(
                track_id, limit or self._settings.sync.snapshot_history_limit
            )

    # =========================================================================
    # ENSURE / SEARCH / SYNC
    # =========================================================================

    # Listen up, two concurrent callers for the same id share ONE flight: one DB check, at most
    # one upstream fetch, one upsert. The upstream part is bounded by artist_record_timeout; on
    # timeout wait_for cancels the fetch and the caller sees UpstreamUnavailableError.
    async def ensure_artist_record(self, artist_id: str) -> Artist:
        """Return the cached artist, fetching and storing it first if missing.

        Raises:
            UpstreamUnavailableError: Upstream fetch timed out or is unreachable
            RateLimitExceededError: Upstream rate limit exhausted
            PersistenceUnavailableError: Database unreachable
        """
        return await self._ensure_flights.do(artist_id, lambda: self._ensure_artist(artist_id))

    async def _ensure_artist(self, artist_id: str) -> Artist:
        async with self._database.session_scope() as session:
            existing = await ArtistRepository(session).get(artist_id)
        if existing is not None:
            return existing

        timeout = self._settings.sync.artist_record_timeout
        try:
            return await asyncio.wait_for(self.record_artist_from_spotify(artist_id), timeout)
        except TimeoutError as e:
            raise UpstreamUnavailableError(
                f"Timed out after {timeout:.0f}s fetching artist {artist_id}"
            ) from e

    async def search_catalog(self, query: str) -> SearchResult | None:
        """Resolve a query and make sure the hit is cached.

        Artist hits are ensured; track hits are recorded together with their
        owning artist. If caching fails the bare {kind, id} is still returned.

        Returns:
            Search result, or None if nothing matched
        """
        lookup = await self._resolver.resolve_input(query, propagate_rate_limit=True)
        if lookup is None:
            return None

        try:
            if lookup.kind is EntityKind.ARTIST:
                artist = await self.ensure_artist_record(lookup.id)
                return SearchResult(
                    kind=EntityKind.ARTIST,
                    id=artist.id,
                    name=artist.name,
                    spi=artist.spi,
                    popularity=artist.popularity,
                    followers=artist.followers,
                )

            track = await self.record_track_from_spotify(lookup.id)
            if track.artist_id:
                await self.ensure_artist_record(track.artist_id)
            return SearchResult(
                kind=EntityKind.TRACK,
                id=track.id,
                name=track.name,
                spi=track.spi,
                popularity=track.popularity,
                artist_id=track.artist_id,
            )
        except (DomainException, TimeoutError) as e:
            logger.warning(
                f"Caching {lookup.kind.value} {lookup.id} failed ({type(e).__name__}), "
                f"returning bare reference"
            )
            return SearchResult(kind=lookup.kind, id=lookup.id)

    async def sync_artist(self, artist_id: str) -> ArtistSyncResult:
        """Manual full sync: artist, its snapshot, and its top tracks with snapshots.

        A failing track is logged and skipped; the others are still stored.
        """
        artist = await self.refresh_snapshots_for_artist(artist_id)

        top_tracks = await self._client.get_artist_top_tracks(artist.id)
        stored = 0
        for track in top_tracks:
            try:
                recorded = await self.record_track_from_spotify(track.id, artist_id=artist.id)
                await self.save_snapshot(track_id=recorded.id, popularity=recorded.popularity)
                stored += 1
            except DomainException:
                logger.warning(f"Failed to store track {track.id} during artist sync", exc_info=True)

        logger.info(f"Synced artist {artist.id}: {stored}/{len(top_tracks)} tracks stored")
        return ArtistSyncResult(artist_id=artist.id, stored_tracks=stored)
