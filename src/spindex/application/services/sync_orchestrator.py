"""Sync orchestrator - decides when the detail pages hit upstream.

Hey future me - this is the brain behind the artist and track pages. Every
detail request lands in one of three states:

- UNKNOWN (artist not in the DB): answer IMMEDIATELY with an "Unknown Artist"
  placeholder, queue an ingest request for the cron, and kick off background
  syncs. Never make the user wait on upstream for an artist we've never seen.
- CACHED-STALE (fewer than 5 cached tracks, or the best one older than 6h):
  refresh top tracks synchronously, bounded by an 8s timeout. On timeout or
  any upstream error we serve whatever is cached, even if that's nothing.
- CACHED-FRESH: zero upstream calls.

If the DATABASE is down (PersistenceUnavailableError), we skip all of the above
and build the page straight from upstream without writing anything. Only if
upstream ALSO fails does the caller see an error.

Background work goes through BackgroundTaskRunner, so repeated page views can't
stack up duplicate syncs for the same artist.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from spindex.application.services.catalog_service import CatalogService
from spindex.application.workers.background_tasks import BackgroundTaskRunner
from spindex.config import Settings
from spindex.domain.dtos import (
    ArtistDetail,
    ArtistStats,
    Pagination,
    TrackDetail,
    TrackStats,
)
from spindex.domain.entities import Artist, SnapshotPoint, Track
from spindex.domain.exceptions import (
    DomainException,
    ExternalServiceError,
    PersistenceUnavailableError,
    ValidationException,
)
from spindex.domain.ports import ICatalogClient
from spindex.infrastructure.integrations.spotify_client import (
    artist_from_spotify,
    top_image,
    track_from_spotify,
)
from spindex.infrastructure.persistence import (
    ArtistRepository,
    Database,
    IngestRequestRepository,
    TrackRepository,
)
from spindex.infrastructure.persistence.models import utc_day, utc_now

logger = logging.getLogger(__name__)

INGEST_SOURCE_FIRST_VIEW = "auto_first_view"
NOT_FOUND_STATUS_CODES = (400, 404)


def _paginate(tracks: list[Track], page: int, page_size: int) -> tuple[list[Track], Pagination]:
    start = (page - 1) * page_size
    return tracks[start : start + page_size], Pagination.for_total(page, page_size, len(tracks))


class SyncOrchestrator:
    """Builds artist/track detail views and schedules their background syncs."""

    def __init__(
        self,
        database: Database,
        client: ICatalogClient,
        catalog: CatalogService,
        runner: BackgroundTaskRunner,
        settings: Settings,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            database: Database with session_scope()
            client: Upstream catalog client
            catalog: Write path into the entity cache
            runner: Background runner with per-key dedup and cooldowns
            settings: Application settings (freshness window, timeouts)
            now: UTC clock (injectable for tests)
        """
        self._database = database
        self._client = client
        self._catalog = catalog
        self._runner = runner
        self._settings = settings
        self._now = now

    # =========================================================================
    # ARTIST DETAIL
    # =========================================================================

    async def get_artist_detail(
        self, artist_id: str, page: int = 1, page_size: int = 10
    ) -> ArtistDetail:
        """Get the artist page, serving from cache whenever possible.

        Args:
            artist_id: Spotify artist id
            page: 1-based page of the track list
            page_size: Tracks per page

        Returns:
            Artist detail (a placeholder for never-seen artists)

        Raises:
            ValidationException: Invalid page parameters
            ExternalServiceError: Database AND upstream both failed
        """
        if page < 1 or page_size < 1:
            raise ValidationException("page and page_size must be positive")

        try:
            return await self._artist_detail_from_cache(artist_id, page, page_size)
        except PersistenceUnavailableError:
            logger.warning(
                f"Database unavailable, serving artist {artist_id} straight from upstream",
                exc_info=True,
            )
            return await self._artist_detail_from_upstream(artist_id, page, page_size)

    async def _artist_detail_from_cache(
        self, artist_id: str, page: int, page_size: int
    ) -> ArtistDetail:
        async with self._database.session_scope() as session:
            artist = await ArtistRepository(session).get(artist_id)

        snapshots = await self._load_artist_snapshots(artist_id)
        was_created = artist is None
        stored = artist is not None

        if artist is None:
            artist = Artist.placeholder(artist_id)
            await self._enqueue_ingest(artist_id)
            self.schedule_artist_sync(artist_id)

        db_tracks = await self._load_cached_tracks(artist_id)
        tracks, refreshed = await self._pick_tracks(artist_id, stored, db_tracks)

        if stored and not artist.image_url:
            self._runner.submit(f"image:{artist_id}", lambda: self._backfill_image(artist_id))

        if stored and refreshed and tracks:
            fresh = list(tracks)
            self._runner.submit(
                f"store_tracks:{artist_id}", lambda: self._catalog.store_tracks(fresh)
            )

        has_tracks = bool(tracks) or bool(db_tracks)
        has_snapshots = bool(snapshots)

        if stored and not has_snapshots:
            popularity = artist.popularity
            self._runner.submit(
                f"artist_snapshot:{artist_id}",
                lambda: self._catalog.save_snapshot(artist_id=artist_id, popularity=popularity),
            )

        page_tracks, pagination = _paginate(tracks, page, page_size)
        return ArtistDetail(
            artist=artist,
            stats=ArtistStats(
                followers=artist.followers,
                popularity=artist.popularity,
                spi=artist.spi,
                is_first_indexed=was_created and not has_snapshots and not has_tracks,
                is_computing=not stored or (not has_snapshots and not has_tracks),
            ),
            tracks=page_tracks,
            snapshots=snapshots,
            pagination=pagination,
        )

    async def _pick_tracks(
        self, artist_id: str, stored: bool, db_tracks: list[Track]
    ) -> tuple[list[Track], bool]:
        """Choose between cached and freshly fetched top tracks.

        Returns:
            Tuple of (tracks to show, whether they came from upstream)
        """
        if stored and self._tracks_need_refresh(db_tracks):
            timeout = self._settings.sync.detail_refresh_timeout
            try:
                fetched = await asyncio.wait_for(
                    self._client.get_artist_top_tracks(artist_id), timeout
                )
                return fetched, True
            except (DomainException, TimeoutError) as e:
                logger.warning(
                    f"Top tracks refresh for {artist_id} failed ({type(e).__name__}), "
                    f"using {len(db_tracks)} cached tracks"
                )
                return db_tracks, False

        if not stored and not db_tracks:
            self.schedule_top_tracks_sync(artist_id)
            return [], False

        logger.debug(f"Using {len(db_tracks)} cached tracks for artist {artist_id}")
        return db_tracks, False

    def _tracks_need_refresh(self, db_tracks: list[Track]) -> bool:
        if len(db_tracks) < self._settings.sync.min_cached_tracks:
            return True
        freshness = timedelta(hours=self._settings.sync.track_freshness_hours)
        return self._now() - db_tracks[0].updated_at > freshness

    async def _artist_detail_from_upstream(
        self, artist_id: str, page: int, page_size: int
    ) -> ArtistDetail:
        data, top_tracks = await asyncio.gather(
            self._client.get_artist(artist_id),
            self._client.get_artist_top_tracks(artist_id),
        )
        artist = artist_from_spotify(data)
        page_tracks, pagination = _paginate(top_tracks, page, page_size)
        return ArtistDetail(
            artist=artist,
            stats=ArtistStats(
                followers=artist.followers,
                popularity=artist.popularity,
                spi=artist.spi,
            ),
            tracks=page_tracks,
            snapshots=[],
            pagination=pagination,
            source="upstream",
        )

    async def _load_artist_snapshots(self, artist_id: str) -> list[SnapshotPoint]:
        try:
            return await self._catalog.get_snapshots_for_artist(artist_id)
        except DomainException:
            logger.warning(f"Could not load snapshots for artist {artist_id}", exc_info=True)
            return []

    async def _load_cached_tracks(self, artist_id: str) -> list[Track]:
        try:
            async with self._database.session_scope() as session:
                return await TrackRepository(session).list_top_for_artist(artist_id, limit=10)
        except DomainException:
            logger.warning(f"Could not load cached tracks for artist {artist_id}", exc_info=True)
            return []

    async def _enqueue_ingest(self, artist_id: str) -> None:
        try:
            async with self._database.session_scope() as session:
                queued = await IngestRequestRepository(session).enqueue(
                    artist_id, source=INGEST_SOURCE_FIRST_VIEW
                )
        except DomainException:
            logger.warning(f"Could not queue ingest request for {artist_id}", exc_info=True)
            return
        if queued:
            logger.info(f"Queued ingest request for newly seen artist {artist_id}")

    async def _backfill_image(self, artist_id: str) -> None:
        image_url = top_image((await self._client.get_artist(artist_id)).get("images"))
        if not image_url:
            return
        async with self._database.session_scope() as session:
            await ArtistRepository(session).update_image(artist_id, image_url)
        logger.debug(f"Backfilled image for artist {artist_id}")

    # =========================================================================
    # BACKGROUND SYNCS
    # =========================================================================

    def schedule_artist_sync(self, artist_id: str) -> bool:
        """Fetch and store the artist in the background.

        Returns:
            True if a sync was scheduled (False if running or cooling down)
        """
        return self._runner.submit(
            f"artist_sync:{artist_id}", lambda: self._catalog.ensure_artist_record(artist_id)
        )

    def schedule_top_tracks_sync(self, artist_id: str) -> bool:
        """Fetch and store the artist's top tracks in the background.

        Also schedules the artist sync, so the tracks never stay ownerless.
        """
        return self._runner.submit(
            f"top_tracks:{artist_id}", lambda: self._sync_top_tracks(artist_id)
        )

    async def _sync_top_tracks(self, artist_id: str) -> None:
        self.schedule_artist_sync(artist_id)
        tracks = await self._client.get_artist_top_tracks(artist_id)
        stored = await self._catalog.store_tracks(tracks)
        logger.info(f"Stored {stored} top tracks for artist {artist_id}")

    # =========================================================================
    # TRACK DETAIL
    # =========================================================================

    async def get_track_detail(self, track_id: str) -> TrackDetail | None:
        """Get the track page.

        Returns:
            Track detail, or None if upstream doesn't know the track

        Raises:
            ExternalServiceError: Database AND upstream both failed
        """
        try:
            return await self._track_detail_from_cache(track_id)
        except PersistenceUnavailableError:
            logger.warning(
                f"Database unavailable, serving track {track_id} straight from upstream",
                exc_info=True,
            )
            return await self._track_detail_from_upstream(track_id)

    async def _track_detail_from_cache(self, track_id: str) -> TrackDetail | None:
        async with self._database.session_scope() as session:
            track = await TrackRepository(session).get(track_id)

        if track is None:
            try:
                track = await self._catalog.record_track_from_spotify(track_id)
            except ExternalServiceError as e:
                if e.status_code in NOT_FOUND_STATUS_CODES:
                    return None
                raise

        artist, snapshots = await asyncio.gather(
            self._ensure_artist_quietly(track.artist_id),
            self._catalog.get_snapshots_for_track(track.id),
        )

        today = utc_day(self._now())
        if not any(utc_day(point.captured_at) == today for point in snapshots):
            popularity = track.popularity
            track_key = track.id
            self._runner.submit(
                f"track_snapshot:{track_key}",
                lambda: self._catalog.save_snapshot(track_id=track_key, popularity=popularity),
            )

        return TrackDetail(
            track=track,
            artist=artist,
            stats=TrackStats(
                popularity=track.popularity, spi=track.spi, duration_ms=track.duration_ms
            ),
            snapshots=snapshots,
        )

    async def _ensure_artist_quietly(self, artist_id: str | None) -> Artist | None:
        if not artist_id:
            return None
        try:
            return await self._catalog.ensure_artist_record(artist_id)
        except DomainException:
            logger.warning(f"Could not ensure artist {artist_id} for track page", exc_info=True)
            return None

    async def _track_detail_from_upstream(self, track_id: str) -> TrackDetail | None:
        try:
            data = await self._client.get_track(track_id)
        except ExternalServiceError as e:
            if e.status_code in NOT_FOUND_STATUS_CODES:
                return None
            raise
        track = track_from_spotify(data)
        return TrackDetail(
            track=track,
            artist=None,
            stats=TrackStats(
                popularity=track.popularity, spi=track.spi, duration_ms=track.duration_ms
            ),
            snapshots=[],
            source="upstream",
        )
