"""Repository implementations for domain entities."""

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any

from sqlalchemy import ColumnElement, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from spindex.domain.entities import (
    Artist,
    CronLease,
    EventRecord,
    IngestRequest,
    IngestStatus,
    SnapshotPoint,
    Track,
    calculate_spi,
)

from .models import (
    ArtistModel,
    ArtistPopularitySnapshotModel,
    CronLockModel,
    EventLogModel,
    IngestRequestModel,
    TrackModel,
    TrackPopularitySnapshotModel,
    ensure_utc_aware,
    utc_day,
    utc_now,
)


def _to_artist(model: ArtistModel) -> Artist:
    return Artist(
        id=model.id,
        name=model.name,
        popularity=model.popularity,
        spi=model.spi,
        image_url=model.image_url,
        spotify_url=model.spotify_url,
        genres=list(model.genres or []),
        followers=model.followers,
        created_at=ensure_utc_aware(model.created_at),
        updated_at=ensure_utc_aware(model.updated_at),
    )


def _to_track(model: TrackModel) -> Track:
    return Track(
        id=model.id,
        name=model.name,
        artist_id=model.artist_id,
        album=model.album,
        image_url=model.image_url,
        preview_url=model.preview_url,
        spotify_url=model.spotify_url,
        duration_ms=model.duration_ms,
        popularity=model.popularity,
        spi=model.spi,
        created_at=ensure_utc_aware(model.created_at),
        updated_at=ensure_utc_aware(model.updated_at),
    )


def _to_event(model: EventLogModel) -> EventRecord:
    return EventRecord(
        id=model.id,
        type=model.type,
        artist_id=model.artist_id,
        artist_name=model.artist_name,
        track_id=model.track_id,
        track_name=model.track_name,
        input=model.input,
        user_agent=model.user_agent,
        ip=model.ip,
        created_at=ensure_utc_aware(model.created_at),
    )


def _to_ingest_request(model: IngestRequestModel) -> IngestRequest:
    return IngestRequest(
        id=model.id,
        artist_id=model.artist_id,
        source=model.source,
        status=IngestStatus(model.status),
        claimed_by=model.claimed_by,
        claimed_at=ensure_utc_aware(model.claimed_at) if model.claimed_at else None,
        created_at=ensure_utc_aware(model.created_at),
    )


def _dialect_insert(session: AsyncSession, model: type[Any]) -> Any:
    """INSERT construct with ON CONFLICT support for the bound dialect."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _contains_ci(column: Any, text: str) -> ColumnElement[bool]:
    """Case-insensitive substring match with LIKE wildcards escaped."""
    return func.lower(column).contains(text.lower(), autoescape=True)


class ArtistRepository:
    """SQLAlchemy repository for cached artists."""

    # Hey future me, this is the Repository pattern! Each repo gets its own AsyncSession injected
    # by the caller. The session is NOT committed here - that happens in Database.session_scope().
    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    async def get(self, artist_id: str) -> Artist | None:
        """Get an artist by Spotify id."""
        model = await self.session.get(ArtistModel, artist_id)
        return _to_artist(model) if model else None

    # Yo, upsert is a full overwrite of every mutable field. created_at is only set on insert,
    # updated_at is bumped every time (that's what the staleness sweep orders by). spi is
    # re-derived from popularity here so the two can never disagree in the table.
    async def upsert(self, artist: Artist, now: datetime | None = None) -> tuple[Artist, bool]:
        """Insert or overwrite an artist.

        Args:
            artist: Artist with fresh upstream data
            now: Timestamp to stamp (defaults to current UTC time)

        Returns:
            Tuple of (stored artist, created flag)
        """
        now = now or utc_now()
        model = await self.session.get(ArtistModel, artist.id)
        created = model is None
        if model is None:
            model = ArtistModel(id=artist.id, created_at=now)
            self.session.add(model)

        model.name = artist.name
        model.popularity = artist.popularity
        model.spi = calculate_spi(artist.popularity)
        model.image_url = artist.image_url
        model.spotify_url = artist.spotify_url
        model.genres = list(artist.genres)
        model.followers = artist.followers
        model.updated_at = now
        await self.session.flush()
        return _to_artist(model), created

    async def update_image(self, artist_id: str, image_url: str) -> bool:
        """Set only the image of an artist (image backfill)."""
        result = await self.session.execute(
            update(ArtistModel)
            .where(ArtistModel.id == artist_id)
            .values(image_url=image_url)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def find_by_name_contains(self, text: str) -> Artist | None:
        """Find the first artist whose name contains text (case-insensitive)."""
        stmt = select(ArtistModel).where(_contains_ci(ArtistModel.name, text)).limit(1)
        result = await self.session.execute(stmt)
        model = result.scalars().first()
        return _to_artist(model) if model else None

    async def list_ids_by_staleness(self, exclude: Iterable[str] = ()) -> list[str]:
        """List artist ids, least recently updated first."""
        stmt = select(ArtistModel.id).order_by(ArtistModel.updated_at.asc())
        excluded = list(exclude)
        if excluded:
            stmt = stmt.where(ArtistModel.id.not_in(excluded))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class TrackRepository:
    """SQLAlchemy repository for cached tracks."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    async def get(self, track_id: str) -> Track | None:
        """Get a track by Spotify id."""
        model = await self.session.get(TrackModel, track_id)
        return _to_track(model) if model else None

    async def upsert(self, track: Track, now: datetime | None = None) -> tuple[Track, bool]:
        """Insert or overwrite a track.

        Returns:
            Tuple of (stored track, created flag)
        """
        now = now or utc_now()
        model = await self.session.get(TrackModel, track.id)
        created = model is None
        if model is None:
            model = TrackModel(id=track.id, created_at=now)
            self.session.add(model)

        model.name = track.name
        model.artist_id = track.artist_id
        model.album = track.album
        model.image_url = track.image_url
        model.preview_url = track.preview_url
        model.spotify_url = track.spotify_url
        model.duration_ms = track.duration_ms
        model.popularity = track.popularity
        model.spi = calculate_spi(track.popularity)
        model.updated_at = now
        await self.session.flush()
        return _to_track(model), created

    async def list_top_for_artist(self, artist_id: str, limit: int = 10) -> list[Track]:
        """List an artist's cached tracks, most popular first."""
        stmt = (
            select(TrackModel)
            .where(TrackModel.artist_id == artist_id)
            .order_by(TrackModel.popularity.desc(), TrackModel.name.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [_to_track(model) for model in result.scalars().all()]

    async def find_by_name_contains(self, text: str) -> Track | None:
        """Find the first track whose name contains text (case-insensitive)."""
        stmt = select(TrackModel).where(_contains_ci(TrackModel.name, text)).limit(1)
        result = await self.session.execute(stmt)
        model = result.scalars().first()
        return _to_track(model) if model else None


# Hey future me - the day bucket is the UTC calendar day of taken_at (the taken_on column).
# save_* is an INSERT .. ON CONFLICT (owner, taken_on) DO UPDATE, which gives "at most one
# snapshot per owner per UTC day, last write wins" even across concurrent sessions.
class SnapshotRepository:
    """Repository for artist and track popularity snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    # Hey future me - the detail page's background snapshot and the cron sweep can write the same
    # owner on the same day from two sessions. A SELECT-then-INSERT would let both miss and the
    # second INSERT would hit the unique (owner, taken_on) constraint. ON CONFLICT DO UPDATE makes
    # the database settle it: whoever commits last wins the day's row.
    async def _upsert_day(
        self,
        model: type[ArtistPopularitySnapshotModel] | type[TrackPopularitySnapshotModel],
        owner_column: str,
        owner_id: str,
        popularity: int,
        taken_at: datetime | None,
    ) -> bool:
        taken_at = ensure_utc_aware(taken_at or utc_now()).astimezone(UTC)
        day = utc_day(taken_at)
        owner = getattr(model, owner_column)

        existing = await self.session.execute(
            select(model.id).where(owner == owner_id, model.taken_on == day).limit(1)
        )
        created = existing.first() is None

        insert_stmt = _dialect_insert(self.session, model).values(
            id=str(uuid.uuid4()),
            popularity=popularity,
            taken_at=taken_at,
            taken_on=day,
            **{owner_column: owner_id},
        )
        excluded = insert_stmt.excluded
        await self.session.execute(
            insert_stmt.on_conflict_do_update(
                index_elements=[owner_column, "taken_on"],
                set_={"popularity": excluded.popularity, "taken_at": excluded.taken_at},
            )
        )
        return created

    async def save_artist_snapshot(
        self, artist_id: str, popularity: int, taken_at: datetime | None = None
    ) -> bool:
        """Write today's artist snapshot.

        Returns:
            True if a new row was inserted, False if the day's row was updated
        """
        return await self._upsert_day(
            ArtistPopularitySnapshotModel, "artist_id", artist_id, popularity, taken_at
        )

    async def save_track_snapshot(
        self, track_id: str, popularity: int, taken_at: datetime | None = None
    ) -> bool:
        """Write today's track snapshot.

        Returns:
            True if a new row was inserted, False if the day's row was updated
        """
        return await self._upsert_day(
            TrackPopularitySnapshotModel, "track_id", track_id, popularity, taken_at
        )

    # Listen up, we take the NEWEST `limit` rows and hand them back oldest-first, so charts show
    # the most recent window instead of freezing on the first 120 days ever recorded.
    async def list_for_artist(self, artist_id: str, limit: int = 120) -> list[SnapshotPoint]:
        """Artist popularity series, ascending by taken_at."""
        stmt = (
            select(ArtistPopularitySnapshotModel)
            .where(ArtistPopularitySnapshotModel.artist_id == artist_id)
            .order_by(ArtistPopularitySnapshotModel.taken_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        models = (await self.session.execute(stmt)).scalars().all()
        return [
            SnapshotPoint(captured_at=ensure_utc_aware(m.taken_at), popularity=m.popularity)
            for m in reversed(models)
        ]

    async def list_for_track(self, track_id: str, limit: int = 120) -> list[SnapshotPoint]:
        """Track popularity series, ascending by taken_at."""
        stmt = (
            select(TrackPopularitySnapshotModel)
            .where(TrackPopularitySnapshotModel.track_id == track_id)
            .order_by(TrackPopularitySnapshotModel.taken_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        models = (await self.session.execute(stmt)).scalars().all()
        return [
            SnapshotPoint(captured_at=ensure_utc_aware(m.taken_at), popularity=m.popularity)
            for m in reversed(models)
        ]

    async def has_track_snapshot_on(self, track_id: str, day: date) -> bool:
        """Check if a track already has a snapshot for a UTC day."""
        stmt = select(TrackPopularitySnapshotModel.id).where(
            TrackPopularitySnapshotModel.track_id == track_id,
            TrackPopularitySnapshotModel.taken_on == day,
        )
        return (await self.session.execute(stmt)).first() is not None


@dataclass(frozen=True)
class EventFilter:
    """Filters for listing the event log."""

    type: str | None = None
    artist_id: str | None = None
    track_id: str | None = None
    since: datetime | None = None
    until: datetime | None = None


class EventLogRepository:
    """Repository for the user interaction event log."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    async def add(self, event: EventRecord) -> None:
        """Append an event."""
        self.session.add(
            EventLogModel(
                id=event.id,
                type=event.type,
                artist_id=event.artist_id,
                artist_name=event.artist_name,
                track_id=event.track_id,
                track_name=event.track_name,
                input=event.input,
                user_agent=event.user_agent,
                ip=event.ip,
                created_at=event.created_at,
            )
        )
        await self.session.flush()

    async def exists_identical_since(self, event: EventRecord, since: datetime) -> bool:
        """Check for an identical event (same type, ids, input, client) after since."""

        def same(column: Any, value: str | None) -> ColumnElement[bool]:
            return column.is_(None) if value is None else column == value

        stmt = (
            select(EventLogModel.id)
            .where(
                EventLogModel.type == event.type,
                same(EventLogModel.artist_id, event.artist_id),
                same(EventLogModel.track_id, event.track_id),
                same(EventLogModel.input, event.input),
                same(EventLogModel.user_agent, event.user_agent),
                same(EventLogModel.ip, event.ip),
                EventLogModel.created_at >= since,
            )
            .limit(1)
        )
        return (await self.session.execute(stmt)).first() is not None

    def _filtered(self, stmt: Any, filters: EventFilter) -> Any:
        if filters.type:
            stmt = stmt.where(EventLogModel.type == filters.type)
        if filters.artist_id:
            stmt = stmt.where(EventLogModel.artist_id == filters.artist_id)
        if filters.track_id:
            stmt = stmt.where(EventLogModel.track_id == filters.track_id)
        if filters.since:
            stmt = stmt.where(
                EventLogModel.created_at >= ensure_utc_aware(filters.since).astimezone(UTC)
            )
        if filters.until:
            stmt = stmt.where(
                EventLogModel.created_at <= ensure_utc_aware(filters.until).astimezone(UTC)
            )
        return stmt

    async def list_events(
        self, filters: EventFilter, offset: int = 0, limit: int = 20
    ) -> tuple[list[EventRecord], int]:
        """List events newest first.

        Returns:
            Tuple of (page of events, total matching)
        """
        count_stmt = self._filtered(select(func.count(EventLogModel.id)), filters)
        total = int((await self.session.execute(count_stmt)).scalar_one())

        stmt = self._filtered(select(EventLogModel), filters)
        stmt = stmt.order_by(EventLogModel.created_at.desc()).offset(offset).limit(limit)
        models = (await self.session.execute(stmt)).scalars().all()
        return [_to_event(m) for m in models], total

    async def count_by_type(self, filters: EventFilter | None = None) -> dict[str, int]:
        """Count events grouped by type."""
        stmt = select(EventLogModel.type, func.count(EventLogModel.id)).group_by(
            EventLogModel.type
        )
        stmt = self._filtered(stmt, filters or EventFilter())
        rows = (await self.session.execute(stmt)).all()
        return {row[0]: int(row[1]) for row in rows}

    async def daily_counts(
        self, since: datetime, filters: EventFilter | None = None
    ) -> dict[str, int]:
        """Count events per calendar day (ISO date string) since a timestamp."""
        day = func.date(EventLogModel.created_at)
        stmt = select(day, func.count(EventLogModel.id)).where(EventLogModel.created_at >= since)
        stmt = self._filtered(stmt, filters or EventFilter())
        stmt = stmt.group_by(day).order_by(day)
        rows = (await self.session.execute(stmt)).all()
        return {str(row[0]): int(row[1]) for row in rows}

    async def top_artists(
        self, filters: EventFilter | None = None, limit: int = 10
    ) -> list[tuple[str, str | None, int]]:
        """Most frequent artists in the log as (artist_id, artist_name, count)."""
        hits = func.count(EventLogModel.id)
        stmt = select(EventLogModel.artist_id, func.max(EventLogModel.artist_name), hits).where(
            EventLogModel.artist_id.is_not(None)
        )
        stmt = self._filtered(stmt, filters or EventFilter())
        stmt = stmt.group_by(EventLogModel.artist_id).order_by(hits.desc()).limit(limit)
        rows = (await self.session.execute(stmt)).all()
        return [(row[0], row[1], int(row[2])) for row in rows]

    async def recent_track_ids(
        self, types: Iterable[str], since: datetime, limit: int
    ) -> list[str]:
        """Distinct track ids with matching events since a timestamp, most recent first."""
        stmt = (
            select(EventLogModel.track_id)
            .where(
                EventLogModel.type.in_(list(types)),
                EventLogModel.track_id.is_not(None),
                EventLogModel.created_at >= since,
            )
            .group_by(EventLogModel.track_id)
            .order_by(func.max(EventLogModel.created_at).desc())
            .limit(limit)
        )
        return [row[0] for row in (await self.session.execute(stmt)).all()]


class IngestRequestRepository:
    """Claim/ack queue of artists waiting for a backfill."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    async def enqueue(self, artist_id: str, source: str = "auto_first_view") -> bool:
        """Queue an artist unless it is already waiting.

        Returns:
            True if a new request was created
        """
        existing = await self.session.execute(
            select(IngestRequestModel.id)
            .where(IngestRequestModel.artist_id == artist_id)
            .limit(1)
        )
        if existing.first() is not None:
            return False
        self.session.add(
            IngestRequestModel(
                id=str(uuid.uuid4()),
                artist_id=artist_id,
                source=source,
                status=IngestStatus.PENDING.value,
            )
        )
        await self.session.flush()
        return True

    # Hey future me - a claim older than stale_before belongs to a run that died without acking.
    # Those rows are fair game again; otherwise a crash mid-run would strand them forever.
    async def claim_batch(
        self,
        owner: str,
        limit: int,
        stale_before: datetime,
        now: datetime | None = None,
    ) -> list[IngestRequest]:
        """Claim the oldest pending (or abandoned) requests for owner."""
        now = now or utc_now()
        stmt = (
            select(IngestRequestModel)
            .where(
                or_(
                    IngestRequestModel.status == IngestStatus.PENDING.value,
                    IngestRequestModel.claimed_at < stale_before,
                )
            )
            .order_by(IngestRequestModel.created_at.asc())
            .limit(limit)
        )
        models = (await self.session.execute(stmt)).scalars().all()
        for model in models:
            model.status = IngestStatus.CLAIMED.value
            model.claimed_by = owner
            model.claimed_at = now
        await self.session.flush()
        return [_to_ingest_request(m) for m in models]

    async def ack(self, owner: str, request_ids: Iterable[str]) -> int:
        """Delete requests this owner claimed.

        Returns:
            Number of deleted rows
        """
        ids = list(request_ids)
        if not ids:
            return 0
        result = await self.session.execute(
            delete(IngestRequestModel).where(
                IngestRequestModel.id.in_(ids),
                IngestRequestModel.claimed_by == owner,
            )
        )
        return int(result.rowcount or 0)  # type: ignore[attr-defined]

    async def list_pending_artist_ids(self) -> list[str]:
        """Artist ids of requests not yet claimed, oldest first."""
        stmt = (
            select(IngestRequestModel.artist_id)
            .where(IngestRequestModel.status == IngestStatus.PENDING.value)
            .order_by(IngestRequestModel.created_at.asc())
        )
        return list((await self.session.execute(stmt)).scalars().all())


# Listen up, the lock row is NEVER deleted: release just expires it. That keeps the fencing
# counter monotonic across runs, so a zombie holder with an old token can be recognised.
class CronLockRepository:
    """Named lease with owner token and fencing counter."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    async def get(self, name: str) -> CronLease | None:
        """Get the current lease row (held or expired), re-read from the database."""
        model = await self.session.get(CronLockModel, name, populate_existing=True)
        if model is None:
            return None
        return CronLease(
            name=model.name,
            owner=model.owner,
            fencing_token=model.fencing_token,
            acquired_at=ensure_utc_aware(model.acquired_at),
            expires_at=ensure_utc_aware(model.expires_at),
        )

    async def try_acquire(
        self, name: str, owner: str, ttl: timedelta, now: datetime | None = None
    ) -> CronLease | None:
        """Acquire the lease if free or expired.

        Returns:
            The lease, or None if someone else holds an unexpired one
        """
        now = now or utc_now()
        expires_at = now + ttl

        # Conditional UPDATE: only one contender can flip an expired row.
        result = await self.session.execute(
            update(CronLockModel)
            .where(CronLockModel.name == name, CronLockModel.expires_at <= now)
            .values(
                owner=owner,
                fencing_token=CronLockModel.fencing_token + 1,
                acquired_at=now,
                expires_at=expires_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:  # type: ignore[attr-defined]
            return await self.get(name)

        if await self.get(name) is not None:
            return None

        self.session.add(
            CronLockModel(
                name=name, owner=owner, fencing_token=1, acquired_at=now, expires_at=expires_at
            )
        )
        try:
            await self.session.flush()
        except IntegrityError:
            # Lost the race to create the very first row.
            await self.session.rollback()
            return None
        return await self.get(name)

    async def release(self, name: str, owner: str, now: datetime | None = None) -> bool:
        """Expire the lease if owner still holds it.

        Returns:
            True if the lease was released
        """
        now = now or utc_now()
        result = await self.session.execute(
            update(CronLockModel)
            .where(CronLockModel.name == name, CronLockModel.owner == owner)
            .values(expires_at=now)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)  # type: ignore[attr-defined]
