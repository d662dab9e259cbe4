"""SQLAlchemy ORM models for spindex."""

import uuid
from datetime import UTC, date, datetime

import sqlalchemy as sa
from sqlalchemy import JSON, Float, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Hey future me, utc_now() ensures ALL timestamps are UTC! Never use datetime.now() without
# timezone - that's "naive" datetime and the day-bucketing of snapshots depends on UTC days.
def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


# Hey future me - SQLite doesn't preserve timezone info! When we store UTC datetimes, they come
# back as "naive" (no tzinfo). This helper ensures we can safely compare with timezone-aware
# datetimes by attaching UTC if missing. ALWAYS use this when comparing datetimes from DB
# with datetime.now(UTC) to avoid "can't compare offset-naive and offset-aware" TypeError!
def ensure_utc_aware(dt: datetime) -> datetime:
    """Ensure datetime is UTC-aware, assuming naive datetimes are UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def utc_day(moment: datetime) -> date:
    """UTC calendar day of a timestamp (naive timestamps are taken as UTC)."""
    return ensure_utc_aware(moment).astimezone(UTC).date()


class Base(DeclarativeBase):
    """Base class for all ORM models.

    All models inherit from this to use the same metadata registry.
    """

    pass


# Listen up, the id is Spotify's OWN id (22 base62 chars today), never generated locally. That is
# what makes upsert-by-id well defined. The func.lower(name) index backs the case-insensitive
# "contains" lookup the resolver does before it spends an upstream call.
class ArtistModel(Base):
    """Cached Spotify artist."""

    __tablename__ = "artists"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    popularity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spi: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    image_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    spotify_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    genres: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    followers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        Index("ix_artists_name_lower", func.lower(name)),
        Index("ix_artists_updated_at", "updated_at"),
    )


# Hey future me - artist_id deliberately has NO foreign key! A track fetched from search can
# belong to an artist we haven't cached yet. We tolerate the dangling id and backfill lazily.
class TrackModel(Base):
    """Cached Spotify track."""

    __tablename__ = "tracks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    artist_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    album: Mapped[str | None] = mapped_column(String(255), nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    preview_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    spotify_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    popularity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spi: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (Index("ix_tracks_name_lower", func.lower(name)),)


# Yo, taken_on is the UTC calendar day of taken_at, stored separately so the schema itself can
# enforce "at most one snapshot per owner per UTC day" with a UNIQUE constraint. The repository
# still does find-then-update first; the constraint just makes the invariant impossible to break.
# SPI is NOT stored here - it's recomputed from popularity on read so it can't drift.
class ArtistPopularitySnapshotModel(Base):
    """Daily popularity point of an artist."""

    __tablename__ = "artist_popularity_snapshots"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    artist_id: Mapped[str] = mapped_column(String(64), nullable=False)
    taken_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )
    taken_on: Mapped[date] = mapped_column(sa.Date, nullable=False)
    popularity: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("artist_id", "taken_on", name="uq_artist_snapshot_day"),
        Index("ix_artist_snapshots_artist_taken", "artist_id", "taken_at"),
    )


class TrackPopularitySnapshotModel(Base):
    """Daily popularity point of a track."""

    __tablename__ = "track_popularity_snapshots"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    track_id: Mapped[str] = mapped_column(String(64), nullable=False)
    taken_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )
    taken_on: Mapped[date] = mapped_column(sa.Date, nullable=False)
    popularity: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("track_id", "taken_on", name="uq_track_snapshot_day"),
        Index("ix_track_snapshots_track_taken", "track_id", "taken_at"),
    )


class EventLogModel(Base):
    """Append-only user interaction log (plus cron run summaries)."""

    __tablename__ = "event_log"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # Type: search, artist_view, track_view, track_open, artist_api, track_api, cron_execution
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    artist_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    artist_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    track_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    track_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    input: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (Index("ix_event_log_type_created", "type", "created_at"),)


# Hey future me - this is the dedicated ingest queue! Claim/ack like BackgroundJob locking:
# the cron claims a batch under its owner token (claimed_by/claimed_at), processes it, then
# deletes (acks) exactly the rows it claimed. A crashed run leaves rows "claimed"; once the
# claim is older than the lock TTL they're considered abandoned and get claimed again.
class IngestRequestModel(Base):
    """Queue of artists discovered on first view that still need a backfill."""

    __tablename__ = "ingest_requests"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    artist_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(50), nullable=False, default="auto_first_view")
    # Status: pending, claimed
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    claimed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        Index("ix_ingest_requests_status_created", "status", "created_at"),
    )


class CronLockModel(Base):
    """Named mutual-exclusion lease with owner token and fencing counter."""

    __tablename__ = "cron_locks"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    owner: Mapped[str] = mapped_column(String(100), nullable=False)
    fencing_token: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    acquired_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False
    )
