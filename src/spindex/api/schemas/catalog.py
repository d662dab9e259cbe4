"""API schemas for artists, tracks, search and the snapshot cron."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from spindex.domain.entities import EntityKind


class ResolveResponse(BaseModel):
    """Response of GET /api/resolve."""

    ok: bool = True
    kind: EntityKind = Field(..., description="artist or track")
    id: str = Field(..., description="Spotify id")
    url: str | None = Field(default=None, description="Spotify permalink if known")


class SearchResponse(BaseModel):
    """Response of GET /api/search."""

    model_config = ConfigDict(from_attributes=True)

    ok: bool = True
    kind: EntityKind
    id: str
    name: str | None = None
    spi: float | None = None
    popularity: int | None = None
    followers: int | None = None
    artist_id: str | None = Field(default=None, description="Owning artist of a track hit")


class ArtistSchema(BaseModel):
    """Cached (or placeholder) artist."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    popularity: int
    spi: float
    image_url: str | None = None
    spotify_url: str | None = None
    genres: list[str] = Field(default_factory=list)
    followers: int = 0
    created_at: datetime
    updated_at: datetime


class TrackSchema(BaseModel):
    """Cached track."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    artist_id: str | None = None
    album: str | None = None
    image_url: str | None = None
    preview_url: str | None = None
    spotify_url: str | None = None
    duration_ms: int = 0
    popularity: int = 0
    spi: float = 0.0


class SnapshotSchema(BaseModel):
    """One point of a popularity chart."""

    model_config = ConfigDict(from_attributes=True)

    captured_at: datetime
    popularity: int
    spi: float


class PaginationSchema(BaseModel):
    """Page window."""

    model_config = ConfigDict(from_attributes=True)

    page: int
    page_size: int
    total: int
    total_pages: int


class ArtistStatsSchema(BaseModel):
    """Headline numbers of the artist page."""

    model_config = ConfigDict(from_attributes=True)

    followers: int
    popularity: int
    spi: float
    is_first_indexed: bool = Field(description="First time anyone looked at this artist")
    is_computing: bool = Field(description="Artist is still being imported")


class ArtistDetailSchema(BaseModel):
    """Artist page payload."""

    model_config = ConfigDict(from_attributes=True)

    artist: ArtistSchema
    stats: ArtistStatsSchema
    tracks: list[TrackSchema]
    snapshots: list[SnapshotSchema]
    pagination: PaginationSchema
    source: str = Field(description="cache or upstream (database unavailable)")


class ArtistDetailResponse(BaseModel):
    """Response of GET /api/artists/{id}."""

    ok: bool = True
    data: ArtistDetailSchema


class TrackStatsSchema(BaseModel):
    """Headline numbers of the track page."""

    model_config = ConfigDict(from_attributes=True)

    popularity: int
    spi: float
    duration_ms: int


class TrackDetailSchema(BaseModel):
    """Track page payload."""

    model_config = ConfigDict(from_attributes=True)

    track: TrackSchema
    artist: ArtistSchema | None = None
    stats: TrackStatsSchema
    snapshots: list[SnapshotSchema]
    source: str


class TrackDetailResponse(BaseModel):
    """Response of GET /api/tracks/{id}."""

    ok: bool = True
    data: TrackDetailSchema


class ArtistSyncRequest(BaseModel):
    """Body of POST /api/artists/sync."""

    artist_id: str = Field(..., min_length=1, description="Spotify artist id")


class ArtistSyncResponse(BaseModel):
    """Response of POST /api/artists/sync."""

    ok: bool = True
    artist_id: str
    stored_tracks: int


class CronRunSchema(BaseModel):
    """Summary of one snapshot cron run."""

    model_config = ConfigDict(from_attributes=True)

    processed: int
    succeeded: int
    failed: int
    duration_ms: int
    requested: int
    tracks_processed: int
    tracks_succeeded: int
    tracks_failed: int
    artist_ids: list[str]
    errors: list[dict[str, Any]]


class CronRunResponse(BaseModel):
    """Response of POST /api/cron/snapshot."""

    ok: bool = True
    data: CronRunSchema
    timestamp: datetime
