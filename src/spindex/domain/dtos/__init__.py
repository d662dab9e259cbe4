"""Result objects returned by the application services.

These are plain dataclasses; the API layer turns them into response schemas.
"""

import math
from dataclasses import dataclass, field
from typing import Any

from spindex.domain.entities import Artist, EntityKind, EventRecord, SnapshotPoint, Track


@dataclass(frozen=True)
class Pagination:
    """Page window over a result list."""

    page: int
    page_size: int
    total: int
    total_pages: int

    @classmethod
    def for_total(cls, page: int, page_size: int, total: int) -> "Pagination":
        """Build pagination with at least one page."""
        return cls(
            page=page,
            page_size=page_size,
            total=total,
            total_pages=max(1, math.ceil(total / page_size)) if page_size else 1,
        )


@dataclass(frozen=True)
class ArtistStats:
    """Headline numbers of the artist page.

    is_computing drives the "still importing" indicator; is_first_indexed is
    True the very first time anyone looks at the artist.
    """

    followers: int
    popularity: int
    spi: float
    is_first_indexed: bool = False
    is_computing: bool = False


@dataclass
class ArtistDetail:
    """Everything the artist page needs."""

    artist: Artist
    stats: ArtistStats
    tracks: list[Track]
    snapshots: list[SnapshotPoint]
    pagination: Pagination
    # "cache" when served through the database, "upstream" on the DB-less fallback
    source: str = "cache"


@dataclass(frozen=True)
class TrackStats:
    """Headline numbers of the track page."""

    popularity: int
    spi: float
    duration_ms: int


@dataclass
class TrackDetail:
    """Everything the track page needs."""

    track: Track
    artist: Artist | None
    stats: TrackStats
    snapshots: list[SnapshotPoint]
    source: str = "cache"


@dataclass(frozen=True)
class SearchResult:
    """Outcome of a catalog search.

    When the database is unavailable only kind and id are filled in, which
    is still enough to navigate to the detail page.
    """

    kind: EntityKind
    id: str
    name: str | None = None
    spi: float | None = None
    popularity: int | None = None
    followers: int | None = None
    artist_id: str | None = None


@dataclass(frozen=True)
class ArtistSyncResult:
    """Outcome of a manual artist sync."""

    artist_id: str
    stored_tracks: int


@dataclass
class CronRunSummary:
    """Counters of one snapshot cron run."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    duration_ms: int = 0
    requested: int = 0
    tracks_processed: int = 0
    tracks_succeeded: int = 0
    tracks_failed: int = 0
    artist_ids: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    error: str | None = None

    def to_log_payload(self) -> dict[str, Any]:
        """Compact form stored in the event log."""
        payload: dict[str, Any] = {
            "processed": self.processed,
            "success": self.succeeded,
            "failed": self.failed,
            "durationMs": self.duration_ms,
            "tracksProcessed": self.tracks_processed,
            "tracksFailed": self.tracks_failed,
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class EventPage:
    """A page of the event log."""

    events: list[EventRecord]
    pagination: Pagination


@dataclass(frozen=True)
class TopArtist:
    """Artist ranked by event volume."""

    artist_id: str
    artist_name: str
    count: int


@dataclass
class EventMetrics:
    """Aggregates for the analytics dashboard."""

    by_type: dict[str, int]
    timeline: dict[str, int]
    top_artists: list[TopArtist]


__all__ = [
    "ArtistDetail",
    "ArtistStats",
    "ArtistSyncResult",
    "CronRunSummary",
    "EventMetrics",
    "EventPage",
    "Pagination",
    "SearchResult",
    "TopArtist",
    "TrackDetail",
    "TrackStats",
]
