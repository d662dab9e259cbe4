"""Domain entities."""

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


# Hey future me - SPI is "Spotify popularity, one decimal". It looks like identity for integer
# popularity (57 -> 57.0) but it decouples what we show from the raw upstream int and keeps
# one decimal of precision if upstream ever sends floats. We round half-up on purpose (not
# Python's banker's rounding) so 0.05 steps always go up like the charts expect.
def calculate_spi(popularity: float | int | None) -> float:
    """Derive the popularity index from a raw 0-100 popularity score."""
    if popularity is None:
        return 0.0
    return math.floor(popularity / 100 * 1000 + 0.5) / 10


class EntityKind(str, Enum):
    """Kind of catalog entity an input resolves to."""

    ARTIST = "artist"
    TRACK = "track"


# Yo, these are the event types we write into the event log. Only the *_view/track_open ones
# matter for the cron (they decide which tracks get snapshots); the rest are analytics.
class EventType(str, Enum):
    """Known event log types."""

    SEARCH = "search"
    ARTIST_VIEW = "artist_view"
    TRACK_VIEW = "track_view"
    TRACK_OPEN = "track_open"
    ARTIST_API = "artist_api"
    TRACK_API = "track_api"
    CRON_EXECUTION = "cron_execution"


TRACK_INTEREST_EVENTS: tuple[str, ...] = (
    EventType.TRACK_VIEW.value,
    EventType.TRACK_OPEN.value,
    EventType.TRACK_API.value,
)


@dataclass(frozen=True)
class LookupResult:
    """Result of resolving free-form input to a catalog entity."""

    kind: EntityKind
    id: str
    url: str | None = None


@dataclass
class Artist:
    """Cached artist record.

    The id is Spotify's own id - we never generate ids locally, so upsert by
    id is always well defined.
    """

    id: str
    name: str
    popularity: int = 0
    spi: float = 0.0
    image_url: str | None = None
    spotify_url: str | None = None
    genres: list[str] = field(default_factory=list)
    followers: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        """Validate artist data."""
        if not self.id or not self.id.strip():
            raise ValueError("Artist id cannot be empty")

    # Listen up, the placeholder is what the detail page shows for an artist we've never seen.
    # It is NEVER persisted - the background sync writes the real record.
    @classmethod
    def placeholder(cls, artist_id: str) -> "Artist":
        """Build an unsaved stand-in for an artist that is still importing."""
        return cls(id=artist_id, name="Unknown Artist")


@dataclass
class Track:
    """Cached track record.

    artist_id may point at an artist we haven't cached yet; that is fine and
    gets backfilled lazily.
    """

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
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        """Validate track data."""
        if not self.id or not self.id.strip():
            raise ValueError("Track id cannot be empty")
        if self.duration_ms < 0:
            raise ValueError("Duration cannot be negative")


@dataclass(frozen=True)
class SnapshotPoint:
    """One point of a popularity time series, ready for charting."""

    captured_at: datetime
    popularity: int

    @property
    def spi(self) -> float:
        """Popularity index recomputed from the stored raw value."""
        return calculate_spi(self.popularity)


@dataclass
class EventRecord:
    """A row of the user interaction event log."""

    id: str
    type: str
    artist_id: str | None = None
    artist_name: str | None = None
    track_id: str | None = None
    track_name: str | None = None
    input: str | None = None
    user_agent: str | None = None
    ip: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class IngestStatus(str, Enum):
    """Lifecycle of an ingest queue entry."""

    PENDING = "pending"
    CLAIMED = "claimed"


@dataclass
class IngestRequest:
    """Request to backfill an artist that was just discovered."""

    id: str
    artist_id: str
    source: str = "auto_first_view"
    status: IngestStatus = IngestStatus.PENDING
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class CronLease:
    """A held snapshot-cron lock.

    The fencing token grows with every acquisition so a stale holder can be
    told apart from the current one.
    """

    name: str
    owner: str
    fencing_token: int
    acquired_at: datetime
    expires_at: datetime


__all__ = [
    "Artist",
    "CronLease",
    "EntityKind",
    "EventRecord",
    "EventType",
    "IngestRequest",
    "IngestStatus",
    "LookupResult",
    "SnapshotPoint",
    "TRACK_INTEREST_EVENTS",
    "Track",
    "calculate_spi",
]
