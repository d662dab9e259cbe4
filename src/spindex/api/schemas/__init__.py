"""API request/response schemas."""

from spindex.api.schemas.catalog import (
    ArtistDetailResponse,
    ArtistDetailSchema,
    ArtistSyncRequest,
    ArtistSyncResponse,
    CronRunResponse,
    CronRunSchema,
    ResolveResponse,
    SearchResponse,
    TrackDetailResponse,
    TrackDetailSchema,
)
from spindex.api.schemas.debug import (
    ArtistStep,
    ResolveStep,
    TracksStep,
    TriageResponse,
    TriageStep,
    TriageTrackSchema,
)
from spindex.api.schemas.events import (
    EventCreateRequest,
    EventCreateResponse,
    EventListResponse,
    EventMetricsSchema,
    EventPageSchema,
    EventSchema,
)

__all__ = [
    "ArtistDetailResponse",
    "ArtistDetailSchema",
    "ArtistStep",
    "ArtistSyncRequest",
    "ArtistSyncResponse",
    "CronRunResponse",
    "CronRunSchema",
    "EventCreateRequest",
    "EventCreateResponse",
    "EventListResponse",
    "EventMetricsSchema",
    "EventPageSchema",
    "EventSchema",
    "ResolveResponse",
    "ResolveStep",
    "SearchResponse",
    "TrackDetailResponse",
    "TrackDetailSchema",
    "TriageResponse",
    "TriageStep",
    "TriageTrackSchema",
    "TracksStep",
]
