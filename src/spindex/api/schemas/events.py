"""API schemas for the event log."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from spindex.api.schemas.catalog import PaginationSchema


class EventCreateRequest(BaseModel):
    """Body of POST /api/events."""

    type: str = Field(..., min_length=1, description="Event type, e.g. artist_view")
    artist_id: str | None = None
    artist_name: str | None = None
    track_id: str | None = None
    track_name: str | None = None
    input: str | None = Field(default=None, description="What the user typed, if anything")
    referrer: str | None = None
    session_id: str | None = None


class EventSchema(BaseModel):
    """A stored event."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    artist_id: str | None = None
    artist_name: str | None = None
    track_id: str | None = None
    track_name: str | None = None
    input: str | None = None
    user_agent: str | None = None
    ip: str | None = None
    created_at: datetime


class EventCreateResponse(BaseModel):
    """Response of POST /api/events."""

    ok: bool = True
    data: EventSchema
    created: bool = Field(description="False if an identical event was logged seconds ago")


class EventPageSchema(BaseModel):
    """A page of events."""

    model_config = ConfigDict(from_attributes=True)

    events: list[EventSchema]
    pagination: PaginationSchema


class TopArtistSchema(BaseModel):
    """Artist ranked by event volume."""

    model_config = ConfigDict(from_attributes=True)

    artist_id: str
    artist_name: str
    count: int


class EventMetricsSchema(BaseModel):
    """Dashboard aggregates."""

    model_config = ConfigDict(from_attributes=True)

    by_type: dict[str, int]
    timeline: dict[str, int] = Field(description="ISO day -> count over the last 30 days")
    top_artists: list[TopArtistSchema]


class EventListResponse(BaseModel):
    """Response of GET /api/events."""

    ok: bool = True
    data: EventPageSchema
    metrics: EventMetricsSchema
