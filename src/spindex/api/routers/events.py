"""Event log endpoints (analytics)."""

import json
from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status

from spindex.api.dependencies import (
    get_client_ip,
    get_event_service,
    rate_limit,
    require_api_key,
)
from spindex.api.schemas import (
    EventCreateRequest,
    EventCreateResponse,
    EventListResponse,
    EventMetricsSchema,
    EventPageSchema,
    EventSchema,
)
from spindex.application.services import EventService
from spindex.infrastructure.persistence import EventFilter

router = APIRouter(prefix="/events", tags=["events"], dependencies=[Depends(require_api_key)])

WRITE_LIMIT_PER_MINUTE = 60
READ_LIMIT_PER_MINUTE = 120


@router.post(
    "",
    response_model=EventCreateResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("event:post", WRITE_LIMIT_PER_MINUTE))],
)
async def create_event(
    body: EventCreateRequest,
    request: Request,
    events: EventService = Depends(get_event_service),
) -> EventCreateResponse:
    """Log a client-side interaction."""
    # referrer and session id ride along inside the input column
    input_json = json.dumps(
        {"input": body.input, "referrer": body.referrer, "session_id": body.session_id}
    )
    event, created = await events.record_event(
        body.type,
        artist_id=body.artist_id,
        artist_name=body.artist_name,
        track_id=body.track_id,
        track_name=body.track_name,
        input=input_json,
        user_agent=request.headers.get("user-agent"),
        ip=get_client_ip(request),
    )
    return EventCreateResponse(data=EventSchema.model_validate(event), created=created)


@router.get(
    "",
    response_model=EventListResponse,
    dependencies=[Depends(rate_limit("event:get", READ_LIMIT_PER_MINUTE))],
)
async def list_events(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=50),
    type: str | None = Query(default=None),
    since: datetime | None = Query(default=None, alias="from"),
    until: datetime | None = Query(default=None, alias="to"),
    artist: str | None = Query(default=None, description="Artist id"),
    track: str | None = Query(default=None, description="Track id"),
    events: EventService = Depends(get_event_service),
) -> EventListResponse:
    """Paginated event list plus dashboard metrics for the same filters."""
    filters = EventFilter(type=type, artist_id=artist, track_id=track, since=since, until=until)
    page_data = await events.list_events(filters, page=page, page_size=page_size)
    metrics = await events.get_event_metrics(filters)
    return EventListResponse(
        data=EventPageSchema.model_validate(page_data),
        metrics=EventMetricsSchema.model_validate(metrics),
    )
