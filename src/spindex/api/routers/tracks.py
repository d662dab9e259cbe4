"""Track detail endpoint."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from spindex.api.dependencies import get_client_ip, get_event_service, get_sync_orchestrator
from spindex.api.schemas import TrackDetailResponse, TrackDetailSchema
from spindex.application.services import EventService, SyncOrchestrator
from spindex.domain.entities import EventType
from spindex.domain.exceptions import DomainException

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tracks", tags=["tracks"])


@router.get("/{track_id}", response_model=TrackDetailResponse)
async def get_track(
    track_id: str,
    request: Request,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
    events: EventService = Depends(get_event_service),
) -> TrackDetailResponse:
    """Track page data."""
    detail = await orchestrator.get_track_detail(track_id)
    if detail is None:
        raise HTTPException(status_code=404, detail="Track not found")

    try:
        await events.record_event(
            EventType.TRACK_API.value,
            track_id=track_id,
            track_name=detail.track.name,
            artist_id=detail.artist.id if detail.artist else None,
            artist_name=detail.artist.name if detail.artist else None,
            user_agent=request.headers.get("user-agent"),
            ip=get_client_ip(request),
        )
    except DomainException:
        logger.debug("Track event logging failed", exc_info=True)

    return TrackDetailResponse(data=TrackDetailSchema.model_validate(detail))
