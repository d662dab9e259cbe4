"""Artist detail and manual sync endpoints."""

import logging

from fastapi import APIRouter, Depends, Query, Request

from spindex.api.dependencies import (
    get_catalog_service,
    get_client_ip,
    get_event_service,
    get_sync_orchestrator,
    rate_limit,
)
from spindex.api.schemas import (
    ArtistDetailResponse,
    ArtistDetailSchema,
    ArtistSyncRequest,
    ArtistSyncResponse,
)
from spindex.application.services import CatalogService, EventService, SyncOrchestrator
from spindex.domain.entities import EventType
from spindex.domain.exceptions import DomainException

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/artists", tags=["artists"])

SYNC_LIMIT_PER_MINUTE = 5


# Yo, the manual sync is the one expensive route (1 artist + up to 10 track fetches), so it
# gets a much tighter per-client limit than the read routes.
@router.post(
    "/sync",
    response_model=ArtistSyncResponse,
    dependencies=[Depends(rate_limit("artist-sync", SYNC_LIMIT_PER_MINUTE))],
)
async def sync_artist(
    body: ArtistSyncRequest,
    catalog: CatalogService = Depends(get_catalog_service),
) -> ArtistSyncResponse:
    """Refresh an artist, its snapshot and its top tracks right now."""
    result = await catalog.sync_artist(body.artist_id)
    return ArtistSyncResponse(artist_id=result.artist_id, stored_tracks=result.stored_tracks)


@router.get("/{artist_id}", response_model=ArtistDetailResponse)
async def get_artist(
    artist_id: str,
    request: Request,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=50),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
    events: EventService = Depends(get_event_service),
) -> ArtistDetailResponse:
    """Artist page data; never-seen artists come back as a placeholder."""
    detail = await orchestrator.get_artist_detail(artist_id, page=page, page_size=page_size)

    try:
        await events.record_event(
            EventType.ARTIST_API.value,
            artist_id=artist_id,
            artist_name=detail.artist.name,
            user_agent=request.headers.get("user-agent"),
            ip=get_client_ip(request),
        )
    except DomainException:
        logger.debug("Artist event logging failed", exc_info=True)

    return ArtistDetailResponse(data=ArtistDetailSchema.model_validate(detail))
