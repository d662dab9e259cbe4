"""Resolve and search endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from spindex.api.dependencies import (
    get_catalog_service,
    get_client_ip,
    get_event_service,
    get_resolver,
    rate_limit,
    require_api_key,
)
from spindex.api.schemas import ResolveResponse, SearchResponse
from spindex.application.services import CatalogService, EventService, Resolver
from spindex.domain.entities import EntityKind, EventType
from spindex.domain.exceptions import DomainException, ValidationException

logger = logging.getLogger(__name__)

router = APIRouter(tags=["catalog"])

SEARCH_LIMIT_PER_MINUTE = 60


def _clean_query(q: str) -> str:
    query = q.strip()
    if not query:
        raise ValidationException("Missing query 'q'")
    return query


# Hey future me - resolve is pure lookup: no caching, no event. A rate-limited upstream search
# with no local match comes back as 429 (not 404) so the UI can say "busy, retry shortly".
@router.get("/resolve", response_model=ResolveResponse)
async def resolve(
    q: str = Query(..., min_length=1, description="Spotify URL, URI or free text"),
    resolver: Resolver = Depends(get_resolver),
) -> ResolveResponse:
    """Resolve input to an artist or track id."""
    lookup = await resolver.resolve_input(_clean_query(q), propagate_rate_limit=True)
    if lookup is None:
        raise HTTPException(status_code=404, detail="No artist or track found for input.")
    return ResolveResponse(kind=lookup.kind, id=lookup.id, url=lookup.url)


@router.get(
    "/search",
    response_model=SearchResponse,
    dependencies=[
        Depends(require_api_key),
        Depends(rate_limit("search", SEARCH_LIMIT_PER_MINUTE)),
    ],
)
async def search(
    request: Request,
    q: str = Query(..., min_length=1, description="Spotify URL, URI or free text"),
    catalog: CatalogService = Depends(get_catalog_service),
    events: EventService = Depends(get_event_service),
) -> SearchResponse:
    """Resolve input and make sure the hit is cached."""
    query = _clean_query(q)
    result = await catalog.search_catalog(query)
    if result is None:
        raise HTTPException(status_code=404, detail="No artist or track found")

    is_artist = result.kind is EntityKind.ARTIST
    try:
        await events.record_event(
            EventType.SEARCH.value,
            input=query,
            artist_id=result.id if is_artist else result.artist_id,
            artist_name=result.name if is_artist else None,
            track_id=None if is_artist else result.id,
            track_name=None if is_artist else result.name,
            user_agent=request.headers.get("user-agent"),
            ip=get_client_ip(request),
        )
    except DomainException:
        logger.warning("Search event logging failed", exc_info=True)

    return SearchResponse.model_validate(result)
