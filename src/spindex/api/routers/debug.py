"""Debug endpoints for checking the upstream pipeline by hand."""

import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from spindex.api.dependencies import get_app_settings, get_catalog_client, get_resolver
from spindex.api.schemas import (
    ArtistStep,
    ResolveStep,
    TracksStep,
    TriageResponse,
    TriageTrackSchema,
)
from spindex.application.services import Resolver
from spindex.config import Settings
from spindex.domain.entities import EntityKind
from spindex.domain.exceptions import DomainException
from spindex.domain.ports import ICatalogClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/debug", tags=["debug"])


# Yo, debug routes are always open in development. In production they need API_ADMIN_DEBUG_KEY
# configured (403 otherwise) and a matching X-Admin-Key header (401 otherwise).
async def verify_debug_access(
    settings: Settings = Depends(get_app_settings),
    x_admin_key: str | None = Header(default=None),
) -> None:
    """Gate debug routes behind the admin key in production."""
    if not settings.is_production:
        return
    expected = settings.api.admin_debug_key
    if not expected:
        raise HTTPException(status_code=403, detail="Debug endpoints disabled in production")
    if x_admin_key is None or not secrets.compare_digest(x_admin_key, expected):
        raise HTTPException(status_code=401, detail="Unauthorized. Provide X-Admin-Key header.")


def _failed(out: TriageResponse, step: str, exc: DomainException) -> JSONResponse:
    logger.warning(f"Triage {step} failed for {out.input!r}: {exc.message}")
    return JSONResponse(status_code=500, content=out.model_dump(mode="json"))


@router.get(
    "/triage",
    response_model=TriageResponse,
    dependencies=[Depends(verify_debug_access)],
)
async def triage(
    q: str = Query(default="taylor swift", description="Artist URL, URI or name"),
    resolver: Resolver = Depends(get_resolver),
    client: ICatalogClient = Depends(get_catalog_client),
) -> TriageResponse | JSONResponse:
    """Resolve an artist, read its popularity, then walk its whole discography.

    Stops at the first failing step and answers 500 with what went wrong there.
    """
    out = TriageResponse(input=q)

    try:
        lookup = await resolver.resolve_input(q)
    except DomainException as e:
        out.step_a = ResolveStep(ok=False, status=getattr(e, "status_code", None), error=e.message)
        return _failed(out, "resolve", e)
    if lookup is None or lookup.kind is not EntityKind.ARTIST:
        out.step_a = ResolveStep(ok=False, error="No artist found for input")
        return JSONResponse(status_code=500, content=out.model_dump(mode="json"))
    out.step_a = ResolveStep(ok=True, artist_id=lookup.id)

    try:
        artist = await client.get_artist(lookup.id)
    except DomainException as e:
        out.step_b = ArtistStep(ok=False, status=getattr(e, "status_code", None), error=e.message)
        return _failed(out, "artist", e)
    out.step_b = ArtistStep(ok=True, artist_popularity=artist.get("popularity"))

    try:
        tracks = await client.get_artist_tracks_all(lookup.id)
    except DomainException as e:
        out.step_c = TracksStep(ok=False, status=getattr(e, "status_code", None), error=e.message)
        return _failed(out, "tracks", e)
    out.step_c = TracksStep(
        ok=True,
        tracks_count=len(tracks),
        top3=[
            TriageTrackSchema(
                id=track["id"], name=track.get("name"), duration_ms=track.get("duration_ms")
            )
            for track in tracks[:3]
        ],
    )
    return out
