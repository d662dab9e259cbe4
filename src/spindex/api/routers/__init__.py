"""API routers."""

from fastapi import APIRouter

from spindex.api.routers import artists, catalog, cron, debug, events, health, tracks

# Everything user-facing lives under /api; health probes stay at the root.
api_router = APIRouter(prefix="/api")
api_router.include_router(catalog.router)
api_router.include_router(artists.router)
api_router.include_router(tracks.router)
api_router.include_router(events.router)
api_router.include_router(cron.router)
api_router.include_router(debug.router)

__all__ = ["api_router", "health"]
