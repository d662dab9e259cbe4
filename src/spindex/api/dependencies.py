"""Dependency injection for API endpoints."""

import logging
import secrets
from collections.abc import Awaitable, Callable
from typing import Any, cast

from fastapi import Header, HTTPException, Request

from spindex.api.rate_limit import RequestRateLimiter
from spindex.application.services import (
    CatalogService,
    EventService,
    Resolver,
    SyncOrchestrator,
)
from spindex.application.workers import SnapshotCronService
from spindex.config import Settings
from spindex.domain.ports import ICatalogClient
from spindex.infrastructure.persistence import Database

logger = logging.getLogger(__name__)


# Hey future me, everything here comes from app.state, which the lifespan fills in (see
# infrastructure/lifecycle.py). Missing means startup didn't finish, so we answer 503 rather
# than crash with an AttributeError.
def _from_state(request: Request, name: str) -> Any:
    if not hasattr(request.app.state, name):
        raise HTTPException(status_code=503, detail=f"{name} not initialized")
    return getattr(request.app.state, name)


def get_app_settings(request: Request) -> Settings:
    """Get the settings the app was built with."""
    return cast(Settings, _from_state(request, "settings"))


def get_database(request: Request) -> Database:
    """Get the database from app state."""
    return cast(Database, _from_state(request, "database"))


def get_catalog_client(request: Request) -> ICatalogClient:
    """Get the upstream catalog client from app state."""
    return cast(ICatalogClient, _from_state(request, "spotify_client"))


def get_resolver(request: Request) -> Resolver:
    """Get the input resolver from app state."""
    return cast(Resolver, _from_state(request, "resolver"))


def get_catalog_service(request: Request) -> CatalogService:
    """Get the catalog service from app state."""
    return cast(CatalogService, _from_state(request, "catalog_service"))


def get_sync_orchestrator(request: Request) -> SyncOrchestrator:
    """Get the sync orchestrator from app state."""
    return cast(SyncOrchestrator, _from_state(request, "sync_orchestrator"))


def get_event_service(request: Request) -> EventService:
    """Get the event service from app state."""
    return cast(EventService, _from_state(request, "event_service"))


def get_cron_service(request: Request) -> SnapshotCronService:
    """Get the snapshot cron service from app state."""
    return cast(SnapshotCronService, _from_state(request, "cron_service"))


def get_client_ip(request: Request) -> str | None:
    """Client address: first X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


# Listen up, the API key gate is OFF unless API_REQUEST_KEY is set. compare_digest keeps the
# comparison constant-time.
async def require_api_key(
    request: Request, x_api_key: str | None = Header(default=None)
) -> None:
    """Reject requests without the configured X-API-Key."""
    expected = get_app_settings(request).api.request_key
    if not expected:
        return
    if x_api_key is None or not secrets.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


def rate_limit(
    scope: str, limit: int, window_seconds: float = 60.0
) -> Callable[[Request], Awaitable[None]]:
    """Build a dependency that limits each client to `limit` requests per window.

    Args:
        scope: Route family, so different routes count separately
        limit: Requests allowed per window and client
        window_seconds: Window length
    """

    async def dependency(request: Request) -> None:
        limiter = cast(RequestRateLimiter, _from_state(request, "request_limiter"))
        client = get_client_ip(request) or "anon"
        decision = limiter.hit(f"{scope}:{client}", limit, window_seconds)
        if not decision.allowed:
            logger.info(f"Request limit hit for {scope} by {client}")
            raise HTTPException(
                status_code=429,
                detail="Rate limit exceeded",
                headers={"Retry-After": str(max(1, int(decision.reset_in + 0.999)))},
            )

    return dependency
