"""Application services - resolution, caching and analytics."""

from spindex.application.services.resolver import Resolver, parse_spotify_reference
from spindex.application.services.catalog_service import CatalogService
from spindex.application.services.event_service import EventService

# Hey future me - SyncOrchestrator is the ONLY thing the detail routes talk to.
# It decides cache vs. upstream and hands writes back to CatalogService.
from spindex.application.services.sync_orchestrator import SyncOrchestrator

__all__ = [
    "CatalogService",
    "EventService",
    "Resolver",
    "SyncOrchestrator",
    "parse_spotify_reference",
]
