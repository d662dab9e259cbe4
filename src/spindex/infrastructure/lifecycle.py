"""Application lifecycle management for startup and shutdown tasks.

This module handles the FastAPI lifespan context manager that builds every
process-wide object once and hangs it on app.state:

- settings, database
- ClientState (token cache, rate-limit gate, in-flight map) and SpotifyClient
- Resolver, CatalogService, EventService, SyncOrchestrator
- BackgroundTaskRunner (detail-page background syncs)
- SnapshotCronService, plus the optional in-process SnapshotCronWorker
- RequestRateLimiter for the public routes
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress

import httpx
from fastapi import FastAPI

from spindex.api.rate_limit import RequestRateLimiter
from spindex.application.services import (
    CatalogService,
    EventService,
    Resolver,
    SyncOrchestrator,
)
from spindex.application.workers import (
    BackgroundTaskRunner,
    SnapshotCronService,
    create_snapshot_cron_worker,
)
from spindex.config import Settings, get_settings
from spindex.domain.exceptions import ConfigurationError
from spindex.infrastructure.integrations import ClientState, SpotifyClient
from spindex.infrastructure.observability import configure_logging
from spindex.infrastructure.persistence import Database

logger = logging.getLogger(__name__)

RUNNER_SHUTDOWN_TIMEOUT_SECONDS = 5.0


# Hey future me, this validates SQLite paths BEFORE we try creating the DB engine. SQLite needs
# the parent directory to exist and be writable (it creates -journal/-wal files next to the
# .db). We DON'T pre-create the .db file - SQLite does that properly on first connection.
def _validate_sqlite_path(settings: Settings) -> None:
    """Ensure the SQLite database directory exists and is writable."""
    db_path = settings._get_sqlite_db_path()
    if db_path is None:
        return

    try:
        if db_path.parent and str(db_path.parent) != ".":
            db_path.parent.mkdir(parents=True, exist_ok=True)
        test_file = db_path.parent / f".{db_path.stem}_write_test"
        test_file.write_bytes(b"test")
        test_file.unlink()
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to write files in database directory '{db_path.parent}': {exc}. "
            "Update DATABASE_URL or adjust directory permissions."
        ) from exc


async def init_app_state(
    app: FastAPI,
    settings: Settings,
    spotify_transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Build the service graph and attach it to app.state.

    Args:
        app: FastAPI application
        settings: Settings to build with
        spotify_transport: Optional httpx transport for the Spotify client (tests)
    """
    database = Database(settings)
    if settings.database.auto_create_tables:
        await database.create_tables()
    logger.info("Database initialized: %s", settings.database.url)

    client = SpotifyClient(settings.spotify, state=ClientState(), transport=spotify_transport)
    if not settings.spotify.is_configured:
        logger.warning(
            "Spotify credentials missing - upstream calls will fail until "
            "SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET are set"
        )

    runner = BackgroundTaskRunner(
        success_cooldown=settings.sync.success_cooldown_seconds,
        failure_cooldown=settings.sync.failure_cooldown_seconds,
        max_cooldown_entries=settings.sync.cooldown_max_entries,
    )
    resolver = Resolver(database, client)
    catalog = CatalogService(database, client, resolver, settings)

    app.state.settings = settings
    app.state.database = database
    app.state.spotify_client = client
    app.state.background_runner = runner
    app.state.resolver = resolver
    app.state.catalog_service = catalog
    app.state.event_service = EventService(database)
    app.state.sync_orchestrator = SyncOrchestrator(database, client, catalog, runner, settings)
    app.state.cron_service = SnapshotCronService(database, catalog, settings)
    app.state.request_limiter = RequestRateLimiter()


async def close_app_state(app: FastAPI) -> None:
    """Stop background work and release connections (tolerates partial startup)."""
    runner = getattr(app.state, "background_runner", None)
    if runner is not None:
        await runner.shutdown(timeout=RUNNER_SHUTDOWN_TIMEOUT_SECONDS)
        logger.info("Background runner stopped: %s", runner.get_stats())

    client = getattr(app.state, "spotify_client", None)
    if client is not None:
        await client.close()

    database = getattr(app.state, "database", None)
    if database is not None:
        await database.close()
        logger.info("Database connection closed")


# Listen future me, everything before `yield` runs at STARTUP, everything after runs at SHUTDOWN.
# The try/finally makes sure cleanup runs even if startup crashed halfway.
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings: Settings = getattr(app.state, "settings", None) or get_settings()

    configure_logging(
        log_level=settings.log_level,
        json_format=settings.observability.log_json_format,
        app_name=settings.app_name,
    )
    logger.info("Starting application: %s (%s)", settings.app_name, settings.environment)

    cron_task: asyncio.Task[None] | None = None
    cron_worker = None
    try:
        _validate_sqlite_path(settings)
        await init_app_state(app, settings)

        cron_worker = create_snapshot_cron_worker(app.state.cron_service, settings)
        if cron_worker is not None:
            cron_task = asyncio.create_task(cron_worker.start(), name="snapshot-cron")
            app.state.cron_worker = cron_worker
            logger.info(
                "Snapshot cron worker started (every %ss)", settings.cron.interval_seconds
            )
        else:
            logger.info("Snapshot cron worker disabled, expecting external trigger")

        yield
    except Exception as e:
        logger.exception("Error during application startup: %s", e)
        raise
    finally:
        logger.info("Shutting down application")

        if cron_worker is not None:
            cron_worker.stop()
        if cron_task is not None:
            cron_task.cancel()
            with suppress(asyncio.CancelledError):
                await cron_task

        await close_app_state(app)
