"""FastAPI application factory.

Run with: uvicorn spindex.main:app
"""

from fastapi import FastAPI

from spindex.api import api_router, register_exception_handlers
from spindex.api.routers import health
from spindex.config import Settings
from spindex.infrastructure.lifecycle import lifespan
from spindex.infrastructure.observability import RequestLoggingMiddleware


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create the application.

    Args:
        settings: Settings override (tests); the lifespan falls back to get_settings()

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="spindex",
        description="Spotify popularity index: artist/track snapshots and SPI",
        version="0.1.0",
        lifespan=lifespan,
    )
    if settings is not None:
        app.state.settings = settings

    app.add_middleware(RequestLoggingMiddleware)
    register_exception_handlers(app)

    app.include_router(api_router)
    app.include_router(health.router)
    return app


app = create_app()
