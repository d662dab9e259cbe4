"""HTTP API - FastAPI routers, dependencies and exception handlers."""

from spindex.api.exception_handlers import register_exception_handlers
from spindex.api.routers import api_router

__all__ = ["api_router", "register_exception_handlers"]
