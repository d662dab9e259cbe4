"""Custom exception handlers for FastAPI application.

This module registers global exception handlers that convert domain exceptions
and validation errors into proper HTTP responses with appropriate status codes.

Hey future me - Starlette picks the handler of the MOST SPECIFIC class in the
exception's MRO. RateLimitExceededError and UpstreamUnavailableError both
subclass ExternalServiceError, and they get their own handlers (429 / 503)
while everything else from upstream falls through to 502.
"""

import logging
import math
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from spindex.domain.exceptions import (
    ConfigurationError,
    DomainException,
    EntityNotFoundException,
    ExternalServiceError,
    LockNotAcquiredError,
    PersistenceUnavailableError,
    RateLimitExceededError,
    UpstreamUnavailableError,
    ValidationException,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 5


def _error(status_code: int, message: str, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"ok": False, "detail": message},
        headers=headers,
    )


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert bytes in pydantic error dicts to str so they are JSON serializable."""

    def _sanitize_value(value: Any) -> Any:
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        if isinstance(value, dict):
            return {k: _sanitize_value(v) for k, v in value.items()}
        if isinstance(value, list | tuple):
            return [_sanitize_value(item) for item in value]
        return value

    return [_sanitize_value(error) for error in errors]


def register_exception_handlers(app: FastAPI) -> None:
    """Register handlers mapping domain exceptions to HTTP responses.

    Args:
        app: FastAPI application instance
    """

    @app.exception_handler(ValidationException)
    async def validation_exception_handler(
        request: Request, exc: ValidationException
    ) -> JSONResponse:
        """Handle domain validation exceptions with 422 Unprocessable Entity."""
        logger.warning(
            "Validation error at %s: %s",
            request.url.path,
            exc.message,
            extra={"path": request.url.path, "error": exc.message},
        )
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, exc.message)

    @app.exception_handler(EntityNotFoundException)
    async def entity_not_found_exception_handler(
        request: Request, exc: EntityNotFoundException
    ) -> JSONResponse:
        """Handle entity not found exceptions with 404 Not Found."""
        logger.info(
            "Entity not found at %s: %s %s",
            request.url.path,
            exc.entity_type,
            exc.entity_id,
            extra={"path": request.url.path, "entity_type": exc.entity_type},
        )
        return _error(status.HTTP_404_NOT_FOUND, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle pydantic request validation errors with 422 Unprocessable Entity."""
        sanitized_errors = _sanitize_validation_errors(list(exc.errors()))
        logger.warning(
            "Request validation error at %s: %s",
            request.url.path,
            sanitized_errors,
            extra={"path": request.url.path},
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"ok": False, "detail": sanitized_errors},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        """Handle HTTP exceptions with proper logging."""
        level = logging.ERROR if exc.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "HTTP error %d at %s: %s",
            exc.status_code,
            request.url.path,
            exc.detail,
            extra={"path": request.url.path, "status_code": exc.status_code},
        )
        return _error(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_exceeded_handler(
        request: Request, exc: RateLimitExceededError
    ) -> JSONResponse:
        """Handle exhausted upstream rate limits with 429 and Retry-After."""
        retry_after = (
            math.ceil(exc.retry_after) if exc.retry_after else DEFAULT_RETRY_AFTER_SECONDS
        )
        logger.warning(
            "Upstream rate limit exceeded at %s (retry after %ss)",
            request.url.path,
            retry_after,
            extra={"path": request.url.path, "retry_after": retry_after},
        )
        return _error(
            status.HTTP_429_TOO_MANY_REQUESTS,
            exc.message,
            headers={"Retry-After": str(retry_after)},
        )

    @app.exception_handler(UpstreamUnavailableError)
    async def upstream_unavailable_handler(
        request: Request, exc: UpstreamUnavailableError
    ) -> JSONResponse:
        """Handle network/5xx upstream failures with 503 Service Unavailable."""
        logger.error(
            "Upstream unavailable at %s: %s",
            request.url.path,
            exc.message,
            extra={"path": request.url.path, "upstream_status": exc.status_code},
        )
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc.message)

    @app.exception_handler(ExternalServiceError)
    async def external_service_error_handler(
        request: Request, exc: ExternalServiceError
    ) -> JSONResponse:
        """Handle other upstream errors with 502 Bad Gateway."""
        logger.error(
            "External service error at %s: %s",
            request.url.path,
            exc.message,
            extra={"path": request.url.path, "upstream_status": exc.status_code},
        )
        return _error(status.HTTP_502_BAD_GATEWAY, exc.message)

    @app.exception_handler(PersistenceUnavailableError)
    async def persistence_unavailable_handler(
        request: Request, exc: PersistenceUnavailableError
    ) -> JSONResponse:
        """Handle database outages with 503 Service Unavailable."""
        logger.error(
            "Database unavailable at %s: %s",
            request.url.path,
            exc.message,
            extra={"path": request.url.path},
        )
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Database unavailable")

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(
        request: Request, exc: ConfigurationError
    ) -> JSONResponse:
        """Handle configuration errors with 503 Service Unavailable."""
        logger.error(
            "Configuration error at %s: %s",
            request.url.path,
            exc.message,
            extra={"path": request.url.path},
        )
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc.message)

    @app.exception_handler(LockNotAcquiredError)
    async def lock_not_acquired_handler(
        request: Request, exc: LockNotAcquiredError
    ) -> JSONResponse:
        """Handle a held cron lease with 409 Conflict."""
        logger.info("Cron lock held at %s", request.url.path, extra={"path": request.url.path})
        return _error(status.HTTP_409_CONFLICT, exc.message)

    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
        """Handle any other domain exception with 500 Internal Server Error."""
        logger.error(
            "Unhandled domain error at %s: %s",
            request.url.path,
            exc.message,
            extra={"path": request.url.path, "error_type": type(exc).__name__},
        )
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, exc.message)
