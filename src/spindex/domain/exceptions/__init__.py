"""Domain exceptions."""

from typing import Any


class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, we store message as an attribute so code can inspect it without parsing
    # str(exception). Don't raise this directly - always use a specific subclass so callers can
    # catch precisely (the orchestrator's DB fallback depends on that!).
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class EntityNotFoundException(DomainException):
    """Raised when an entity is not found.

    Services return None for "not found"; this is only raised at the HTTP
    edge so the handler can turn it into a 404.
    """

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} with id {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ValidationException(DomainException):
    """Raised when input fails validation before any I/O happens.

    HTTP Status: 422
    """

    pass


class ConfigurationError(DomainException):
    """Application misconfiguration (e.g. missing Spotify credentials).

    HTTP Status: 503
    """

    pass


class ExternalServiceError(DomainException):
    """The upstream catalog API returned an error we don't retry.

    HTTP Status: 502
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamUnavailableError(ExternalServiceError):
    """Network failure, timeout, or 5xx after all retries.

    Transient - callers should prefer cached data over failing.

    HTTP Status: 503
    """

    pass


class RateLimitExceededError(ExternalServiceError):
    """Upstream kept answering 429 after all retries.

    Kept distinct from other upstream failures so callers can degrade to
    stale cache or show "busy, retry shortly".

    HTTP Status: 429
    """

    def __init__(
        self,
        message: str = "Spotify API rate limit exceeded. Please try again in a few moments.",
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class PersistenceUnavailableError(DomainException):
    """The database could not be reached.

    The sync orchestrator catches this class specifically and re-routes
    reads to the upstream-only path.

    HTTP Status: 503
    """

    pass


class LockNotAcquiredError(DomainException):
    """Another snapshot cron run holds the lock.

    HTTP Status: 409
    """

    def __init__(
        self,
        message: str = "Another cron job is already running or recently completed",
    ) -> None:
        super().__init__(message)


__all__ = [
    "ConfigurationError",
    "DomainException",
    "EntityNotFoundException",
    "ExternalServiceError",
    "LockNotAcquiredError",
    "PersistenceUnavailableError",
    "RateLimitExceededError",
    "UpstreamUnavailableError",
    "ValidationException",
]
