"""Health check endpoints for Docker/Kubernetes probes."""

import time
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from spindex.domain.exceptions import DomainException

router = APIRouter(prefix="/health", tags=["health"])


class LivenessStatus(BaseModel):
    """Simple liveness probe response."""

    status: str = Field(description="alive or dead")
    timestamp: str = Field(description="ISO timestamp")


class ReadinessStatus(BaseModel):
    """Readiness probe response."""

    status: str = Field(description="ready or not_ready")
    timestamp: str = Field(description="ISO timestamp")
    checks: dict[str, Any] = Field(default_factory=dict, description="Per-dependency checks")


@router.get("/live", response_model=LivenessStatus)
async def liveness_probe() -> LivenessStatus:
    """Liveness probe: 200 while the process is running, no dependency checks."""
    return LivenessStatus(status="alive", timestamp=datetime.now(UTC).isoformat())


# Hey future me - readiness checks BOTH dependencies: a DB round trip and a Spotify token. The
# token is cached for ~an hour, so probing every few seconds costs one upstream call per hour.
@router.get("/ready", response_model=ReadinessStatus)
async def readiness_probe(request: Request) -> JSONResponse:
    """Readiness probe: 200 if database and Spotify are usable, else 503."""
    checks: dict[str, Any] = {}

    database = getattr(request.app.state, "database", None)
    started = time.perf_counter()
    if database is None:
        checks["database"] = {"ok": False, "error": "Not initialized"}
    else:
        try:
            await database.ping()
            checks["database"] = {"ok": True}
        except DomainException as e:
            checks["database"] = {"ok": False, "error": e.message}
    checks["database"]["latency_ms"] = int((time.perf_counter() - started) * 1000)

    client = getattr(request.app.state, "spotify_client", None)
    started = time.perf_counter()
    if client is None:
        checks["spotify"] = {"ok": False, "error": "Not initialized"}
    else:
        try:
            checks["spotify"] = {"ok": bool(await client.get_access_token())}
        except DomainException as e:
            checks["spotify"] = {"ok": False, "error": e.message}
    checks["spotify"]["latency_ms"] = int((time.perf_counter() - started) * 1000)

    is_ready = all(check["ok"] for check in checks.values())
    response = ReadinessStatus(
        status="ready" if is_ready else "not_ready",
        timestamp=datetime.now(UTC).isoformat(),
        checks=checks,
    )
    status_code = status.HTTP_200_OK if is_ready else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(content=response.model_dump(), status_code=status_code)
