"""Snapshot cron trigger endpoint."""

import logging
import secrets
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from spindex.api.dependencies import get_app_settings, get_cron_service
from spindex.api.schemas import CronRunResponse, CronRunSchema
from spindex.application.workers import SnapshotCronService
from spindex.config import Settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


# Hey future me - the rules differ per environment:
# - production, no CRON_SECRET configured  -> endpoint disabled (403)
# - production, key missing or wrong       -> 401
# - development                            -> 401 only if a key IS sent and it's wrong,
#                                             so a local curl without a key just works
async def verify_cron_key(
    settings: Settings = Depends(get_app_settings),
    x_cron_key: str | None = Header(default=None),
    key: str | None = Query(default=None),
) -> None:
    """Check the shared cron secret from the X-Cron-Key header or ?key= param."""
    expected = settings.cron.secret
    provided = x_cron_key or key

    if settings.is_production:
        if not expected:
            raise HTTPException(status_code=403, detail="Cron endpoint disabled in production")
        if provided is None or not secrets.compare_digest(provided, expected):
            raise HTTPException(
                status_code=401,
                detail="Unauthorized. Provide X-Cron-Key header or ?key= param.",
            )
        return

    if expected and provided is not None and not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post(
    "/snapshot",
    response_model=CronRunResponse,
    dependencies=[Depends(verify_cron_key)],
)
async def run_snapshot(
    cron_service: SnapshotCronService = Depends(get_cron_service),
) -> CronRunResponse:
    """Run one snapshot sweep (409 if another run holds the lock)."""
    summary = await cron_service.run_snapshot_cron()
    return CronRunResponse(
        data=CronRunSchema.model_validate(summary),
        timestamp=datetime.now(UTC),
    )
