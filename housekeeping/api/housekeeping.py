"""Admin endpoints for housekeeping jobs."""

import hmac
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from housekeeping.config import get_settings
from housekeeping.jobs.registration import Housekeeping

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin/housekeeping", tags=["housekeeping"])


class ScheduledJob(BaseModel):
    id: str
    name: str
    next_run_at: Optional[datetime] = None


class TriggerResponse(BaseModel):
    status: str
    id: str
    run_at: datetime


async def require_admin_token(request: Request) -> None:
    """Check the bearer token when ADMIN_TOKEN is configured."""
    expected = get_settings().admin_token
    if not expected:
        return

    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.encode(), expected.encode()):
        logger.warning(f"Rejected admin request to {request.url.path}: bad or missing token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_housekeeping(request: Request) -> Housekeeping:
    housekeeping = getattr(request.app.state, "housekeeping", None)
    if housekeeping is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Housekeeping is not running",
        )
    return housekeeping


@router.get("/jobs", response_model=list[ScheduledJob])
async def list_jobs(
    _: None = Depends(require_admin_token),
    housekeeping: Housekeeping = Depends(get_housekeeping),
):
    """List pending job runs, soonest first."""
    return housekeeping.pending_jobs()


@router.post("/backup", response_model=TriggerResponse)
async def trigger_backup(
    _: None = Depends(require_admin_token),
    housekeeping: Housekeeping = Depends(get_housekeeping),
):
    """Trigger a one-shot backup, replacing any pending adhoc run."""
    if housekeeping.adhoc is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Backups are not configured",
        )

    run_at = housekeeping.run_backup_now()
    return TriggerResponse(status="scheduled", id=housekeeping.adhoc.stable_id, run_at=run_at)
