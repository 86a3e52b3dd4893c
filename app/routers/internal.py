"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from external cron (Cloud Scheduler/GH Actions) every minute.
"""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.deps import get_db
from app.core.security import verify_secret
from app.schemas.channels import ChannelSyncScheduleResponse
from app.services import channel_oauth_service, channel_sync_service

router = APIRouter(prefix="/internal/scheduled", tags=["internal"])
logger = logging.getLogger(__name__)


def verify_internal_secret(x_internal_secret: str = Header(...)) -> None:
    """Verify the internal secret header."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if not verify_secret(x_internal_secret, expected):
        raise HTTPException(status_code=403, detail="Invalid internal secret")


@router.post(
    "/channel-sync",
    response_model=ChannelSyncScheduleResponse,
    dependencies=[Depends(verify_internal_secret)],
)
def schedule_channel_syncs(
    db: Session = Depends(get_db),
) -> ChannelSyncScheduleResponse:
    """
    Enqueue channel_sync jobs for every active poll channel whose interval elapsed.

    Also sweeps expired and consumed OAuth state tokens.
    """
    counts = channel_sync_service.schedule_due_channel_syncs(db)
    purged = channel_oauth_service.purge_state_tokens(db)
    logger.info(
        "Channel sync schedule: due=%s enqueued=%s purged_states=%s",
        counts["due"],
        counts["enqueued"],
        purged,
    )
    return ChannelSyncScheduleResponse(**counts, state_tokens_purged=purged)
