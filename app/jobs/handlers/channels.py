"""Channel job handlers: polling sync, deferred webhook ingest, outbound send."""

from __future__ import annotations

import logging
from uuid import UUID

logger = logging.getLogger(__name__)


def _channel_id(job) -> UUID:
    payload = job.payload or {}
    raw = payload.get("channel_id")
    if not raw:
        raise ValueError(f"Missing channel_id in {job.job_type} payload")
    try:
        return UUID(str(raw))
    except ValueError as exc:
        raise ValueError(f"Invalid channel_id in {job.job_type} payload") from exc


async def process_channel_sync(db, job) -> None:
    """
    Run one sync for a channel.

    Sync failures are audited and counted by the engine itself, so the job
    completes either way; retrying would double count the failure.
    """
    from app.services import channel_sync_service

    channel_id = _channel_id(job)
    result = await channel_sync_service.sync_channel(db, channel_id)
    logger.info(
        "Channel sync job %s: channel=%s status=%s items=%s",
        job.id,
        channel_id,
        result.status,
        result.items_processed,
    )


async def process_channel_webhook_ingest(db, job) -> None:
    """Hand a deferred push event to the ticket collaborator."""
    from app.services import channel_webhook_service

    _channel_id(job)
    channel_webhook_service.ingest_webhook_event(db, job.payload)


async def process_channel_send(db, job) -> None:
    """
    Deliver a queued outbound message.

    Payload:
      - channel_id (required)
      - recipient, body (required)
      - subject, in_reply_to (optional)
    """
    from app.services import channel_send_service
    from app.services.channel_providers import OutboundMessage

    payload = job.payload or {}
    channel_id = _channel_id(job)
    if not payload.get("recipient") or payload.get("body") is None:
        raise ValueError("Missing recipient or body in channel_send payload")

    result = await channel_send_service.send_channel_message(
        db,
        org_id=job.organization_id,
        channel_id=channel_id,
        message=OutboundMessage(
            recipient=payload["recipient"],
            body=payload["body"],
            subject=payload.get("subject"),
            in_reply_to=payload.get("in_reply_to"),
        ),
    )
    if not result.success:
        raise RuntimeError(f"Channel send failed: {result.error}")
