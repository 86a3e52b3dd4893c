"""Outbound replies through a channel's provider."""

import logging
import time
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session

from app.db.enums import ChannelState, ConnectionEventType, ConnectionOutcome, JobType
from app.db.models import Job
from app.services import (
    channel_service,
    connection_audit_service,
    credential_service,
    job_service,
)
from app.services.channel_errors import (
    ConfigurationError,
    PreconditionError,
    ProviderError,
    UnsupportedOperationError,
)
from app.services.channel_providers import OutboundMessage, get_provider

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    success: bool
    provider_message_id: str | None = None
    error: str | None = None


async def send_channel_message(
    db: Session, org_id: UUID, channel_id: UUID, message: OutboundMessage
) -> SendResult:
    """
    Deliver one message through the channel.

    Writes a send audit entry and feeds the channel failure policy.
    Raises PreconditionError or UnsupportedOperationError before any provider call.
    """
    channel = channel_service.get_channel(db, org_id, channel_id)
    provider = get_provider(channel.provider)
    if not provider.supports("send_message"):
        raise UnsupportedOperationError(channel.provider.value, "send_message")
    if channel.state != ChannelState.ACTIVE:
        raise PreconditionError("Only active channels can send messages")

    started = time.monotonic()
    try:
        ctx = await credential_service.build_context(db, channel)
        provider_message_id = await provider.send_message(ctx, message)
    except (ProviderError, ConfigurationError) as exc:
        detail = getattr(exc, "detail", None) or str(exc)
        channel_service.record_failure(db, channel, str(exc), commit=False)
        connection_audit_service.record_event(
            db,
            org_id=org_id,
            channel_id=channel.id,
            provider=channel.provider.value,
            event_type=ConnectionEventType.SEND,
            outcome=ConnectionOutcome.FAILURE,
            latency_ms=int((time.monotonic() - started) * 1000),
            error_detail=detail,
            commit=False,
        )
        db.commit()
        logger.warning("Send failed for channel=%s", channel.id)
        return SendResult(success=False, error=str(exc))

    channel_service.record_success(db, channel, commit=False)
    connection_audit_service.record_event(
        db,
        org_id=org_id,
        channel_id=channel.id,
        provider=channel.provider.value,
        event_type=ConnectionEventType.SEND,
        outcome=ConnectionOutcome.SUCCESS,
        latency_ms=int((time.monotonic() - started) * 1000),
        items_processed=1,
        details={"provider_message_id": provider_message_id},
        commit=False,
    )
    db.commit()
    return SendResult(success=True, provider_message_id=provider_message_id)


def enqueue_channel_send(
    db: Session,
    org_id: UUID,
    channel_id: UUID,
    message: OutboundMessage,
    *,
    idempotency_key: str,
) -> Job | None:
    """Queue a send for the worker. Duplicate keys are skipped."""
    channel = channel_service.get_channel(db, org_id, channel_id)
    return job_service.schedule_job_once(
        db,
        org_id=org_id,
        job_type=JobType.CHANNEL_SEND,
        payload={
            "channel_id": str(channel.id),
            "recipient": message.recipient,
            "body": message.body,
            "subject": message.subject,
            "in_reply_to": message.in_reply_to,
        },
        idempotency_key=f"channel_send:{idempotency_key}",
    )
