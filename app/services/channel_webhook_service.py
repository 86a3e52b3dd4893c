"""Channel webhook intake - verify, resolve, dedupe and defer push events.

HTTP concerns (size limit, status codes) stay in app/services/webhooks/;
this module only knows about channels, deliveries and jobs.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.db.enums import (
    ChannelProvider,
    ChannelState,
    ConnectionEventType,
    ConnectionOutcome,
    JobType,
)
from app.db.models import Channel, WebhookDelivery
from app.services import (
    connection_audit_service,
    integration_service,
    job_service,
    ticket_service,
)
from app.services.channel_errors import UnknownWebhookAccountError, WebhookSignatureError
from app.services.channel_providers import Provider, WebhookEvent

logger = logging.getLogger(__name__)


@dataclass
class SignatureMatch:
    """Which orgs' secrets validated the payload. any_org for the platform secret."""

    org_ids: set[UUID]
    any_org: bool = False

    def allows(self, org_id: UUID) -> bool:
        return self.any_org or org_id in self.org_ids


def verify_signature(
    db: Session, provider: Provider, raw_body: bytes, signature: str | None
) -> SignatureMatch:
    """
    Check the signature against every candidate app secret, before parsing.

    Raises WebhookSignatureError and records a rejected audit entry on failure.
    """
    if not signature:
        record_rejection(db, provider.name, "missing_signature")
        raise WebhookSignatureError("Missing signature")

    match = SignatureMatch(org_ids=set())
    for org_id, secret in integration_service.get_candidate_webhook_secrets(db):
        if provider.verify_webhook_signature(raw_body, signature, secret):
            if org_id is None:
                match.any_org = True
            else:
                match.org_ids.add(org_id)

    if not match.any_org and not match.org_ids:
        record_rejection(db, provider.name, "invalid_signature")
        raise WebhookSignatureError("Invalid signature")
    return match


def record_rejection(
    db: Session,
    provider: str,
    reason: str,
    *,
    org_id: UUID | None = None,
    channel_id: UUID | None = None,
) -> None:
    logger.warning("Rejected %s webhook: %s", provider, reason)
    connection_audit_service.record_event(
        db,
        org_id=org_id,
        channel_id=channel_id,
        provider=provider,
        event_type=ConnectionEventType.WEBHOOK,
        outcome=ConnectionOutcome.REJECTED,
        error_detail=reason,
        details={"reason": reason},
    )


def resolve_channel(
    db: Session, provider: ChannelProvider, account_id: str, signing: SignatureMatch
) -> Channel | None:
    """Active channel of this provider bound to the account, owned by a signing org."""
    channels = (
        db.query(Channel)
        .filter(
            Channel.provider == provider,
            Channel.external_account_id == account_id,
            Channel.state == ChannelState.ACTIVE,
        )
        .all()
    )
    for channel in channels:
        if signing.allows(channel.organization_id):
            return channel
    return None


def _job_payload(channel: Channel, event: WebhookEvent) -> dict:
    item = event.item
    return {
        "channel_id": str(channel.id),
        "provider": channel.provider.value,
        "delivery_id": event.delivery_id,
        "external_message_id": item.external_message_id,
        "received_at": item.received_at.isoformat(),
        "sender": item.sender,
        "body": item.body,
        "subject": item.subject,
        "attachments": item.attachments,
        "conversation_key": item.conversation_key,
    }


def accept_events(
    db: Session, provider: Provider, payload: dict, signing: SignatureMatch
) -> dict:
    """
    Record and defer every event in a verified payload.

    Duplicated deliveries are accepted as no-ops. Raises
    UnknownWebhookAccountError when events exist but none maps to a channel.
    """
    provider_key = provider.capabilities.provider
    events = provider.parse_webhook(payload)

    resolved: dict[str, Channel | None] = {}
    for event in events:
        if event.account_id not in resolved:
            resolved[event.account_id] = resolve_channel(db, provider_key, event.account_id, signing)

    if events and not any(resolved.values()):
        logger.info(
            "%s webhook for unknown accounts: %s", provider.name, sorted(resolved.keys())
        )
        record_rejection(db, provider.name, "unknown_account")
        raise UnknownWebhookAccountError("No active channel for this account")

    enqueued = 0
    skipped = 0
    for event in events:
        channel = resolved.get(event.account_id)
        if channel is None:
            skipped += 1
            continue

        # Ledger row and ingest job commit together; a failed enqueue leaves no trace
        db.add(
            WebhookDelivery(
                provider=provider_key.value,
                delivery_id=event.delivery_id,
                channel_id=channel.id,
            )
        )
        try:
            job_service.schedule_job(
                db,
                org_id=channel.organization_id,
                job_type=JobType.CHANNEL_WEBHOOK_INGEST,
                payload=_job_payload(channel, event),
                idempotency_key=f"channel_webhook_ingest:{provider_key.value}:{event.delivery_id}",
                commit=False,
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            skipped += 1
            logger.info("%s webhook: duplicate delivery %s", provider.name, event.delivery_id)
            connection_audit_service.record_event(
                db,
                org_id=channel.organization_id,
                channel_id=channel.id,
                provider=provider.name,
                event_type=ConnectionEventType.WEBHOOK,
                outcome=ConnectionOutcome.DUPLICATE,
                details={"delivery_id": event.delivery_id},
            )
            continue
        except SQLAlchemyError:
            db.rollback()
            raise

        enqueued += 1

    return {"events_enqueued": enqueued, "events_skipped": skipped}


def ingest_webhook_event(db: Session, payload: dict) -> bool:
    """
    Job body: hand a deferred push event to the ticket collaborator.

    Returns False when the channel is gone or no longer active.
    """
    channel = db.get(Channel, UUID(payload["channel_id"]))
    if channel is None or channel.state != ChannelState.ACTIVE:
        logger.info("Dropping webhook event for inactive channel=%s", payload["channel_id"])
        return False

    ref = ticket_service.create_or_append_message(
        db,
        org_id=channel.organization_id,
        channel_id=channel.id,
        external_message_id=payload["external_message_id"],
        sender=payload["sender"],
        body=payload.get("body") or "",
        subject=payload.get("subject"),
        attachments=payload.get("attachments") or [],
        conversation_key=payload.get("conversation_key"),
    )
    received_at = payload.get("received_at")
    connection_audit_service.record_event(
        db,
        org_id=channel.organization_id,
        channel_id=channel.id,
        provider=channel.provider.value,
        event_type=ConnectionEventType.WEBHOOK,
        outcome=ConnectionOutcome.SUCCESS if ref.created else ConnectionOutcome.DUPLICATE,
        items_processed=1 if ref.created else 0,
        details={
            "delivery_id": payload.get("delivery_id"),
            "ticket_id": str(ref.ticket_id),
            "received_at": received_at,
        },
    )
    channel.last_synced_at = datetime.now(timezone.utc)
    db.commit()
    return True
