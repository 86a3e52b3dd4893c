"""Channel sync engine - polls mailbox channels into tickets.

One run per channel at a time (claimed through channels.sync_started_at).
The watermark only moves forward and never past the last fully processed item.
"""

import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import UUID

import anyio
from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.structured_logging import build_log_context
from app.db.enums import (
    ChannelState,
    ConnectionEventType,
    ConnectionOutcome,
    JobType,
    PostImportAction,
    TransportMode,
)
from app.db.models import Channel, Job
from app.services import (
    channel_service,
    connection_audit_service,
    credential_service,
    job_service,
    ticket_service,
)
from app.services.channel_errors import (
    ChannelNotFoundError,
    ConfigurationError,
    PreconditionError,
    ProviderError,
    SyncError,
    UnsupportedOperationError,
)
from app.services.channel_providers import InboundItem, Provider, ProviderContext, get_provider
from app.services.channel_providers.registry import PROVIDERS

logger = logging.getLogger(__name__)

SYNC_FAILURES = (
    ProviderError,
    SyncError,
    ConfigurationError,
    UnsupportedOperationError,
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _latest(*values: datetime | None) -> datetime | None:
    present = [v for v in values if v is not None]
    return max(present) if present else None


@dataclass
class SyncResult:
    """Outcome of one sync run."""

    channel_id: UUID
    status: str  # success | failure | skipped
    items_processed: int = 0
    tickets_created: int = 0
    duplicates: int = 0
    skipped_self: int = 0
    post_action_failures: list[dict] = field(default_factory=list)
    watermark: datetime | None = None
    error: str | None = None
    reason: str | None = None

    def details(self) -> dict:
        return {
            "tickets_created": self.tickets_created,
            "duplicates": self.duplicates,
            "skipped_self": self.skipped_self,
            "post_action_failures": self.post_action_failures,
            "watermark": self.watermark.isoformat() if self.watermark else None,
        }


# =============================================================================
# Claim
# =============================================================================


def claim_channel(db: Session, channel_id: UUID) -> bool:
    """Claim the channel for one run. False if another fresh run holds it."""
    now = _now_utc()
    stale_before = now - timedelta(seconds=settings.CHANNEL_SYNC_LOCK_STALE_SECONDS)
    result = db.execute(
        update(Channel)
        .where(
            Channel.id == channel_id,
            or_(Channel.sync_started_at.is_(None), Channel.sync_started_at < stale_before),
        )
        .values(sync_started_at=now)
    )
    db.commit()
    return result.rowcount == 1


def release_channel(db: Session, channel: Channel) -> None:
    channel.sync_started_at = None


# =============================================================================
# Run
# =============================================================================


def _is_self_sent(channel: Channel, item: InboundItem) -> bool:
    own = (channel.email_address or "").strip().lower()
    return bool(own) and item.sender.strip().lower() == own


async def _post_process(
    db: Session,
    provider: Provider,
    ctx: ProviderContext,
    channel: Channel,
    item: InboundItem,
    result: SyncResult,
) -> None:
    action = channel.post_import_action
    if action == PostImportAction.LEAVE:
        return
    try:
        new_id = await provider.apply_post_action(ctx, item, action, channel.post_import_folder)
    except (ProviderError, ConfigurationError, UnsupportedOperationError) as exc:
        logger.warning(
            "Post-import %s failed for channel=%s message=%s",
            action.value,
            channel.id,
            item.external_message_id,
        )
        result.post_action_failures.append(
            {"external_message_id": item.external_message_id, "error": str(exc)}
        )
        return
    if new_id:
        ticket_service.update_provider_ref(db, channel.id, item.external_message_id, new_id)


async def _ingest_item(
    db: Session,
    provider: Provider,
    ctx: ProviderContext,
    channel: Channel,
    item: InboundItem,
    result: SyncResult,
) -> None:
    """Hand one item to the ticket collaborator, then post-process it."""
    if _is_self_sent(channel, item):
        result.skipped_self += 1
        return

    try:
        ref = ticket_service.create_or_append_message(
            db,
            org_id=channel.organization_id,
            channel_id=channel.id,
            external_message_id=item.external_message_id,
            sender=item.sender,
            body=item.body,
            subject=item.subject,
            attachments=item.attachments,
            conversation_key=item.conversation_key,
            provider_ref=item.source_ref,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise SyncError(f"Could not store message {item.external_message_id}: {exc}") from exc

    if ref.created:
        result.tickets_created += 1
    else:
        result.duplicates += 1

    # Also for duplicates left behind by an earlier run
    await _post_process(db, provider, ctx, channel, item, result)


async def sync_channel(db: Session, channel_id: UUID) -> SyncResult:
    """
    Run one sync for a channel.

    Skips (without audit) when the channel is not active or another run holds
    the claim. Otherwise writes exactly one sync audit entry.
    """
    channel = db.get(Channel, channel_id)
    if channel is None:
        raise ChannelNotFoundError(f"Channel {channel_id} not found")
    if channel.state != ChannelState.ACTIVE:
        return SyncResult(channel_id=channel_id, status="skipped", reason="not_active")
    if not claim_channel(db, channel_id):
        logger.info("Sync already running for channel=%s", channel_id)
        return SyncResult(channel_id=channel_id, status="skipped", reason="already_running")

    db.refresh(channel)
    provider = get_provider(channel.provider)
    result = SyncResult(channel_id=channel_id, status="success")
    old_watermark = channel.sync_watermark
    lower_bound = _latest(old_watermark, channel.synced_since)
    processed_watermark = old_watermark
    timed_out = False
    seen: set[str] = set()
    started = time.monotonic()

    try:
        with anyio.fail_after(settings.CHANNEL_SYNC_TIMEOUT_SECONDS):
            ctx = await credential_service.build_context(db, channel)
            folder = channel.fetch_folder or "INBOX"
            async with aclosing(provider.fetch_since(ctx, folder, lower_bound)) as items:
                async for item in items:
                    if result.items_processed >= settings.CHANNEL_SYNC_BATCH_LIMIT:
                        break
                    if item.external_message_id in seen:
                        continue
                    seen.add(item.external_message_id)
                    await _ingest_item(db, provider, ctx, channel, item, result)
                    result.items_processed += 1
                    processed_watermark = _latest(processed_watermark, item.received_at)
    except TimeoutError:
        timed_out = True
        result.status = "failure"
        result.error = f"Sync timed out after {settings.CHANNEL_SYNC_TIMEOUT_SECONDS}s"
    except SYNC_FAILURES as exc:
        result.status = "failure"
        result.error = getattr(exc, "detail", None) or str(exc)
    except Exception as exc:
        # Malformed provider data still ends the run as an audited failure
        db.rollback()
        result.status = "failure"
        result.error = f"Unexpected {type(exc).__name__}: {exc}"
        logger.error(
            "Unexpected error while syncing channel=%s",
            channel_id,
            exc_info=True,
            extra=build_log_context(
                org_id=channel.organization_id,
                channel_id=channel_id,
                provider=channel.provider.value,
            ),
        )

    latency_ms = int((time.monotonic() - started) * 1000)
    watermark = None if timed_out else _latest(old_watermark, processed_watermark)
    try:
        return _finish_run(db, channel, result, watermark=watermark, latency_ms=latency_ms)
    except SQLAlchemyError:
        db.rollback()
        _force_release(db, channel_id)
        raise


def _force_release(db: Session, channel_id: UUID) -> None:
    try:
        db.execute(update(Channel).where(Channel.id == channel_id).values(sync_started_at=None))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.error("Could not release sync claim for channel=%s", channel_id, exc_info=True)


def _finish_run(
    db: Session,
    channel: Channel,
    result: SyncResult,
    *,
    watermark: datetime | None,
    latency_ms: int,
) -> SyncResult:
    """Persist watermark, failure policy and the audit entry; releases the claim."""
    db.refresh(channel)

    if watermark is not None:
        channel.sync_watermark = watermark
    result.watermark = channel.sync_watermark
    release_channel(db, channel)

    if result.status == "success":
        channel.last_synced_at = _now_utc()
        channel_service.record_success(db, channel, commit=False)
        outcome = ConnectionOutcome.SUCCESS
    else:
        channel_service.record_failure(db, channel, result.error or "Sync failed", commit=False)
        outcome = ConnectionOutcome.FAILURE
        logger.warning(
            "Sync failed for channel=%s: %s",
            channel.id,
            result.error,
            extra=build_log_context(
                org_id=channel.organization_id,
                channel_id=channel.id,
                provider=channel.provider.value,
            ),
        )

    connection_audit_service.record_event(
        db,
        org_id=channel.organization_id,
        channel_id=channel.id,
        provider=channel.provider.value,
        event_type=ConnectionEventType.SYNC,
        outcome=outcome,
        latency_ms=latency_ms,
        items_processed=result.items_processed,
        error_detail=result.error,
        details=result.details(),
        commit=False,
    )
    db.commit()
    return result


# =============================================================================
# Triggers
# =============================================================================


def enqueue_channel_sync(
    db: Session, channel: Channel, *, reason: str = "schedule"
) -> Job | None:
    """
    Enqueue a channel_sync job. No-op when one is already pending or running.

    The idempotency key buckets by minute so a schedule tick and a manual
    trigger in the same minute collapse into one job.
    """
    if job_service.has_active_job(db, JobType.CHANNEL_SYNC, channel.id):
        logger.info("Sync already queued for channel=%s (reason=duplicate)", channel.id)
        return None

    now = _now_utc()
    job = job_service.schedule_job_once(
        db,
        org_id=channel.organization_id,
        job_type=JobType.CHANNEL_SYNC,
        payload={"channel_id": str(channel.id), "reason": reason},
        idempotency_key=f"channel_sync:{channel.id}:{int(now.timestamp()) // 60}",
    )
    if job is None:
        return None
    channel.last_triggered_at = now
    db.commit()
    return job


def request_manual_sync(db: Session, org_id: UUID, channel_id: UUID) -> Job | None:
    """Operator "sync now". Requires an active poll channel with credentials."""
    channel = channel_service.get_channel(db, org_id, channel_id)
    provider = get_provider(channel.provider)
    if not provider.supports("fetch_since"):
        raise UnsupportedOperationError(channel.provider.value, "fetch_since")
    if channel.state != ChannelState.ACTIVE:
        raise PreconditionError("Only active channels can be synced")
    if not credential_service.has_usable_credentials(db, channel):
        raise PreconditionError("Channel credentials are missing; authorize it again")
    return enqueue_channel_sync(db, channel, reason="manual")


def _active_poll_channels(db: Session) -> list[Channel]:
    poll_providers = [
        key
        for key, provider in PROVIDERS.items()
        if provider.capabilities.transport_mode == TransportMode.POLL
    ]
    return (
        db.query(Channel)
        .filter(Channel.state == ChannelState.ACTIVE, Channel.provider.in_(poll_providers))
        .all()
    )


def list_due_channels(db: Session, now: datetime | None = None) -> list[Channel]:
    """Active poll channels whose interval has elapsed since the last trigger."""
    now = now or _now_utc()
    candidates = _active_poll_channels(db)
    return [
        channel
        for channel in candidates
        if channel.last_triggered_at is None
        or channel.last_triggered_at + timedelta(minutes=channel.sync_interval_minutes) <= now
    ]


def schedule_due_channel_syncs(
    db: Session, *, channel_id: UUID | None = None, force: bool = False
) -> dict:
    """Enqueue syncs for due channels (or one channel). Returns counts."""
    if channel_id is not None:
        channel = db.get(Channel, channel_id)
        if channel is None:
            raise ChannelNotFoundError(f"Channel {channel_id} not found")
        channels = [channel] if channel.state == ChannelState.ACTIVE else []
        if channels and not force and channel not in list_due_channels(db):
            channels = []
    elif force:
        channels = _active_poll_channels(db)
    else:
        channels = list_due_channels(db)

    enqueued = 0
    for channel in channels:
        if enqueue_channel_sync(db, channel, reason="schedule"):
            enqueued += 1
    return {"due": len(channels), "enqueued": enqueued, "skipped": len(channels) - enqueued}
