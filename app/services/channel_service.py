"""Channel service - channel lifecycle state machine, default flag and failure policy.

This module is the only writer of Channel.state, Channel.is_default and
Channel.failure_count.
"""

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.enums import (
    CHANNEL_AUTHORIZABLE_STATES,
    CHANNEL_CONNECTED_STATES,
    CHANNEL_DELETABLE_STATES,
    ChannelKind,
    ChannelProvider,
    ChannelState,
    PostImportAction,
    TransportMode,
)
from app.db.models import Channel
from app.services import credential_service, integration_service, ticket_service
from app.services.channel_errors import (
    ChannelNotFoundError,
    ConfigurationError,
    InvalidTransitionError,
    PreconditionError,
    ProviderError,
    UnsupportedOperationError,
)
from app.services.channel_providers import (
    ConnectionTestResult,
    DiscoveredTarget,
    ProviderContext,
    get_provider,
)
from app.services.channel_providers.imap import validate_credentials as validate_imap_credentials

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[ChannelState, frozenset[ChannelState]] = {
    ChannelState.UNCONNECTED: frozenset({ChannelState.AUTHORIZATION_PENDING}),
    ChannelState.AUTHORIZATION_PENDING: frozenset(
        {ChannelState.AUTHORIZATION_PENDING, ChannelState.AUTHENTICATED}
    ),
    ChannelState.AUTHENTICATED: frozenset(
        {ChannelState.CONFIGURATION_PENDING, ChannelState.ACTIVE}
    ),
    ChannelState.CONFIGURATION_PENDING: frozenset({ChannelState.ACTIVE}),
    ChannelState.ACTIVE: frozenset({ChannelState.SUSPENDED}),
    ChannelState.SUSPENDED: frozenset(
        {ChannelState.ACTIVE, ChannelState.AUTHORIZATION_PENDING}
    ),
}

UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "email_address",
        "department_id",
        "owner_user_id",
        "sync_interval_minutes",
        "synced_since",
        "post_import_action",
        "post_import_folder",
    }
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _transition(channel: Channel, target: ChannelState) -> None:
    if target not in ALLOWED_TRANSITIONS.get(channel.state, frozenset()):
        raise InvalidTransitionError(channel.state.value, target.value)
    logger.info(
        "Channel %s state %s -> %s", channel.id, channel.state.value, target.value
    )
    channel.state = target


# =============================================================================
# Queries
# =============================================================================


def get_channel(db: Session, org_id: UUID, channel_id: UUID) -> Channel:
    """Get a channel scoped to the org. Raises ChannelNotFoundError."""
    channel = (
        db.query(Channel)
        .filter(Channel.id == channel_id, Channel.organization_id == org_id)
        .first()
    )
    if not channel:
        raise ChannelNotFoundError(f"Channel {channel_id} not found")
    return channel


def list_channels(
    db: Session,
    org_id: UUID,
    *,
    kind: ChannelKind | None = None,
    provider: ChannelProvider | None = None,
    state: ChannelState | None = None,
) -> list[Channel]:
    query = db.query(Channel).filter(Channel.organization_id == org_id)
    if kind:
        query = query.filter(Channel.kind == kind)
    if provider:
        query = query.filter(Channel.provider == provider)
    if state:
        query = query.filter(Channel.state == state)
    return query.order_by(Channel.created_at.asc()).all()


def get_default_channel(db: Session, org_id: UUID, kind: ChannelKind) -> Channel | None:
    return (
        db.query(Channel)
        .filter(
            Channel.organization_id == org_id,
            Channel.kind == kind,
            Channel.is_default.is_(True),
        )
        .first()
    )


# =============================================================================
# Create / update / delete
# =============================================================================


async def create_channel(
    db: Session,
    org_id: UUID,
    *,
    provider: ChannelProvider,
    name: str,
    email_address: str | None = None,
    department_id: UUID | None = None,
    owner_user_id: UUID | None = None,
    sync_interval_minutes: int | None = None,
    credentials: dict | None = None,
    is_default: bool = False,
) -> Channel:
    """
    Create a channel.

    OAuth providers start unconnected. Credential-based providers (IMAP) are
    validated and probed first, then created already authenticated.
    """
    provider_impl = get_provider(provider)
    capabilities = provider_impl.capabilities

    channel = Channel(
        organization_id=org_id,
        provider=provider,
        kind=capabilities.kind,
        name=name.strip(),
        email_address=email_address,
        department_id=department_id,
        owner_user_id=owner_user_id,
        sync_interval_minutes=sync_interval_minutes or settings.CHANNEL_DEFAULT_SYNC_INTERVAL_MINUTES,
        state=ChannelState.UNCONNECTED,
        failure_count=0,
        is_default=False,
        subscribed_topics=[],
        post_import_action=PostImportAction.LEAVE,
    )

    secrets: dict | None = None
    if not capabilities.requires_oauth:
        if not credentials:
            raise ConfigurationError(f"{provider.value} channels require credentials")
        secrets = validate_imap_credentials(credentials)
        if not channel.email_address:
            channel.email_address = secrets.get("imap_username")
        # Probe before anything is written
        probe = await _probe(provider_impl, ProviderContext(channel=channel, secrets=secrets))
        if not probe.success:
            raise ConfigurationError(f"Could not connect: {probe.message}")
        channel.state = ChannelState.AUTHENTICATED

    db.add(channel)
    db.flush()
    if secrets is not None:
        credential_service.save_secrets(db, channel, secrets, merge=False, commit=False)
    if is_default:
        _clear_other_defaults(db, channel)
        channel.is_default = True
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise PreconditionError("Another default channel was set concurrently") from exc
    db.refresh(channel)
    logger.info("Created %s channel %s for org=%s", provider.value, channel.id, org_id)
    return channel


def update_channel(db: Session, org_id: UUID, channel_id: UUID, **fields) -> Channel:
    """Update name, routing, sync interval, import floor or post-processing policy."""
    channel = get_channel(db, org_id, channel_id)
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ConfigurationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

    interval = fields.get("sync_interval_minutes", channel.sync_interval_minutes)
    if interval is None or interval < 1:
        raise ConfigurationError("sync_interval_minutes must be at least 1")
    action = fields.get("post_import_action") or channel.post_import_action
    folder = fields.get("post_import_folder", channel.post_import_folder)
    if action == PostImportAction.MOVE_TO_FOLDER and not folder:
        raise ConfigurationError("Move action requires a destination folder")

    for key, value in fields.items():
        if value is None and key in ("name", "post_import_action"):
            continue
        setattr(channel, key, value)
    db.commit()
    db.refresh(channel)
    return channel


def _clear_other_defaults(db: Session, channel: Channel) -> None:
    db.query(Channel).filter(
        Channel.organization_id == channel.organization_id,
        Channel.kind == channel.kind,
        Channel.id != channel.id,
        Channel.is_default.is_(True),
    ).update({Channel.is_default: False}, synchronize_session="fetch")
    db.flush()


def set_default(db: Session, org_id: UUID, channel_id: UUID) -> Channel:
    """Make this the org's default channel of its kind, clearing the others atomically."""
    channel = get_channel(db, org_id, channel_id)
    _clear_other_defaults(db, channel)
    channel.is_default = True
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise PreconditionError("Another default channel was set concurrently") from exc
    db.refresh(channel)
    return channel


def delete_channel(db: Session, org_id: UUID, channel_id: UUID) -> None:
    """Delete a channel that is idle, not default and owns no tickets."""
    channel = get_channel(db, org_id, channel_id)
    if channel.state not in CHANNEL_DELETABLE_STATES:
        raise PreconditionError(
            f"Channel cannot be deleted while {channel.state.value}; suspend it first"
        )
    if channel.is_default:
        raise PreconditionError("Default channel cannot be deleted; choose another default first")
    if ticket_service.channel_has_tickets(db, channel.id):
        raise PreconditionError("Channel has tickets and cannot be deleted")

    db.delete(channel)
    db.commit()
    logger.info("Deleted channel %s for org=%s", channel_id, org_id)


# =============================================================================
# Authorization
# =============================================================================


def ensure_can_authorize(db: Session, channel: Channel) -> None:
    """
    Check that an OAuth authorization may start. Does not change state.

    Raises UnsupportedOperationError, InvalidTransitionError or PreconditionError.
    """
    capabilities = get_provider(channel.provider).capabilities
    if not capabilities.requires_oauth:
        raise UnsupportedOperationError(channel.provider.value, "authorize")
    if channel.state not in CHANNEL_AUTHORIZABLE_STATES:
        raise InvalidTransitionError(channel.state.value, ChannelState.AUTHORIZATION_PENDING.value)
    family = capabilities.integration_family
    if capabilities.requires_prior_integration and family is not None:
        if not integration_service.is_integration_active_and_verified(
            db, channel.organization_id, family
        ):
            raise PreconditionError(
                f"Connect and verify the {family.value} integration before authorizing this channel",
                action_url=f"/integrations/{family.value}",
            )


def mark_authorization_pending(db: Session, channel: Channel, *, commit: bool = True) -> Channel:
    _transition(channel, ChannelState.AUTHORIZATION_PENDING)
    if commit:
        db.commit()
        db.refresh(channel)
    return channel


def mark_authenticated(
    db: Session, channel: Channel, *, account_email: str | None = None, commit: bool = True
) -> Channel:
    _transition(channel, ChannelState.AUTHENTICATED)
    if account_email and not channel.email_address:
        channel.email_address = account_email
    channel.failure_count = 0
    channel.last_error = None
    channel.deactivated_at = None
    if commit:
        db.commit()
        db.refresh(channel)
    return channel


# =============================================================================
# Configuration
# =============================================================================


async def discover_targets(db: Session, org_id: UUID, channel_id: UUID) -> list[DiscoveredTarget]:
    """
    List folders (mailboxes) or accounts (messaging) the channel can bind to.

    Opening this step moves an authenticated channel to configuration_pending.
    """
    channel = get_channel(db, org_id, channel_id)
    if channel.state not in CHANNEL_CONNECTED_STATES:
        raise PreconditionError("Authorize the channel before configuring it")

    provider = get_provider(channel.provider)
    ctx = await credential_service.build_context(db, channel)
    targets = await provider.discover_targets(ctx)

    if channel.state == ChannelState.AUTHENTICATED:
        _transition(channel, ChannelState.CONFIGURATION_PENDING)
        db.commit()
        db.refresh(channel)
    return targets


async def configure_channel(
    db: Session,
    org_id: UUID,
    channel_id: UUID,
    *,
    target_id: str,
    post_import_action: PostImportAction = PostImportAction.LEAVE,
    post_import_folder: str | None = None,
    synced_since: datetime | None = None,
) -> Channel:
    """
    Bind the channel to a folder/account and activate it.

    The selection is checked against a fresh discovery. Push providers
    subscribe to webhooks first and stay configuration_pending if that fails.
    """
    channel = get_channel(db, org_id, channel_id)
    if channel.state not in (ChannelState.AUTHENTICATED, ChannelState.CONFIGURATION_PENDING):
        raise InvalidTransitionError(channel.state.value, ChannelState.ACTIVE.value)

    provider = get_provider(channel.provider)
    capabilities = provider.capabilities
    ctx = await credential_service.build_context(db, channel)
    targets = {t.id: t for t in await provider.discover_targets(ctx)}

    target = targets.get(target_id)
    if target is None:
        raise ConfigurationError(f"'{target_id}' is no longer available on this account")

    if capabilities.target_kind == "folder":
        if post_import_action == PostImportAction.MOVE_TO_FOLDER:
            if not post_import_folder:
                raise ConfigurationError("Move action requires a destination folder")
            if post_import_folder not in targets:
                raise ConfigurationError(f"Folder '{post_import_folder}' does not exist")
            if post_import_folder == target_id:
                raise ConfigurationError("Destination folder must differ from the fetch folder")
        channel.fetch_folder = target.id
        channel.post_import_action = post_import_action
        channel.post_import_folder = (
            post_import_folder if post_import_action == PostImportAction.MOVE_TO_FOLDER else None
        )
        channel.synced_since = synced_since
    else:
        channel.external_account_id = target.id
        channel.external_account_name = target.name
        if target.credentials:
            credential_service.save_secrets(db, channel, target.credentials, commit=False)

    if channel.state == ChannelState.AUTHENTICATED:
        _transition(channel, ChannelState.CONFIGURATION_PENDING)
    db.commit()
    db.refresh(channel)

    if capabilities.transport_mode == TransportMode.PUSH:
        ctx = await credential_service.build_context(db, channel, refresh=False)
        try:
            topics = await provider.subscribe_webhook(ctx)
        except ProviderError as exc:
            channel.last_error = str(exc)
            db.commit()
            logger.warning("Webhook subscription failed for channel=%s", channel.id)
            raise
        channel.subscribed_topics = topics

    _transition(channel, ChannelState.ACTIVE)
    channel.failure_count = 0
    channel.last_error = None
    channel.deactivated_at = None
    db.commit()
    db.refresh(channel)
    logger.info("Activated channel %s (%s)", channel.id, channel.provider.value)
    return channel


# =============================================================================
# Suspension and failure policy
# =============================================================================


def suspend_channel(
    db: Session, org_id: UUID, channel_id: UUID, reason: str | None = None
) -> Channel:
    channel = get_channel(db, org_id, channel_id)
    _transition(channel, ChannelState.SUSPENDED)
    channel.deactivated_at = _now_utc()
    if reason:
        channel.last_error = reason
    db.commit()
    db.refresh(channel)
    return channel


def reactivate_channel(db: Session, org_id: UUID, channel_id: UUID) -> Channel:
    """Resume a suspended channel. Resets the failure count."""
    channel = get_channel(db, org_id, channel_id)
    if channel.state != ChannelState.SUSPENDED:
        raise InvalidTransitionError(channel.state.value, ChannelState.ACTIVE.value)
    if not credential_service.has_usable_credentials(db, channel):
        raise PreconditionError("Channel credentials are missing; authorize it again")
    if not (channel.fetch_folder or channel.external_account_id):
        raise PreconditionError("Channel was never configured; finish configuration first")

    _transition(channel, ChannelState.ACTIVE)
    channel.failure_count = 0
    channel.last_error = None
    channel.deactivated_at = None
    db.commit()
    db.refresh(channel)
    return channel


def record_failure(db: Session, channel: Channel, error: str, *, commit: bool = True) -> bool:
    """
    Count a sync/send failure. Suspends the channel at the threshold.

    Returns True if this failure suspended the channel.
    """
    channel.failure_count = (channel.failure_count or 0) + 1
    channel.last_error = error[:2000]
    suspended = False
    if (
        channel.failure_count >= settings.CHANNEL_FAILURE_THRESHOLD
        and channel.state == ChannelState.ACTIVE
    ):
        _transition(channel, ChannelState.SUSPENDED)
        channel.deactivated_at = _now_utc()
        suspended = True
        logger.warning(
            "Channel %s suspended after %s consecutive failures",
            channel.id,
            channel.failure_count,
        )
    if commit:
        db.commit()
        db.refresh(channel)
    return suspended


def record_success(db: Session, channel: Channel, *, commit: bool = True) -> None:
    channel.failure_count = 0
    channel.last_error = None
    if commit:
        db.commit()
        db.refresh(channel)


# =============================================================================
# Test connection
# =============================================================================


async def _probe(provider, ctx: ProviderContext) -> ConnectionTestResult:
    try:
        return await provider.test_connection(ctx)
    except ProviderError as exc:
        return ConnectionTestResult(success=False, message=str(exc))


async def test_connection(db: Session, org_id: UUID, channel_id: UUID) -> ConnectionTestResult:
    """Probe the provider with the stored credentials. Never changes channel state."""
    channel = get_channel(db, org_id, channel_id)
    if channel.state not in CHANNEL_CONNECTED_STATES:
        raise PreconditionError("Authorize the channel before testing it")
    provider = get_provider(channel.provider)
    try:
        ctx = await credential_service.build_context(db, channel)
    except ProviderError as exc:
        return ConnectionTestResult(success=False, message=str(exc))
    return await _probe(provider, ctx)
