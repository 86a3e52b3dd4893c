"""Channel OAuth coordinator - authorization redirect, state tokens, code exchange.

State tokens are server-held, single use and expire after
OAUTH_STATE_TTL_SECONDS. They carry identifiers only.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import generate_oauth_state
from app.db.enums import ChannelState, ConnectionEventType, ConnectionOutcome
from app.db.models import Channel, OAuthStateToken
from app.services import (
    channel_service,
    connection_audit_service,
    credential_service,
    integration_service,
)
from app.services.channel_errors import (
    AuthorizationError,
    ConfigurationError,
    ExchangeError,
    ProviderError,
)
from app.services.channel_providers import ProviderContext, get_provider

logger = logging.getLogger(__name__)

# Rejection codes surfaced as ?error= on the frontend redirect
ERROR_ACCESS_DENIED = "access_denied"
ERROR_MISSING_CODE = "missing_code"
ERROR_INVALID_STATE = "invalid_state"
ERROR_STATE_CONSUMED = "state_consumed"
ERROR_STATE_EXPIRED = "state_expired"
ERROR_PROVIDER_MISMATCH = "provider_mismatch"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Initiate
# =============================================================================


def initiate_authorization(
    db: Session, org_id: UUID, channel_id: UUID, user_id: UUID
) -> str:
    """
    Start an OAuth authorization for a channel and return the provider URL.

    Preconditions are checked before anything changes. Older unconsumed
    state tokens of the channel are invalidated.
    """
    channel = channel_service.get_channel(db, org_id, channel_id)
    channel_service.ensure_can_authorize(db, channel)

    provider = get_provider(channel.provider)
    capabilities = provider.capabilities
    integration_credentials = (
        integration_service.get_active_credentials(db, org_id, capabilities.integration_family)
        if capabilities.integration_family
        else {}
    )
    ctx = ProviderContext(
        channel=channel,
        integration_credentials=integration_credentials,
        redirect_uri=credential_service.oauth_redirect_uri(capabilities.provider.value),
    )

    state = generate_oauth_state()
    authorization_url = provider.authorize(ctx, state)

    now = _now_utc()
    db.execute(
        update(OAuthStateToken)
        .where(
            OAuthStateToken.channel_id == channel.id,
            OAuthStateToken.consumed_at.is_(None),
        )
        .values(consumed_at=now)
    )
    db.add(
        OAuthStateToken(
            state=state,
            channel_id=channel.id,
            organization_id=org_id,
            user_id=user_id,
            provider=channel.provider,
            issued_at=now,
            expires_at=now + timedelta(seconds=settings.OAUTH_STATE_TTL_SECONDS),
        )
    )
    channel_service.mark_authorization_pending(db, channel, commit=False)
    connection_audit_service.record_event(
        db,
        org_id=org_id,
        channel_id=channel.id,
        provider=channel.provider.value,
        event_type=ConnectionEventType.AUTH,
        outcome=ConnectionOutcome.SUCCESS,
        details={"step": "redirect"},
        commit=False,
    )
    db.commit()
    logger.info("Started OAuth for channel=%s provider=%s", channel.id, channel.provider.value)
    return authorization_url


# =============================================================================
# Callback
# =============================================================================


def _validate_state(
    db: Session, provider_segment: str, state: str | None, user_id: UUID | None
) -> OAuthStateToken:
    if not state:
        raise AuthorizationError(ERROR_INVALID_STATE, "Missing state")
    token = db.query(OAuthStateToken).filter(OAuthStateToken.state == state).first()
    if token is None:
        raise AuthorizationError(ERROR_INVALID_STATE, "Unknown state")
    if token.consumed_at is not None:
        raise AuthorizationError(ERROR_STATE_CONSUMED, "State already used")
    if token.expires_at <= _now_utc():
        raise AuthorizationError(ERROR_STATE_EXPIRED, "State expired")
    if user_id is None or token.user_id != user_id:
        raise AuthorizationError(ERROR_INVALID_STATE, "State issued to another session")
    if token.provider.value != provider_segment:
        logger.warning(
            "OAuth provider mismatch for channel=%s: state=%s route=%s",
            token.channel_id,
            token.provider.value,
            provider_segment,
        )
        connection_audit_service.record_event(
            db,
            org_id=token.organization_id,
            channel_id=token.channel_id,
            provider=token.provider.value,
            event_type=ConnectionEventType.AUTH,
            outcome=ConnectionOutcome.REJECTED,
            error_detail=f"Callback arrived on '{provider_segment}' route",
            details={"step": "callback", "reason": ERROR_PROVIDER_MISMATCH},
        )
        raise AuthorizationError(ERROR_PROVIDER_MISMATCH, "Provider mismatch")
    return token


def _consume(db: Session, token: OAuthStateToken) -> None:
    """Mark the token used. A concurrent callback that lost the race gets state_consumed."""
    result = db.execute(
        update(OAuthStateToken)
        .where(OAuthStateToken.id == token.id, OAuthStateToken.consumed_at.is_(None))
        .values(consumed_at=_now_utc())
    )
    db.commit()
    if result.rowcount != 1:
        raise AuthorizationError(ERROR_STATE_CONSUMED, "State already used")


async def handle_callback(
    db: Session,
    provider_segment: str,
    *,
    code: str | None,
    state: str | None,
    error: str | None,
    user_id: UUID | None,
) -> Channel:
    """
    Verify an OAuth callback, exchange the code and authenticate the channel.

    Raises AuthorizationError for rejected callbacks (no side effects apart
    from the tampering audit) and ExchangeError when the provider refuses the code.
    """
    if error:
        raise AuthorizationError(ERROR_ACCESS_DENIED, error)
    if not state:
        raise AuthorizationError(ERROR_INVALID_STATE, "Missing state")
    if not code:
        raise AuthorizationError(ERROR_MISSING_CODE, "Missing authorization code")

    token = _validate_state(db, provider_segment, state, user_id)
    _consume(db, token)

    channel = (
        db.query(Channel)
        .filter(Channel.id == token.channel_id, Channel.organization_id == token.organization_id)
        .first()
    )
    if channel is None or channel.state != ChannelState.AUTHORIZATION_PENDING:
        raise AuthorizationError(ERROR_INVALID_STATE, "Channel is not awaiting authorization")

    provider = get_provider(channel.provider)
    ctx = await credential_service.build_context(db, channel, refresh=False)
    started = time.monotonic()
    try:
        tokens = await provider.exchange_token(ctx, code)
    except (ProviderError, ConfigurationError) as exc:
        detail = getattr(exc, "detail", None) or str(exc)
        connection_audit_service.record_event(
            db,
            org_id=channel.organization_id,
            channel_id=channel.id,
            provider=channel.provider.value,
            event_type=ConnectionEventType.AUTH,
            outcome=ConnectionOutcome.FAILURE,
            latency_ms=int((time.monotonic() - started) * 1000),
            error_detail=detail,
            details={"step": "exchange"},
        )
        logger.warning("OAuth exchange failed for channel=%s", channel.id)
        raise ExchangeError(str(exc)) from exc

    credential_service.save_tokens(db, channel, tokens, commit=False)
    channel_service.mark_authenticated(
        db, channel, account_email=tokens.account_email, commit=False
    )
    connection_audit_service.record_event(
        db,
        org_id=channel.organization_id,
        channel_id=channel.id,
        provider=channel.provider.value,
        event_type=ConnectionEventType.AUTH,
        outcome=ConnectionOutcome.SUCCESS,
        latency_ms=int((time.monotonic() - started) * 1000),
        details={"step": "exchange", "scopes": tokens.granted_scopes or []},
        commit=False,
    )
    db.commit()
    db.refresh(channel)
    logger.info("Channel %s authenticated", channel.id)
    return channel


def purge_state_tokens(db: Session) -> int:
    """Delete expired or consumed state tokens. Returns rows removed."""
    deleted = (
        db.query(OAuthStateToken)
        .filter(
            or_(
                OAuthStateToken.expires_at <= _now_utc(),
                OAuthStateToken.consumed_at.is_not(None),
            )
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted
