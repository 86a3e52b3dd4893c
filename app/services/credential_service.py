"""Channel credential store - encrypted per-channel tokens and secrets.

Written only by the OAuth exchange, the refresh path and channel
configuration (IMAP login, page tokens). Nothing here is ever logged.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.encryption import decrypt_json, decrypt_token, encrypt_json, encrypt_token
from app.db.models import Channel, ChannelCredential
from app.services import integration_service
from app.services.channel_providers import ProviderContext, TokenSet, get_provider

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def oauth_redirect_uri(provider: str) -> str:
    """Callback URL registered with the provider's app."""
    return f"{settings.API_BASE_URL.rstrip('/')}/channels/oauth/{provider}/callback"


def get_credential(db: Session, channel: Channel) -> ChannelCredential | None:
    return (
        db.query(ChannelCredential).filter(ChannelCredential.channel_id == channel.id).first()
    )


def _get_or_create(db: Session, channel: Channel) -> ChannelCredential:
    credential = get_credential(db, channel)
    if credential is None:
        credential = ChannelCredential(channel_id=channel.id)
        db.add(credential)
    return credential


def save_tokens(
    db: Session, channel: Channel, tokens: TokenSet, *, commit: bool = True
) -> ChannelCredential:
    """Persist an OAuth token set (encrypted). Keeps the old refresh token if none was issued."""
    credential = _get_or_create(db, channel)
    credential.access_token_encrypted = encrypt_token(tokens.access_token)
    if tokens.refresh_token:
        credential.refresh_token_encrypted = encrypt_token(tokens.refresh_token)
    credential.token_expires_at = (
        _now_utc() + timedelta(seconds=int(tokens.expires_in)) if tokens.expires_in else None
    )
    if tokens.granted_scopes is not None:
        credential.granted_scopes = tokens.granted_scopes
    if commit:
        db.commit()
        db.refresh(credential)
    else:
        db.flush()
    return credential


def get_secrets(credential: ChannelCredential | None) -> dict:
    if credential is None:
        return {}
    return decrypt_json(credential.secrets_encrypted)


def save_secrets(
    db: Session, channel: Channel, secrets: dict, *, merge: bool = True, commit: bool = True
) -> ChannelCredential:
    """Persist non-OAuth secrets (IMAP login, page tokens)."""
    credential = _get_or_create(db, channel)
    current = get_secrets(credential) if merge else {}
    current.update({k: v for k, v in secrets.items() if v is not None})
    credential.secrets_encrypted = encrypt_json(current)
    if commit:
        db.commit()
        db.refresh(credential)
    else:
        db.flush()
    return credential


def has_usable_credentials(db: Session, channel: Channel) -> bool:
    credential = get_credential(db, channel)
    if credential is None:
        return False
    if get_provider(channel.provider).capabilities.requires_oauth:
        return bool(credential.access_token_encrypted)
    return bool(credential.secrets_encrypted)


def needs_refresh(credential: ChannelCredential, now: datetime | None = None) -> bool:
    """True when the access token expires within the refresh leeway."""
    if credential.token_expires_at is None:
        return False
    now = now or _now_utc()
    leeway = timedelta(seconds=settings.CHANNEL_TOKEN_REFRESH_LEEWAY_SECONDS)
    return credential.token_expires_at <= now + leeway


async def build_context(db: Session, channel: Channel, *, refresh: bool = True) -> ProviderContext:
    """
    Assemble what a provider call needs for this channel.

    Refreshes the access token first when it is about to expire. A failed
    refresh raises ProviderError; the caller treats it like any provider failure.
    """
    provider = get_provider(channel.provider)
    capabilities = provider.capabilities

    integration_credentials: dict = {}
    if capabilities.integration_family is not None:
        integration_credentials = integration_service.get_active_credentials(
            db, channel.organization_id, capabilities.integration_family
        )

    credential = get_credential(db, channel)
    ctx = ProviderContext(
        channel=channel,
        access_token=(
            decrypt_token(credential.access_token_encrypted)
            if credential and credential.access_token_encrypted
            else None
        ),
        secrets=get_secrets(credential),
        integration_credentials=integration_credentials,
        redirect_uri=oauth_redirect_uri(capabilities.provider.value),
    )

    if (
        refresh
        and credential is not None
        and ctx.access_token
        and provider.supports("refresh_token")
        and needs_refresh(credential)
    ):
        refresh_token = (
            decrypt_token(credential.refresh_token_encrypted)
            if credential.refresh_token_encrypted
            else None
        )
        tokens = await provider.refresh_token(ctx, refresh_token)
        save_tokens(db, channel, tokens)
        ctx.access_token = tokens.access_token
        logger.info("Refreshed access token for channel=%s", channel.id)

    return ctx


def clear_credentials(db: Session, channel: Channel, *, commit: bool = True) -> None:
    credential = get_credential(db, channel)
    if credential is not None:
        db.delete(credential)
        if commit:
            db.commit()
