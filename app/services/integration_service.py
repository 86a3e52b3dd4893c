"""Organization integrations - org-level app credentials per provider family.

Channels of OAuth providers authorize against the org's own app registration
(Microsoft Entra app, Google OAuth client, Meta app). An integration must be
saved, verified and active before such a channel can start authorization.
"""

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.encryption import decrypt_json, encrypt_json
from app.core.security import verify_secret
from app.db.enums import IntegrationFamily
from app.db.models import OrganizationIntegration
from app.services.channel_errors import ConfigurationError, ProviderError
from app.services.channel_providers import meta as meta_provider
from app.services.channel_providers import microsoft365 as microsoft365_provider

logger = logging.getLogger(__name__)

REQUIRED_FIELDS: dict[IntegrationFamily, tuple[str, ...]] = {
    IntegrationFamily.MICROSOFT365: ("client_id", "client_secret"),
    IntegrationFamily.GOOGLE: ("client_id", "client_secret"),
    IntegrationFamily.META: ("app_id", "app_secret", "webhook_verify_token"),
}

OPTIONAL_FIELDS: dict[IntegrationFamily, tuple[str, ...]] = {
    IntegrationFamily.MICROSOFT365: ("tenant_id",),
    IntegrationFamily.GOOGLE: (),
    IntegrationFamily.META: (),
}

# Fields that are safe to echo back to admins
PUBLIC_FIELDS = frozenset({"client_id", "tenant_id", "app_id"})


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Queries
# =============================================================================


def get_integration(
    db: Session, org_id: UUID, family: IntegrationFamily
) -> OrganizationIntegration | None:
    return (
        db.query(OrganizationIntegration)
        .filter(
            OrganizationIntegration.organization_id == org_id,
            OrganizationIntegration.family == family,
        )
        .first()
    )


def list_integrations(db: Session, org_id: UUID) -> list[OrganizationIntegration]:
    return (
        db.query(OrganizationIntegration)
        .filter(OrganizationIntegration.organization_id == org_id)
        .order_by(OrganizationIntegration.family)
        .all()
    )


def get_credentials(integration: OrganizationIntegration) -> dict:
    """Decrypted credential dict. Never log or return the result."""
    return decrypt_json(integration.credentials_encrypted)


def public_credentials(integration: OrganizationIntegration) -> dict:
    """Non-secret identifiers for display."""
    return {k: v for k, v in get_credentials(integration).items() if k in PUBLIC_FIELDS}


def is_integration_active_and_verified(
    db: Session, org_id: UUID, family: IntegrationFamily
) -> bool:
    integration = get_integration(db, org_id, family)
    return bool(integration and integration.is_active and integration.is_verified)


def get_active_credentials(db: Session, org_id: UUID, family: IntegrationFamily) -> dict:
    """Credentials of an active integration, or {} when there is none."""
    integration = get_integration(db, org_id, family)
    if not integration or not integration.is_active:
        return {}
    return get_credentials(integration)


# =============================================================================
# Mutations
# =============================================================================


def validate_credentials(family: IntegrationFamily, credentials: dict) -> dict:
    """Check required fields and drop unknown ones."""
    required = REQUIRED_FIELDS[family]
    missing = [f for f in required if not str(credentials.get(f) or "").strip()]
    if missing:
        raise ConfigurationError(f"Missing {family.value} credentials: {', '.join(missing)}")
    allowed = required + OPTIONAL_FIELDS[family]
    return {
        f: str(credentials[f]).strip()
        for f in allowed
        if credentials.get(f) is not None and str(credentials[f]).strip()
    }


def save_integration(
    db: Session, org_id: UUID, family: IntegrationFamily, credentials: dict
) -> OrganizationIntegration:
    """Create or replace an integration. Re-saving requires a new verification."""
    cleaned = validate_credentials(family, credentials)
    integration = get_integration(db, org_id, family)
    if integration is None:
        integration = OrganizationIntegration(organization_id=org_id, family=family)
        db.add(integration)

    integration.credentials_encrypted = encrypt_json(cleaned)
    integration.is_active = True
    integration.is_verified = False
    integration.verified_at = None
    integration.last_error = None
    db.commit()
    db.refresh(integration)
    logger.info("Saved %s integration for org=%s", family.value, org_id)
    return integration


async def verify_integration(
    db: Session, org_id: UUID, family: IntegrationFamily, *, transport=None
) -> OrganizationIntegration:
    """
    Probe the provider with the stored credentials and record the outcome.

    Microsoft: client-credentials token. Meta: app access token.
    Google: field check only (no app-level probe without a user).
    """
    integration = get_integration(db, org_id, family)
    if integration is None:
        raise ConfigurationError(f"No {family.value} integration configured")

    credentials = get_credentials(integration)
    try:
        validate_credentials(family, credentials)
        if family == IntegrationFamily.MICROSOFT365:
            await microsoft365_provider.verify_integration_credentials(
                credentials, transport=transport
            )
        elif family == IntegrationFamily.META:
            await meta_provider.verify_integration_credentials(credentials, transport=transport)
    except (ProviderError, ConfigurationError) as exc:
        integration.is_verified = False
        integration.verified_at = None
        integration.last_error = str(exc)
        db.commit()
        db.refresh(integration)
        logger.warning("%s integration verification failed for org=%s", family.value, org_id)
        return integration

    integration.is_verified = True
    integration.verified_at = _now_utc()
    integration.last_error = None
    db.commit()
    db.refresh(integration)
    logger.info("Verified %s integration for org=%s", family.value, org_id)
    return integration


def deactivate_integration(
    db: Session, org_id: UUID, family: IntegrationFamily
) -> OrganizationIntegration:
    integration = get_integration(db, org_id, family)
    if integration is None:
        raise ConfigurationError(f"No {family.value} integration configured")
    integration.is_active = False
    db.commit()
    db.refresh(integration)
    return integration


# =============================================================================
# Webhook secrets
# =============================================================================


def get_candidate_webhook_secrets(db: Session) -> list[tuple[UUID | None, str]]:
    """
    (org_id, app_secret) pairs a Meta webhook may be signed with.

    The platform-wide META_APP_SECRET, when set, matches any org (org_id None).
    """
    candidates: list[tuple[UUID | None, str]] = []
    integrations = (
        db.query(OrganizationIntegration)
        .filter(
            OrganizationIntegration.family == IntegrationFamily.META,
            OrganizationIntegration.is_active.is_(True),
        )
        .all()
    )
    for integration in integrations:
        secret = get_credentials(integration).get("app_secret")
        if secret:
            candidates.append((integration.organization_id, secret))
    if settings.META_APP_SECRET:
        candidates.append((None, settings.META_APP_SECRET))
    return candidates


def matches_webhook_verify_token(db: Session, token: str | None) -> bool:
    """True if any active Meta integration uses this hub.verify_token."""
    if not token:
        return False
    integrations = (
        db.query(OrganizationIntegration)
        .filter(
            OrganizationIntegration.family == IntegrationFamily.META,
            OrganizationIntegration.is_active.is_(True),
        )
        .all()
    )
    return any(
        verify_secret(token, get_credentials(i).get("webhook_verify_token"))
        for i in integrations
    )
