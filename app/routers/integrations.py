"""Organization integrations router - app credentials that back OAuth and Meta channels."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.deps import get_db, require_csrf_header, require_roles
from app.db.enums import ROLES_CAN_MANAGE_CHANNELS, IntegrationFamily
from app.db.models import OrganizationIntegration
from app.schemas.auth import UserSession
from app.schemas.channels import IntegrationListResponse, IntegrationRead, IntegrationUpsert
from app.services import integration_service
from app.services.channel_errors import ConfigurationError

router = APIRouter(prefix="/integrations", tags=["Integrations"])
logger = logging.getLogger(__name__)

_manage = require_roles(ROLES_CAN_MANAGE_CHANNELS)


def _to_read(integration: OrganizationIntegration) -> IntegrationRead:
    credentials = integration_service.get_credentials(integration)
    return IntegrationRead(
        family=integration.family,
        is_active=integration.is_active,
        is_verified=integration.is_verified,
        verified_at=integration.verified_at,
        last_error=integration.last_error,
        public_credentials=integration_service.public_credentials(integration),
        configured_fields=sorted(credentials.keys()),
        updated_at=integration.updated_at,
    )


def _require(db: Session, session: UserSession, family: IntegrationFamily) -> OrganizationIntegration:
    integration = integration_service.get_integration(db, session.org_id, family)
    if not integration:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Integration '{family.value}' not configured",
        )
    return integration


# ============================================================================
# Read
# ============================================================================


@router.get("", response_model=IntegrationListResponse)
def list_integrations(
    db: Session = Depends(get_db),
    session: UserSession = Depends(_manage),
) -> IntegrationListResponse:
    """List the organization's integrations. Secrets are never returned."""
    integrations = integration_service.list_integrations(db, session.org_id)
    return IntegrationListResponse(items=[_to_read(i) for i in integrations])


@router.get("/{family}", response_model=IntegrationRead)
def get_integration(
    family: IntegrationFamily,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_manage),
) -> IntegrationRead:
    return _to_read(_require(db, session, family))


# ============================================================================
# Mutations
# ============================================================================


@router.put(
    "/{family}",
    response_model=IntegrationRead,
    dependencies=[Depends(require_csrf_header)],
)
def upsert_integration(
    family: IntegrationFamily,
    data: IntegrationUpsert,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_manage),
) -> IntegrationRead:
    """
    Save app credentials for a family.

    Re-saving clears verification; call /verify again before authorizing channels.
    """
    try:
        integration = integration_service.save_integration(
            db, session.org_id, family, data.credentials
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return _to_read(integration)


@router.post(
    "/{family}/verify",
    response_model=IntegrationRead,
    dependencies=[Depends(require_csrf_header)],
)
async def verify_integration(
    family: IntegrationFamily,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_manage),
) -> IntegrationRead:
    """Probe the provider with the stored credentials. The outcome is stored on the row."""
    _require(db, session, family)
    integration = await integration_service.verify_integration(db, session.org_id, family)
    return _to_read(integration)


@router.post(
    "/{family}/deactivate",
    response_model=IntegrationRead,
    dependencies=[Depends(require_csrf_header)],
)
def deactivate_integration(
    family: IntegrationFamily,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_manage),
) -> IntegrationRead:
    _require(db, session, family)
    integration = integration_service.deactivate_integration(db, session.org_id, family)
    logger.info("Deactivated %s integration for org=%s", family.value, session.org_id)
    return _to_read(integration)
