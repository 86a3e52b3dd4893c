"""Channel administration APIs: lifecycle, configuration, sync control and connection logs."""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from app.core.deps import get_current_session, get_db, require_csrf_header, require_roles
from app.db.enums import (
    ROLES_CAN_MANAGE_CHANNELS,
    ChannelKind,
    ChannelProvider,
    ChannelState,
    ConnectionEventType,
    ConnectionOutcome,
    TransportMode,
)
from app.schemas.auth import UserSession
from app.schemas.channels import (
    ChannelConfigure,
    ChannelCreate,
    ChannelListResponse,
    ChannelRead,
    ChannelUpdate,
    ConnectionLogEntry,
    ConnectionLogResponse,
    ConnectionStatsResponse,
    ConnectionTestResponse,
    ProviderCapabilitiesRead,
    SuspendRequest,
    SyncEnqueueResponse,
    TargetListResponse,
    TargetRead,
)
from app.services import channel_service, channel_sync_service, connection_audit_service
from app.services.channel_errors import (
    ChannelError,
    ChannelNotFoundError,
    ConfigurationError,
    InvalidTransitionError,
    PreconditionError,
    ProviderError,
    UnsupportedOperationError,
)
from app.services.channel_providers import get_provider, list_capabilities

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/channels", tags=["channels"])

_manage = require_roles(ROLES_CAN_MANAGE_CHANNELS)


def _http_error(exc: ChannelError) -> HTTPException:
    """Translate a channel service exception into an HTTP error."""
    if isinstance(exc, ChannelNotFoundError):
        return HTTPException(status_code=404, detail="Channel not found")
    if isinstance(exc, PreconditionError):
        if exc.action_url:
            return HTTPException(
                status_code=409, detail={"message": str(exc), "action_url": exc.action_url}
            )
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, UnsupportedOperationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ProviderError):
        logger.warning("Provider call failed: provider=%s status=%s", exc.provider, exc.status_code)
        return HTTPException(status_code=502, detail=f"Provider request failed: {exc}")
    return HTTPException(status_code=400, detail=str(exc))


# =============================================================================
# Providers
# =============================================================================


@router.get("/providers", response_model=list[ProviderCapabilitiesRead])
def list_providers(
    _session: UserSession = Depends(get_current_session),
) -> list[ProviderCapabilitiesRead]:
    """Static capability descriptors for every supported provider."""
    return [
        ProviderCapabilitiesRead(
            provider=caps.provider,
            kind=caps.kind,
            transport_mode=caps.transport_mode,
            requires_oauth=caps.requires_oauth,
            requires_prior_integration=caps.requires_prior_integration,
            integration_family=caps.integration_family,
            credential_fields=list(caps.credential_fields),
            target_kind=caps.target_kind,
            operations=sorted(get_provider(caps.provider).supported_operations()),
        )
        for caps in list_capabilities()
    ]


# =============================================================================
# CRUD
# =============================================================================


@router.get("", response_model=ChannelListResponse)
def list_channels(
    kind: ChannelKind | None = None,
    provider: ChannelProvider | None = None,
    state: ChannelState | None = None,
    db: Session = Depends(get_db),
    session: UserSession = Depends(get_current_session),
) -> ChannelListResponse:
    channels = channel_service.list_channels(
        db, session.org_id, kind=kind, provider=provider, state=state
    )
    return ChannelListResponse(items=[ChannelRead.model_validate(c) for c in channels])


@router.post(
    "",
    response_model=ChannelRead,
    status_code=201,
    dependencies=[Depends(require_csrf_header)],
)
async def create_channel(
    data: ChannelCreate,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_manage),
) -> ChannelRead:
    """
    Create a channel.

    OAuth providers start unconnected; IMAP channels are probed with the
    submitted credentials and start authenticated.
    """
    try:
        channel = await channel_service.create_channel(
            db,
            session.org_id,
            provider=data.provider,
            name=data.name,
            email_address=data.email_address,
            department_id=data.department_id,
            owner_user_id=data.owner_user_id,
            sync_interval_minutes=data.sync_interval_minutes,
            credentials=data.credentials,
            is_default=data.is_default,
        )
    except ChannelError as exc:
        raise _http_error(exc)
    return ChannelRead.model_validate(channel)


@router.get("/{channel_id}", response_model=ChannelRead)
def get_channel(
    channel_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(get_current_session),
) -> ChannelRead:
    try:
        channel = channel_service.get_channel(db, session.org_id, channel_id)
    except ChannelError as exc:
        raise _http_error(exc)
    return ChannelRead.model_validate(channel)


@router.patch(
    "/{channel_id}",
    response_model=ChannelRead,
    dependencies=[Depends(require_csrf_header)],
)
def update_channel(
    channel_id: UUID,
    data: ChannelUpdate,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_manage),
) -> ChannelRead:
    try:
        channel = channel_service.update_channel(
            db, session.org_id, channel_id, **data.model_dump(exclude_unset=True)
        )
    except ChannelError as exc:
        raise _http_error(exc)
    return ChannelRead.model_validate(channel)


@router.delete(
    "/{channel_id}",
    status_code=204,
    dependencies=[Depends(require_csrf_header)],
)
def delete_channel(
    channel_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_manage),
) -> Response:
    try:
        channel_service.delete_channel(db, session.org_id, channel_id)
    except ChannelError as exc:
        raise _http_error(exc)
    return Response(status_code=204)


@router.post(
    "/{channel_id}/default",
    response_model=ChannelRead,
    dependencies=[Depends(require_csrf_header)],
)
def set_default_channel(
    channel_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_manage),
) -> ChannelRead:
    """Make this the default channel of its kind (clears the previous default)."""
    try:
        channel = channel_service.set_default(db, session.org_id, channel_id)
    except ChannelError as exc:
        raise _http_error(exc)
    return ChannelRead.model_validate(channel)


# =============================================================================
# Configuration
# =============================================================================


@router.get("/{channel_id}/targets", response_model=TargetListResponse)
async def list_targets(
    channel_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_manage),
) -> TargetListResponse:
    """Folders (mailboxes) or accounts (messaging) available for binding."""
    try:
        channel = channel_service.get_channel(db, session.org_id, channel_id)
        targets = await channel_service.discover_targets(db, session.org_id, channel_id)
    except ChannelError as exc:
        raise _http_error(exc)
    return TargetListResponse(
        target_kind=get_provider(channel.provider).capabilities.target_kind,
        items=[TargetRead(id=t.id, name=t.name, metadata=t.metadata) for t in targets],
    )


@router.post(
    "/{channel_id}/configure",
    response_model=ChannelRead,
    dependencies=[Depends(require_csrf_header)],
)
async def configure_channel(
    channel_id: UUID,
    data: ChannelConfigure,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_manage),
) -> ChannelRead:
    """Bind the channel to a folder/account and activate it."""
    try:
        channel = await channel_service.configure_channel(
            db,
            session.org_id,
            channel_id,
            target_id=data.target_id,
            post_import_action=data.post_import_action,
            post_import_folder=data.post_import_folder,
            synced_since=data.synced_since,
        )
    except ChannelError as exc:
        raise _http_error(exc)

    capabilities = get_provider(channel.provider).capabilities
    if channel.state == ChannelState.ACTIVE and capabilities.transport_mode == TransportMode.POLL:
        channel_sync_service.enqueue_channel_sync(db, channel, reason="activation")
        db.refresh(channel)
    return ChannelRead.model_validate(channel)


# =============================================================================
# Operations
# =============================================================================


@router.post(
    "/{channel_id}/sync",
    response_model=SyncEnqueueResponse,
    status_code=202,
    dependencies=[Depends(require_csrf_header)],
)
def sync_channel_now(
    channel_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_manage),
) -> SyncEnqueueResponse:
    """Queue an immediate sync. A pending or running sync makes this a no-op."""
    try:
        job = channel_sync_service.request_manual_sync(db, session.org_id, channel_id)
    except ChannelError as exc:
        raise _http_error(exc)
    if job is None:
        return SyncEnqueueResponse(job_id=None, reason="duplicate")
    return SyncEnqueueResponse(job_id=job.id, reason="queued")


@router.post(
    "/{channel_id}/test",
    response_model=ConnectionTestResponse,
    dependencies=[Depends(require_csrf_header)],
)
async def test_channel_connection(
    channel_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_manage),
) -> ConnectionTestResponse:
    try:
        result = await channel_service.test_connection(db, session.org_id, channel_id)
    except ChannelError as exc:
        raise _http_error(exc)
    return ConnectionTestResponse(success=result.success, message=result.message)


@router.post(
    "/{channel_id}/suspend",
    response_model=ChannelRead,
    dependencies=[Depends(require_csrf_header)],
)
def suspend_channel(
    channel_id: UUID,
    data: SuspendRequest | None = None,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_manage),
) -> ChannelRead:
    try:
        channel = channel_service.suspend_channel(
            db, session.org_id, channel_id, reason=data.reason if data else None
        )
    except ChannelError as exc:
        raise _http_error(exc)
    return ChannelRead.model_validate(channel)


@router.post(
    "/{channel_id}/reactivate",
    response_model=ChannelRead,
    dependencies=[Depends(require_csrf_header)],
)
def reactivate_channel(
    channel_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_manage),
) -> ChannelRead:
    """Resume a suspended channel and reset its failure count."""
    try:
        channel = channel_service.reactivate_channel(db, session.org_id, channel_id)
    except ChannelError as exc:
        raise _http_error(exc)
    return ChannelRead.model_validate(channel)


# =============================================================================
# Connection log
# =============================================================================


@router.get("/{channel_id}/logs", response_model=ConnectionLogResponse)
def list_connection_logs(
    channel_id: UUID,
    event_type: ConnectionEventType | None = None,
    outcome: ConnectionOutcome | None = None,
    since: datetime | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    session: UserSession = Depends(get_current_session),
) -> ConnectionLogResponse:
    """Connection audit entries for a channel, newest first."""
    try:
        channel_service.get_channel(db, session.org_id, channel_id)
    except ChannelError as exc:
        raise _http_error(exc)
    entries, total = connection_audit_service.list_entries(
        db,
        session.org_id,
        channel_id,
        event_type=event_type,
        outcome=outcome,
        since=since,
        limit=limit,
        offset=offset,
    )
    return ConnectionLogResponse(
        items=[ConnectionLogEntry.model_validate(e) for e in entries],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{channel_id}/logs/stats", response_model=ConnectionStatsResponse)
def connection_log_stats(
    channel_id: UUID,
    days: int = Query(7, ge=1, le=90),
    db: Session = Depends(get_db),
    session: UserSession = Depends(get_current_session),
) -> ConnectionStatsResponse:
    try:
        channel_service.get_channel(db, session.org_id, channel_id)
    except ChannelError as exc:
        raise _http_error(exc)
    return ConnectionStatsResponse(
        **connection_audit_service.get_stats(db, session.org_id, channel_id, days=days)
    )
