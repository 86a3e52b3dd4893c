"""Pydantic schemas for channel connection APIs.

Secrets (tokens, passwords, app secrets) never appear in read models.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.db.enums import (
    ChannelKind,
    ChannelProvider,
    ChannelState,
    ConnectionEventType,
    ConnectionOutcome,
    IntegrationFamily,
    PostImportAction,
    TransportMode,
)


# =============================================================================
# Channels
# =============================================================================


class ChannelCreate(BaseModel):
    """Create a channel. `credentials` is only accepted for credential-based providers."""

    provider: ChannelProvider
    name: str = Field(min_length=1, max_length=255)
    email_address: str | None = Field(default=None, max_length=320)
    department_id: UUID | None = None
    owner_user_id: UUID | None = None
    sync_interval_minutes: int | None = Field(default=None, ge=1, le=1440)
    is_default: bool = False
    credentials: dict[str, str | int] | None = None


class ChannelUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    email_address: str | None = Field(default=None, max_length=320)
    department_id: UUID | None = None
    owner_user_id: UUID | None = None
    sync_interval_minutes: int | None = Field(default=None, ge=1, le=1440)
    synced_since: datetime | None = None
    post_import_action: PostImportAction | None = None
    post_import_folder: str | None = Field(default=None, max_length=255)


class ChannelRead(BaseModel):
    """Channel response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    provider: ChannelProvider
    kind: ChannelKind
    name: str
    email_address: str | None
    department_id: UUID | None
    owner_user_id: UUID | None
    is_default: bool
    state: ChannelState
    failure_count: int
    last_error: str | None
    fetch_folder: str | None
    post_import_action: PostImportAction
    post_import_folder: str | None
    synced_since: datetime | None
    sync_watermark: datetime | None
    sync_interval_minutes: int
    external_account_id: str | None
    external_account_name: str | None
    subscribed_topics: list[str]
    last_synced_at: datetime | None
    last_triggered_at: datetime | None
    deactivated_at: datetime | None
    created_at: datetime
    updated_at: datetime


class ChannelListResponse(BaseModel):
    items: list[ChannelRead]


class TargetRead(BaseModel):
    """Folder or account the channel can be bound to."""

    id: str
    name: str
    metadata: dict = Field(default_factory=dict)


class TargetListResponse(BaseModel):
    target_kind: str  # folder | account
    items: list[TargetRead]


class ChannelConfigure(BaseModel):
    target_id: str = Field(min_length=1)
    post_import_action: PostImportAction = PostImportAction.LEAVE
    post_import_folder: str | None = None
    synced_since: datetime | None = None


class ConnectionTestResponse(BaseModel):
    success: bool
    message: str | None = None


class SyncEnqueueResponse(BaseModel):
    job_id: UUID | None
    reason: str  # queued | duplicate


class SuspendRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


# =============================================================================
# Capabilities
# =============================================================================


class ProviderCapabilitiesRead(BaseModel):
    provider: ChannelProvider
    kind: ChannelKind
    transport_mode: TransportMode
    requires_oauth: bool
    requires_prior_integration: bool
    integration_family: IntegrationFamily | None
    credential_fields: list[str]
    target_kind: str
    operations: list[str]


# =============================================================================
# Connection log
# =============================================================================


class ConnectionLogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    channel_id: UUID | None
    provider: str
    event_type: ConnectionEventType
    outcome: ConnectionOutcome
    latency_ms: int | None
    items_processed: int
    error_detail: str | None
    details: dict
    created_at: datetime


class ConnectionLogResponse(BaseModel):
    items: list[ConnectionLogEntry]
    total: int
    limit: int
    offset: int


class ConnectionStatsResponse(BaseModel):
    days: int
    total: int
    by_outcome: dict[str, int]
    avg_latency_ms: float | None
    items_processed: int
    last_success_at: datetime | None
    last_failure_at: datetime | None


# =============================================================================
# Organization integrations
# =============================================================================


class IntegrationUpsert(BaseModel):
    credentials: dict[str, str] = Field(default_factory=dict)


class IntegrationRead(BaseModel):
    """Integration status. Only non-secret identifiers are echoed back."""

    family: IntegrationFamily
    is_active: bool
    is_verified: bool
    verified_at: datetime | None
    last_error: str | None
    public_credentials: dict[str, str]
    configured_fields: list[str]
    updated_at: datetime


class IntegrationListResponse(BaseModel):
    items: list[IntegrationRead]


# =============================================================================
# Internal
# =============================================================================


class ChannelSyncScheduleResponse(BaseModel):
    due: int
    enqueued: int
    skipped: int
    state_tokens_purged: int = 0
