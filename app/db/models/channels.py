"""Channel connection models: channels, credentials, integrations, OAuth state, audit."""

from __future__ import annotations

from typing import TYPE_CHECKING

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    false,
    func,
    text,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.enums import (
    DEFAULT_CHANNEL_STATE,
    DEFAULT_POST_IMPORT_ACTION,
    ChannelKind,
    ChannelProvider,
    ChannelState,
    ConnectionEventType,
    ConnectionOutcome,
    IntegrationFamily,
    PostImportAction,
)

if TYPE_CHECKING:
    from app.db.models import Organization


def _enum_type(enum_cls, *, name: str) -> Enum:
    """Bind Python str-enums to their value strings (portable, non-native)."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


class Channel(Base):
    """
    One external account binding (mailbox or messaging account) owned by an org.

    Invariants:
    - At most one is_default=True per (organization_id, kind).
    - sync_watermark never decreases.
    - Secrets live in ChannelCredential, never on this row.
    """

    __tablename__ = "channels"
    __table_args__ = (
        Index("idx_channels_org_kind", "organization_id", "kind"),
        Index("idx_channels_state", "state"),
        Index("idx_channels_external_account", "provider", "external_account_id"),
        Index(
            "uq_channels_default_per_kind",
            "organization_id",
            "kind",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[ChannelProvider] = mapped_column(
        _enum_type(ChannelProvider, name="channel_provider"), nullable=False
    )
    kind: Mapped[ChannelKind] = mapped_column(
        _enum_type(ChannelKind, name="channel_kind"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email_address: Mapped[str | None] = mapped_column(String(320), nullable=True)

    # Routing
    department_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    owner_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    is_default: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false(), nullable=False
    )

    # Lifecycle
    state: Mapped[ChannelState] = mapped_column(
        _enum_type(ChannelState, name="channel_state"),
        default=DEFAULT_CHANNEL_STATE,
        nullable=False,
    )
    failure_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Poll configuration
    fetch_folder: Mapped[str | None] = mapped_column(String(255), nullable=True)
    post_import_action: Mapped[PostImportAction] = mapped_column(
        _enum_type(PostImportAction, name="post_import_action"),
        default=DEFAULT_POST_IMPORT_ACTION,
        nullable=False,
    )
    post_import_folder: Mapped[str | None] = mapped_column(String(255), nullable=True)
    synced_since: Mapped[datetime | None] = mapped_column(nullable=True)
    sync_watermark: Mapped[datetime | None] = mapped_column(nullable=True)
    sync_interval_minutes: Mapped[int] = mapped_column(
        Integer, default=5, server_default=text("5"), nullable=False
    )
    sync_started_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Push configuration
    external_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_account_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscribed_topics: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    # Timestamps
    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_triggered_at: Mapped[datetime | None] = mapped_column(nullable=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )

    organization: Mapped["Organization"] = relationship(back_populates="channels")
    credential: Mapped["ChannelCredential | None"] = relationship(
        back_populates="channel", cascade="all, delete-orphan", uselist=False
    )


class ChannelCredential(Base):
    """Encrypted per-channel secrets (OAuth tokens or login credentials)."""

    __tablename__ = "channel_credentials"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    channel_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("channels.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    access_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    secrets_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    granted_scopes: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )

    channel: Mapped["Channel"] = relationship(back_populates="credential")


class OrganizationIntegration(Base):
    """Org-level app credentials (client id/secret, app secret) per integration family."""

    __tablename__ = "organization_integrations"
    __table_args__ = (
        UniqueConstraint("organization_id", "family", name="uq_org_integration_family"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    family: Mapped[IntegrationFamily] = mapped_column(
        _enum_type(IntegrationFamily, name="integration_family"), nullable=False
    )
    credentials_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=true(), nullable=False
    )
    is_verified: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false(), nullable=False
    )
    verified_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )


class OAuthStateToken(Base):
    """
    One-time, expiring OAuth state correlating a redirect with its callback.

    Carries identifiers only. Consumed on the first callback that presents it.
    """

    __tablename__ = "oauth_state_tokens"
    __table_args__ = (
        Index("idx_oauth_state_lookup", "state", "expires_at", "consumed_at"),
        Index("idx_oauth_state_channel", "channel_id", "issued_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    state: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    channel_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    provider: Mapped[ChannelProvider] = mapped_column(
        _enum_type(ChannelProvider, name="channel_provider"), nullable=False
    )
    issued_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    consumed_at: Mapped[datetime | None] = mapped_column(nullable=True)


class ConnectionAuditEntry(Base):
    """Append-only record of sync/send/webhook/auth events for operators."""

    __tablename__ = "connection_audit_entries"
    __table_args__ = (
        Index("idx_connection_audit_channel", "channel_id", "created_at"),
        Index("idx_connection_audit_org", "organization_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True
    )
    # No FK: entries outlive a deleted channel and keep its id
    channel_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    event_type: Mapped[ConnectionEventType] = mapped_column(
        _enum_type(ConnectionEventType, name="connection_event_type"), nullable=False
    )
    outcome: Mapped[ConnectionOutcome] = mapped_column(
        _enum_type(ConnectionOutcome, name="connection_outcome"), nullable=False
    )
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    items_processed: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)


class WebhookDelivery(Base):
    """Provider delivery/event ids already accepted (idempotent push intake)."""

    __tablename__ = "channel_webhook_deliveries"
    __table_args__ = (
        UniqueConstraint("provider", "delivery_id", name="uq_channel_webhook_delivery"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    delivery_id: Mapped[str] = mapped_column(String(255), nullable=False)
    channel_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    received_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
