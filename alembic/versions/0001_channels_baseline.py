"""Baseline migration - tenants, channels, credentials, OAuth state, audit, jobs, tickets

Revision ID: 0001_channels_baseline
Revises: 
Create Date: 2026-10-19

Creates the channel connection schema: organizations and memberships,
channels with their encrypted credentials, organization integrations,
one-time OAuth state tokens, the connection audit log, webhook delivery
dedup, background jobs and the minimal ticket store.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_channels_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, *, nullable: bool = True, now: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if now else None,
    )


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, length=32)


PROVIDERS = ("microsoft365", "google", "imap", "instagram", "facebook_messenger", "whatsapp")


def upgrade() -> None:
    """Create channel connection tables."""

    # ==========================================================================
    # Tenants
    # ==========================================================================
    op.create_table(
        "organizations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        _ts("created_at", nullable=False, now=True),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("token_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", nullable=False, now=True),
    )
    op.create_table(
        "memberships",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "organization_id",
            sa.Uuid(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("role", sa.String(50), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", nullable=False, now=True),
    )
    op.create_index("idx_memberships_org_id", "memberships", ["organization_id"])

    # ==========================================================================
    # Channels
    # ==========================================================================
    op.create_table(
        "channels",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.Uuid(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider", _enum("channel_provider", *PROVIDERS), nullable=False),
        sa.Column("kind", _enum("channel_kind", "email", "messaging"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email_address", sa.String(320), nullable=True),
        sa.Column("department_id", sa.Uuid(), nullable=True),
        sa.Column("owner_user_id", sa.Uuid(), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "state",
            _enum(
                "channel_state",
                "unconnected",
                "authorization_pending",
                "authenticated",
                "configuration_pending",
                "active",
                "suspended",
            ),
            nullable=False,
        ),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("fetch_folder", sa.String(255), nullable=True),
        sa.Column(
            "post_import_action",
            _enum("post_import_action", "leave", "move_to_folder", "delete"),
            nullable=False,
        ),
        sa.Column("post_import_folder", sa.String(255), nullable=True),
        _ts("synced_since"),
        _ts("sync_watermark"),
        sa.Column(
            "sync_interval_minutes", sa.Integer(), nullable=False, server_default=sa.text("5")
        ),
        _ts("sync_started_at"),
        sa.Column("external_account_id", sa.String(255), nullable=True),
        sa.Column("external_account_name", sa.String(255), nullable=True),
        sa.Column("subscribed_topics", sa.JSON(), nullable=False),
        _ts("last_synced_at"),
        _ts("last_triggered_at"),
        _ts("deactivated_at"),
        _ts("created_at", nullable=False, now=True),
        _ts("updated_at", nullable=False, now=True),
    )
    op.create_index("idx_channels_org_kind", "channels", ["organization_id", "kind"])
    op.create_index("idx_channels_state", "channels", ["state"])
    op.create_index(
        "idx_channels_external_account", "channels", ["provider", "external_account_id"]
    )
    # At most one default channel per (organization, kind)
    op.create_index(
        "uq_channels_default_per_kind",
        "channels",
        ["organization_id", "kind"],
        unique=True,
        postgresql_where=sa.text("is_default"),
        sqlite_where=sa.text("is_default = 1"),
    )

    op.create_table(
        "channel_credentials",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "channel_id",
            sa.Uuid(),
            sa.ForeignKey("channels.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("access_token_encrypted", sa.Text(), nullable=True),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
        _ts("token_expires_at"),
        sa.Column("secrets_encrypted", sa.Text(), nullable=True),
        sa.Column("granted_scopes", sa.JSON(), nullable=True),
        _ts("created_at", nullable=False, now=True),
        _ts("updated_at", nullable=False, now=True),
    )

    op.create_table(
        "organization_integrations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.Uuid(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "family", _enum("integration_family", "microsoft365", "google", "meta"), nullable=False
        ),
        sa.Column("credentials_encrypted", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("verified_at"),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("created_at", nullable=False, now=True),
        _ts("updated_at", nullable=False, now=True),
        sa.UniqueConstraint("organization_id", "family", name="uq_org_integration_family"),
    )

    # ==========================================================================
    # OAuth state and audit
    # ==========================================================================
    op.create_table(
        "oauth_state_tokens",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("state", sa.String(128), nullable=False, unique=True),
        sa.Column(
            "channel_id",
            sa.Uuid(),
            sa.ForeignKey("channels.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "organization_id",
            sa.Uuid(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("provider", _enum("channel_provider", *PROVIDERS), nullable=False),
        _ts("issued_at", nullable=False),
        _ts("expires_at", nullable=False),
        _ts("consumed_at"),
    )
    op.create_index(
        "idx_oauth_state_lookup", "oauth_state_tokens", ["state", "expires_at", "consumed_at"]
    )
    op.create_index("idx_oauth_state_channel", "oauth_state_tokens", ["channel_id", "issued_at"])

    op.create_table(
        "connection_audit_entries",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.Uuid(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("channel_id", sa.Uuid(), nullable=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column(
            "event_type",
            _enum("connection_event_type", "sync", "send", "webhook", "auth"),
            nullable=False,
        ),
        sa.Column(
            "outcome",
            _enum("connection_outcome", "success", "failure", "rejected", "duplicate"),
            nullable=False,
        ),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("items_processed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        _ts("created_at", nullable=False),
    )
    op.create_index(
        "idx_connection_audit_channel", "connection_audit_entries", ["channel_id", "created_at"]
    )
    op.create_index(
        "idx_connection_audit_org", "connection_audit_entries", ["organization_id", "created_at"]
    )

    op.create_table(
        "channel_webhook_deliveries",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("delivery_id", sa.String(255), nullable=False),
        sa.Column(
            "channel_id",
            sa.Uuid(),
            sa.ForeignKey("channels.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _ts("received_at", nullable=False, now=True),
        sa.UniqueConstraint("provider", "delivery_id", name="uq_channel_webhook_delivery"),
    )

    # ==========================================================================
    # Jobs
    # ==========================================================================
    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.Uuid(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("job_type", sa.String(50), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        _ts("run_at", nullable=False, now=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("created_at", nullable=False, now=True),
        _ts("completed_at"),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
    )
    op.create_index(
        "idx_jobs_pending",
        "jobs",
        ["status", "run_at"],
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index("idx_jobs_org", "jobs", ["organization_id", "created_at"])
    op.create_index(
        "uq_job_idempotency",
        "jobs",
        ["idempotency_key"],
        unique=True,
        postgresql_where=sa.text("idempotency_key IS NOT NULL"),
        sqlite_where=sa.text("idempotency_key IS NOT NULL"),
    )

    # ==========================================================================
    # Tickets
    # ==========================================================================
    op.create_table(
        "tickets",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.Uuid(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "channel_id",
            sa.Uuid(),
            sa.ForeignKey("channels.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("conversation_key", sa.String(255), nullable=True),
        sa.Column("subject", sa.String(500), nullable=False),
        sa.Column("requester", sa.String(320), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        _ts("created_at", nullable=False, now=True),
    )
    op.create_index(
        "idx_tickets_channel_conversation", "tickets", ["channel_id", "conversation_key"]
    )
    op.create_table(
        "ticket_messages",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "ticket_id",
            sa.Uuid(),
            sa.ForeignKey("tickets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("channel_id", sa.Uuid(), nullable=False),
        sa.Column("external_message_id", sa.String(512), nullable=False),
        sa.Column("provider_ref", sa.String(512), nullable=True),
        sa.Column("sender", sa.String(320), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("attachments", sa.JSON(), nullable=False),
        _ts("created_at", nullable=False, now=True),
        sa.UniqueConstraint(
            "channel_id", "external_message_id", name="uq_ticket_messages_channel_external"
        ),
    )


def downgrade() -> None:
    """Drop channel connection tables."""
    op.drop_table("ticket_messages")
    op.drop_table("tickets")
    op.drop_table("jobs")
    op.drop_table("channel_webhook_deliveries")
    op.drop_table("connection_audit_entries")
    op.drop_table("oauth_state_tokens")
    op.drop_table("organization_integrations")
    op.drop_table("channel_credentials")
    op.drop_table("channels")
    op.drop_table("memberships")
    op.drop_table("users")
    op.drop_table("organizations")
