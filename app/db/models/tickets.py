"""Minimal ticket store used by the ingestion collaborator."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, ForeignKey, Index, String, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.enums import TicketStatus


class Ticket(Base):
    """Conversation opened by an inbound channel message."""

    __tablename__ = "tickets"
    __table_args__ = (
        Index("idx_tickets_channel_conversation", "channel_id", "conversation_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    # RESTRICT: a channel that owns tickets cannot be deleted
    channel_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("channels.id", ondelete="RESTRICT"), nullable=True
    )
    conversation_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    requester: Mapped[str] = mapped_column(String(320), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=TicketStatus.OPEN.value, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    messages: Mapped[list["TicketMessage"]] = relationship(
        back_populates="ticket", cascade="all, delete-orphan"
    )


class TicketMessage(Base):
    """Inbound message; unique per (channel, provider message id)."""

    __tablename__ = "ticket_messages"
    __table_args__ = (
        UniqueConstraint(
            "channel_id", "external_message_id", name="uq_ticket_messages_channel_external"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ticket_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    channel_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    external_message_id: Mapped[str] = mapped_column(String(512), nullable=False)
    # Provider-side id used for post-import actions; changes when the item is moved
    provider_ref: Mapped[str | None] = mapped_column(String(512), nullable=True)
    sender: Mapped[str] = mapped_column(String(320), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    attachments: Mapped[list[dict]] = mapped_column(JSON, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    ticket: Mapped["Ticket"] = relationship(back_populates="messages")
