"""Ticket collaborator - turns inbound channel messages into tickets.

Only the ingestion contract lives here; ticket business logic (assignment,
SLA, status workflow) belongs to the help-desk core.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db.enums import TicketStatus
from app.db.models import Ticket, TicketMessage

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "(no subject)"


@dataclass(frozen=True)
class TicketRef:
    ticket_id: UUID
    message_id: UUID
    created: bool  # False when the message was already ingested


def _find_message(db: Session, channel_id: UUID, external_message_id: str) -> TicketMessage | None:
    return (
        db.query(TicketMessage)
        .filter(
            TicketMessage.channel_id == channel_id,
            TicketMessage.external_message_id == external_message_id,
        )
        .first()
    )


def create_or_append_message(
    db: Session,
    *,
    org_id: UUID,
    channel_id: UUID,
    external_message_id: str,
    sender: str,
    body: str,
    subject: str | None = None,
    attachments: list[dict] | None = None,
    conversation_key: str | None = None,
    provider_ref: str | None = None,
) -> TicketRef:
    """
    Record an inbound message, idempotent by (channel_id, external_message_id).

    Appends to the open ticket of the same conversation when there is one,
    otherwise opens a new ticket. Commits before returning.
    """
    existing = _find_message(db, channel_id, external_message_id)
    if existing:
        return TicketRef(ticket_id=existing.ticket_id, message_id=existing.id, created=False)

    ticket = None
    if conversation_key:
        ticket = (
            db.query(Ticket)
            .filter(
                Ticket.channel_id == channel_id,
                Ticket.conversation_key == conversation_key,
                Ticket.status == TicketStatus.OPEN.value,
            )
            .order_by(Ticket.created_at.desc())
            .first()
        )
    if ticket is None:
        ticket = Ticket(
            organization_id=org_id,
            channel_id=channel_id,
            conversation_key=conversation_key,
            subject=(subject or DEFAULT_SUBJECT)[:500],
            requester=sender[:320],
            status=TicketStatus.OPEN.value,
        )
        db.add(ticket)
        db.flush()

    message = TicketMessage(
        ticket_id=ticket.id,
        channel_id=channel_id,
        external_message_id=external_message_id,
        provider_ref=provider_ref,
        sender=sender[:320],
        body=body,
        attachments=attachments or [],
    )
    db.add(message)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent ingestion of the same message won the insert
        db.rollback()
        existing = _find_message(db, channel_id, external_message_id)
        if existing is None:
            raise
        return TicketRef(ticket_id=existing.ticket_id, message_id=existing.id, created=False)

    return TicketRef(ticket_id=ticket.id, message_id=message.id, created=True)


def channel_has_tickets(db: Session, channel_id: UUID) -> bool:
    return db.query(Ticket.id).filter(Ticket.channel_id == channel_id).first() is not None


def update_provider_ref(
    db: Session, channel_id: UUID, external_message_id: str, provider_ref: str
) -> bool:
    """Point a stored message at its new provider id after a move. Commits."""
    message = _find_message(db, channel_id, external_message_id)
    if message is None:
        return False
    message.provider_ref = provider_ref
    db.commit()
    return True
