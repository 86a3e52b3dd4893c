"""SQLAlchemy ORM models."""

from app.db.models.auth import Membership, Organization, User
from app.db.models.channels import (
    Channel,
    ChannelCredential,
    ConnectionAuditEntry,
    OAuthStateToken,
    OrganizationIntegration,
    WebhookDelivery,
)
from app.db.models.jobs import Job
from app.db.models.tickets import Ticket, TicketMessage

__all__ = [
    "Channel",
    "ChannelCredential",
    "ConnectionAuditEntry",
    "Job",
    "Membership",
    "OAuthStateToken",
    "Organization",
    "OrganizationIntegration",
    "Ticket",
    "TicketMessage",
    "User",
    "WebhookDelivery",
]
