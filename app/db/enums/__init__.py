"""Enum definitions for application constants."""

from app.db.enums.auth import ROLES_CAN_MANAGE_CHANNELS, Role
from app.db.enums.channels import (
    CHANNEL_AUTHORIZABLE_STATES,
    CHANNEL_CONNECTED_STATES,
    CHANNEL_DELETABLE_STATES,
    ChannelKind,
    ChannelProvider,
    ChannelState,
    ConnectionEventType,
    ConnectionOutcome,
    IntegrationFamily,
    PostImportAction,
    TicketStatus,
    TransportMode,
)
from app.db.enums.defaults import (
    DEFAULT_CHANNEL_STATE,
    DEFAULT_JOB_STATUS,
    DEFAULT_POST_IMPORT_ACTION,
)
from app.db.enums.jobs import JobStatus, JobType

__all__ = [
    "CHANNEL_AUTHORIZABLE_STATES",
    "CHANNEL_CONNECTED_STATES",
    "CHANNEL_DELETABLE_STATES",
    "ChannelKind",
    "ChannelProvider",
    "ChannelState",
    "ConnectionEventType",
    "ConnectionOutcome",
    "DEFAULT_CHANNEL_STATE",
    "DEFAULT_JOB_STATUS",
    "DEFAULT_POST_IMPORT_ACTION",
    "IntegrationFamily",
    "JobStatus",
    "JobType",
    "PostImportAction",
    "ROLES_CAN_MANAGE_CHANNELS",
    "Role",
    "TicketStatus",
    "TransportMode",
]
