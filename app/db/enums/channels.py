"""Channel connection and synchronization enums."""

from enum import Enum


class ChannelKind(str, Enum):
    """Channel kind (one default channel per organization and kind)."""

    EMAIL = "email"
    MESSAGING = "messaging"


class ChannelProvider(str, Enum):
    """External providers a channel can bind to."""

    MICROSOFT365 = "microsoft365"
    GOOGLE = "google"
    IMAP = "imap"
    INSTAGRAM = "instagram"
    FACEBOOK_MESSENGER = "facebook_messenger"
    WHATSAPP = "whatsapp"


class ChannelState(str, Enum):
    """
    Channel lifecycle states.

    unconnected -> authorization_pending -> authenticated
    -> configuration_pending -> active <-> suspended
    """

    UNCONNECTED = "unconnected"
    AUTHORIZATION_PENDING = "authorization_pending"
    AUTHENTICATED = "authenticated"
    CONFIGURATION_PENDING = "configuration_pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class TransportMode(str, Enum):
    """How inbound messages reach the channel."""

    POLL = "poll"
    PUSH = "push"


class PostImportAction(str, Enum):
    """What happens to a source mailbox item after ingestion."""

    LEAVE = "leave"
    MOVE_TO_FOLDER = "move_to_folder"
    DELETE = "delete"


class IntegrationFamily(str, Enum):
    """Organization-level integrations that back provider credentials."""

    MICROSOFT365 = "microsoft365"
    GOOGLE = "google"
    META = "meta"


class ConnectionEventType(str, Enum):
    """Connection audit event types."""

    SYNC = "sync"
    SEND = "send"
    WEBHOOK = "webhook"
    AUTH = "auth"


class ConnectionOutcome(str, Enum):
    """Connection audit outcomes."""

    SUCCESS = "success"
    FAILURE = "failure"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"


class TicketStatus(str, Enum):
    """Minimal ticket status used by the ingestion collaborator."""

    OPEN = "open"
    CLOSED = "closed"


# States from which a channel may be deleted
CHANNEL_DELETABLE_STATES = frozenset(
    {ChannelState.UNCONNECTED, ChannelState.AUTHENTICATED, ChannelState.SUSPENDED}
)

# States from which an OAuth authorization may be (re)started
CHANNEL_AUTHORIZABLE_STATES = frozenset(
    {
        ChannelState.UNCONNECTED,
        ChannelState.AUTHORIZATION_PENDING,
        ChannelState.SUSPENDED,
    }
)

# States where the channel holds usable credentials
CHANNEL_CONNECTED_STATES = frozenset(
    {
        ChannelState.AUTHENTICATED,
        ChannelState.CONFIGURATION_PENDING,
        ChannelState.ACTIVE,
        ChannelState.SUSPENDED,
    }
)
