"""Channel provider implementations (mailbox and messaging services)."""

from app.services.channel_providers.base import (
    ConnectionTestResult,
    DiscoveredTarget,
    InboundItem,
    OutboundMessage,
    Provider,
    ProviderCapabilities,
    ProviderContext,
    TokenSet,
    WebhookEvent,
)
from app.services.channel_providers.registry import (
    get_capabilities,
    get_provider,
    list_capabilities,
)

__all__ = [
    "ConnectionTestResult",
    "DiscoveredTarget",
    "InboundItem",
    "OutboundMessage",
    "Provider",
    "ProviderCapabilities",
    "ProviderContext",
    "TokenSet",
    "WebhookEvent",
    "get_capabilities",
    "get_provider",
    "list_capabilities",
]
