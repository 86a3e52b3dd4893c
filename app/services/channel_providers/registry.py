"""Provider registry: provider identifier -> Provider instance."""

from __future__ import annotations

from typing import Mapping

from app.db.enums import ChannelProvider, IntegrationFamily
from app.services.channel_providers.base import Provider, ProviderCapabilities
from app.services.channel_providers.google import GoogleProvider
from app.services.channel_providers.imap import ImapProvider
from app.services.channel_providers.meta import InstagramProvider, MessengerProvider
from app.services.channel_providers.microsoft365 import Microsoft365Provider
from app.services.channel_providers.whatsapp import WhatsAppProvider


PROVIDERS: Mapping[ChannelProvider, Provider] = {
    provider.capabilities.provider: provider
    for provider in (
        Microsoft365Provider(),
        GoogleProvider(),
        ImapProvider(),
        InstagramProvider(),
        MessengerProvider(),
        WhatsAppProvider(),
    )
}


def _coerce(provider: ChannelProvider | str) -> ChannelProvider:
    if isinstance(provider, ChannelProvider):
        return provider
    try:
        return ChannelProvider(provider)
    except ValueError as exc:
        raise KeyError(f"Unknown channel provider: {provider}") from exc


def get_provider(provider: ChannelProvider | str) -> Provider:
    """Resolve a provider instance. Raises KeyError for unknown identifiers."""
    return PROVIDERS[_coerce(provider)]


def get_capabilities(provider: ChannelProvider | str) -> ProviderCapabilities:
    return get_provider(provider).capabilities


def list_capabilities() -> list[ProviderCapabilities]:
    return [p.capabilities for p in PROVIDERS.values()]


def providers_for_family(family: IntegrationFamily) -> list[ChannelProvider]:
    return [
        key
        for key, provider in PROVIDERS.items()
        if provider.capabilities.integration_family == family
    ]


def push_providers() -> list[ChannelProvider]:
    return [
        key for key, provider in PROVIDERS.items() if provider.supports("parse_webhook")
    ]
