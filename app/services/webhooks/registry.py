"""Webhook handler registry."""

from __future__ import annotations

from app.db.enums import ChannelProvider
from app.services.webhooks.base import WebhookHandler
from app.services.webhooks.meta import MetaChannelWebhookHandler

_HANDLERS: dict[str, WebhookHandler] = {
    ChannelProvider.INSTAGRAM.value: MetaChannelWebhookHandler(ChannelProvider.INSTAGRAM),
    ChannelProvider.FACEBOOK_MESSENGER.value: MetaChannelWebhookHandler(
        ChannelProvider.FACEBOOK_MESSENGER
    ),
    ChannelProvider.WHATSAPP.value: MetaChannelWebhookHandler(ChannelProvider.WHATSAPP),
}


def get_handler(name: str):
    handler = _HANDLERS.get(name)
    if not handler:
        raise KeyError(f"Unknown webhook handler: {name}")
    return handler
