"""WhatsApp Cloud API provider (Meta OAuth, push)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from app.db.enums import ChannelKind, ChannelProvider, IntegrationFamily, TransportMode
from app.services.channel_errors import ConfigurationError, ProviderError
from app.services.channel_providers.base import (
    ConnectionTestResult,
    DiscoveredTarget,
    InboundItem,
    OutboundMessage,
    ProviderCapabilities,
    ProviderContext,
    WebhookEvent,
)
from app.services.channel_providers.meta import MetaGraphProvider, conversation_key, graph_base

logger = logging.getLogger(__name__)

WHATSAPP_SCOPES = [
    "whatsapp_business_management",
    "whatsapp_business_messaging",
    "business_management",
]


class WhatsAppProvider(MetaGraphProvider):
    capabilities = ProviderCapabilities(
        provider=ChannelProvider.WHATSAPP,
        kind=ChannelKind.MESSAGING,
        requires_oauth=True,
        transport_mode=TransportMode.PUSH,
        requires_prior_integration=True,
        integration_family=IntegrationFamily.META,
        target_kind="account",
    )
    scopes = WHATSAPP_SCOPES
    webhook_object = "whatsapp_business_account"
    _profile_fields = "id,display_phone_number,verified_name"

    async def discover_targets(self, ctx: ProviderContext) -> list[DiscoveredTarget]:
        """Phone numbers of every WhatsApp Business account the user can manage."""
        businesses = await self._json(
            "GET",
            f"{graph_base()}/me/businesses",
            token=ctx.access_token,
            params={"fields": "id,name"},
        )
        targets: list[DiscoveredTarget] = []
        for business in businesses.get("data", []):
            wabas = await self._json(
                "GET",
                f"{graph_base()}/{business['id']}/owned_whatsapp_business_accounts",
                token=ctx.access_token,
                params={"fields": "id,name"},
            )
            for waba in wabas.get("data", []):
                numbers = await self._json(
                    "GET",
                    f"{graph_base()}/{waba['id']}/phone_numbers",
                    token=ctx.access_token,
                    params={"fields": "id,display_phone_number,verified_name"},
                )
                for number in numbers.get("data", []):
                    targets.append(
                        DiscoveredTarget(
                            id=number["id"],
                            name=number.get("verified_name")
                            or number.get("display_phone_number")
                            or number["id"],
                            metadata={
                                "waba_id": waba["id"],
                                "display_phone_number": number.get("display_phone_number"),
                            },
                            credentials={"waba_id": waba["id"]},
                        )
                    )
        return targets

    async def subscribe_webhook(self, ctx: ProviderContext) -> list[str]:
        waba_id = ctx.secrets.get("waba_id")
        if not waba_id:
            raise ConfigurationError("No WhatsApp Business account selected")
        data = await self._json(
            "POST",
            f"{graph_base()}/{waba_id}/subscribed_apps",
            token=ctx.access_token,
        )
        if data.get("success") is False:
            raise ProviderError("Webhook subscription was not accepted", provider=self.name)
        return ["messages"]

    async def send_message(self, ctx: ProviderContext, message: OutboundMessage) -> str | None:
        phone_number_id = ctx.channel.external_account_id
        if not phone_number_id:
            raise ConfigurationError("Channel has no phone number")
        data = await self._json(
            "POST",
            f"{graph_base()}/{phone_number_id}/messages",
            token=ctx.access_token,
            json={
                "messaging_product": "whatsapp",
                "to": message.recipient,
                "type": "text",
                "text": {"body": message.body},
            },
        )
        messages = data.get("messages") or []
        return messages[0].get("id") if messages else None

    async def test_connection(self, ctx: ProviderContext) -> ConnectionTestResult:
        phone_number_id = ctx.channel.external_account_id
        if not phone_number_id:
            return ConnectionTestResult(success=False, message="No phone number selected")
        data = await self._json(
            "GET",
            f"{graph_base()}/{phone_number_id}",
            token=ctx.access_token,
            params={"fields": self._profile_fields},
        )
        label = data.get("verified_name") or data.get("display_phone_number") or data.get("id")
        return ConnectionTestResult(success=True, message=f"Connected to {label}")

    def parse_webhook(self, payload: dict[str, Any]) -> list[WebhookEvent]:
        """Inbound messages only; delivery status callbacks are ignored."""
        if payload.get("object") != self.webhook_object:
            return []

        events: list[WebhookEvent] = []
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                if change.get("field") != "messages":
                    continue
                value = change.get("value") or {}
                phone_number_id = str((value.get("metadata") or {}).get("phone_number_id") or "")
                if not phone_number_id:
                    continue
                for message in value.get("messages") or []:
                    event = self._parse_message(phone_number_id, message)
                    if event is not None:
                        events.append(event)
        return events

    def _parse_message(self, phone_number_id: str, message: dict[str, Any]) -> WebhookEvent | None:
        message_id = message.get("id")
        sender = str(message.get("from") or "")
        if not message_id or not sender or sender == phone_number_id:
            return None

        message_type = message.get("type")
        attachments: list[dict[str, Any]] = []
        if message_type == "text":
            body = (message.get("text") or {}).get("body") or ""
        elif message_type in ("image", "document", "audio", "video", "sticker"):
            media = message.get(message_type) or {}
            body = media.get("caption") or ""
            attachments.append(
                {
                    "type": message_type,
                    "media_id": media.get("id"),
                    "content_type": media.get("mime_type"),
                    "filename": media.get("filename"),
                }
            )
        elif message_type == "button":
            body = (message.get("button") or {}).get("text") or ""
        else:
            body = ""

        timestamp = message.get("timestamp")
        received_at = (
            datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
            if timestamp
            else datetime.now(timezone.utc)
        )
        return WebhookEvent(
            account_id=phone_number_id,
            delivery_id=message_id,
            item=InboundItem(
                external_message_id=message_id,
                received_at=received_at,
                sender=sender,
                body=body,
                attachments=attachments,
                conversation_key=conversation_key(sender, phone_number_id),
            ),
        )
