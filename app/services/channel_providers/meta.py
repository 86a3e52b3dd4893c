"""Meta Graph API providers: Instagram and Facebook Messenger (OAuth push)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlencode

from app.core.config import settings
from app.core.security import verify_hub_signature
from app.db.enums import ChannelKind, ChannelProvider, IntegrationFamily, TransportMode
from app.services.channel_errors import ConfigurationError, ProviderError
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

logger = logging.getLogger(__name__)

# Long-lived user tokens last 60 days unless Meta says otherwise
LONG_LIVED_TOKEN_SECONDS = 5184000

MESSAGING_SCOPES = [
    "instagram_basic",
    "instagram_manage_messages",
    "pages_show_list",
    "pages_messaging",
    "pages_read_engagement",
    "pages_manage_metadata",
    "business_management",
]

SUBSCRIBED_FIELDS = ["messages", "messaging_postbacks"]


def graph_base() -> str:
    return f"https://graph.facebook.com/{settings.META_API_VERSION}"


def dialog_url() -> str:
    return f"https://www.facebook.com/{settings.META_API_VERSION}/dialog/oauth"


def app_credentials(credentials: dict[str, Any]) -> tuple[str, str]:
    app_id = credentials.get("app_id")
    app_secret = credentials.get("app_secret")
    if not app_id or not app_secret:
        raise ConfigurationError("Meta integration is missing app credentials")
    return app_id, app_secret


def conversation_key(a: str, b: str) -> str:
    """Stable thread key for a two-party conversation."""
    return "_".join(sorted([a, b]))


class MetaGraphProvider(Provider):
    """Shared OAuth, token and signature handling for Meta-family providers."""

    scopes: list[str] = MESSAGING_SCOPES
    webhook_object = "page"
    _profile_fields = "id,name"

    # =========================================================================
    # OAuth
    # =========================================================================

    def authorize(self, ctx: ProviderContext, state: str) -> str:
        app_id, _ = app_credentials(ctx.integration_credentials)
        params = {
            "client_id": app_id,
            "redirect_uri": ctx.redirect_uri,
            "scope": ",".join(self.scopes),
            "state": state,
            "response_type": "code",
        }
        return f"{dialog_url()}?{urlencode(params)}"

    async def exchange_token(self, ctx: ProviderContext, code: str) -> TokenSet:
        app_id, app_secret = app_credentials(ctx.integration_credentials)
        short = await self._json(
            "GET",
            f"{graph_base()}/oauth/access_token",
            params={
                "client_id": app_id,
                "client_secret": app_secret,
                "redirect_uri": ctx.redirect_uri,
                "code": code,
            },
            expected=(200,),
        )
        if not short.get("access_token"):
            raise ProviderError("Token response missing access_token", provider=self.name)
        tokens = await self._long_lived(ctx, short["access_token"])
        tokens.granted_scopes = list(self.scopes)
        return tokens

    async def refresh_token(self, ctx: ProviderContext, refresh_token: str | None) -> TokenSet:
        # Meta has no refresh tokens; a still-valid long-lived token is re-exchanged
        if not ctx.access_token:
            raise ProviderError("No access token to extend", provider=self.name)
        return await self._long_lived(ctx, ctx.access_token)

    async def _long_lived(self, ctx: ProviderContext, token: str) -> TokenSet:
        app_id, app_secret = app_credentials(ctx.integration_credentials)
        data = await self._json(
            "GET",
            f"{graph_base()}/oauth/access_token",
            params={
                "grant_type": "fb_exchange_token",
                "client_id": app_id,
                "client_secret": app_secret,
                "fb_exchange_token": token,
            },
            expected=(200,),
        )
        if not data.get("access_token"):
            raise ProviderError("Long-lived token exchange failed", provider=self.name)
        return TokenSet(
            access_token=data["access_token"],
            expires_in=data.get("expires_in") or LONG_LIVED_TOKEN_SECONDS,
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook_signature(
        self, raw_body: bytes, signature: str | None, secret: str | None
    ) -> bool:
        return verify_hub_signature(raw_body, signature, secret)

    def _account_token(self, ctx: ProviderContext) -> str | None:
        return ctx.secrets.get("page_access_token") or ctx.access_token

    async def subscribe_webhook(self, ctx: ProviderContext) -> list[str]:
        page_id = ctx.secrets.get("page_id") or ctx.channel.external_account_id
        if not page_id:
            raise ConfigurationError("No page selected for webhook subscription")
        data = await self._json(
            "POST",
            f"{graph_base()}/{page_id}/subscribed_apps",
            token=self._account_token(ctx),
            data={"subscribed_fields": ",".join(SUBSCRIBED_FIELDS)},
        )
        if data.get("success") is False:
            raise ProviderError("Webhook subscription was not accepted", provider=self.name)
        return list(SUBSCRIBED_FIELDS)

    async def send_message(self, ctx: ProviderContext, message: OutboundMessage) -> str | None:
        account_id = ctx.channel.external_account_id
        if not account_id:
            raise ConfigurationError("Channel has no messaging account")
        data = await self._json(
            "POST",
            f"{graph_base()}/{account_id}/messages",
            token=self._account_token(ctx),
            json={
                "recipient": {"id": message.recipient},
                "message": {"text": message.body},
                "messaging_type": "RESPONSE",
            },
        )
        return data.get("message_id")

    async def test_connection(self, ctx: ProviderContext) -> ConnectionTestResult:
        account_id = ctx.channel.external_account_id or "me"
        data = await self._json(
            "GET",
            f"{graph_base()}/{account_id}",
            token=self._account_token(ctx),
            params={"fields": self._profile_fields},
        )
        label = data.get("username") or data.get("name") or data.get("id")
        return ConnectionTestResult(success=True, message=f"Connected to {label}")

    def parse_webhook(self, payload: dict[str, Any]) -> list[WebhookEvent]:
        """Normalize a messaging webhook; skips echoes and messages sent by the account itself."""
        if payload.get("object") != self.webhook_object:
            return []

        events: list[WebhookEvent] = []
        for entry in payload.get("entry") or []:
            account_id = str(entry.get("id") or "")
            if not account_id:
                continue
            for messaging in entry.get("messaging") or []:
                event = self._parse_messaging(account_id, messaging)
                if event is not None:
                    events.append(event)
        return events

    def _parse_messaging(self, account_id: str, messaging: dict[str, Any]) -> WebhookEvent | None:
        sender_id = str((messaging.get("sender") or {}).get("id") or "")
        recipient_id = str((messaging.get("recipient") or {}).get("id") or account_id)
        if not sender_id or sender_id == account_id:
            return None

        message = messaging.get("message")
        postback = messaging.get("postback")
        if message:
            if message.get("is_echo"):
                return None
            mid = message.get("mid")
            text = message.get("text") or ""
            attachments = [
                {
                    "type": attachment.get("type"),
                    "url": (attachment.get("payload") or {}).get("url"),
                }
                for attachment in message.get("attachments") or []
            ]
        elif postback:
            mid = postback.get("mid")
            text = postback.get("title") or postback.get("payload") or ""
            attachments = []
        else:
            return None
        if not mid:
            return None

        timestamp_ms = messaging.get("timestamp")
        received_at = (
            datetime.fromtimestamp(int(timestamp_ms) / 1000, tz=timezone.utc)
            if timestamp_ms
            else datetime.now(timezone.utc)
        )
        return WebhookEvent(
            account_id=account_id,
            delivery_id=mid,
            item=InboundItem(
                external_message_id=mid,
                received_at=received_at,
                sender=sender_id,
                body=text,
                attachments=attachments,
                conversation_key=conversation_key(sender_id, recipient_id),
            ),
        )


class InstagramProvider(MetaGraphProvider):
    capabilities = ProviderCapabilities(
        provider=ChannelProvider.INSTAGRAM,
        kind=ChannelKind.MESSAGING,
        requires_oauth=True,
        transport_mode=TransportMode.PUSH,
        requires_prior_integration=True,
        integration_family=IntegrationFamily.META,
        target_kind="account",
    )
    _profile_fields = "id,username,name"
    webhook_object = "instagram"

    async def discover_targets(self, ctx: ProviderContext) -> list[DiscoveredTarget]:
        """Instagram business accounts linked to the user's pages."""
        data = await self._json(
            "GET",
            f"{graph_base()}/me/accounts",
            token=ctx.access_token,
            params={
                "fields": "id,name,access_token,instagram_business_account{id,username,name}"
            },
        )
        targets: list[DiscoveredTarget] = []
        for page in data.get("data", []):
            ig = page.get("instagram_business_account")
            if not ig:
                continue
            targets.append(
                DiscoveredTarget(
                    id=ig["id"],
                    name=ig.get("username") or ig.get("name") or ig["id"],
                    metadata={"page_id": page["id"], "page_name": page.get("name")},
                    credentials={
                        "page_id": page["id"],
                        "page_access_token": page.get("access_token"),
                    },
                )
            )
        return targets


class MessengerProvider(MetaGraphProvider):
    capabilities = ProviderCapabilities(
        provider=ChannelProvider.FACEBOOK_MESSENGER,
        kind=ChannelKind.MESSAGING,
        requires_oauth=True,
        transport_mode=TransportMode.PUSH,
        requires_prior_integration=True,
        integration_family=IntegrationFamily.META,
        target_kind="account",
    )
    webhook_object = "page"

    async def discover_targets(self, ctx: ProviderContext) -> list[DiscoveredTarget]:
        data = await self._json(
            "GET",
            f"{graph_base()}/me/accounts",
            token=ctx.access_token,
            params={"fields": "id,name,access_token,category"},
        )
        return [
            DiscoveredTarget(
                id=page["id"],
                name=page.get("name") or page["id"],
                metadata={"category": page.get("category")},
                credentials={"page_id": page["id"], "page_access_token": page.get("access_token")},
            )
            for page in data.get("data", [])
        ]


async def verify_integration_credentials(
    credentials: dict[str, Any], *, transport=None
) -> None:
    """Probe the Meta app by requesting an app access token."""
    app_id, app_secret = app_credentials(credentials)
    provider = MessengerProvider(transport=transport)
    data = await provider._json(
        "GET",
        f"{graph_base()}/oauth/access_token",
        params={
            "client_id": app_id,
            "client_secret": app_secret,
            "grant_type": "client_credentials",
        },
        expected=(200,),
    )
    if not data.get("access_token"):
        raise ProviderError("Meta did not issue an app access token", provider="meta")
