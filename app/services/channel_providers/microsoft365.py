"""Microsoft 365 mailbox provider (Microsoft Graph, OAuth poll)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator
from urllib.parse import urlencode

from app.db.enums import (
    ChannelKind,
    ChannelProvider,
    IntegrationFamily,
    PostImportAction,
    TransportMode,
)
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
)

logger = logging.getLogger(__name__)

LOGIN_BASE = "https://login.microsoftonline.com"
GRAPH_BASE = "https://graph.microsoft.com/v1.0"

SCOPES = [
    "Mail.ReadWrite",
    "Mail.ReadWrite.Shared",
    "Mail.Send",
    "Mail.Send.Shared",
    "MailboxSettings.Read",
    "User.Read",
    "openid",
    "profile",
    "offline_access",
]

MESSAGE_FIELDS = (
    "id,internetMessageId,subject,from,body,receivedDateTime,conversationId,hasAttachments"
)
PAGE_SIZE = 50


def _tenant(ctx: ProviderContext) -> str:
    return ctx.integration_credentials.get("tenant_id") or "common"


def _client_credentials(ctx: ProviderContext) -> tuple[str, str]:
    client_id = ctx.integration_credentials.get("client_id")
    client_secret = ctx.integration_credentials.get("client_secret")
    if not client_id or not client_secret:
        raise ConfigurationError("Microsoft 365 integration is missing client credentials")
    return client_id, client_secret


def _parse_graph_datetime(value: str | None) -> datetime:
    if not value:
        raise ProviderError(
            "Graph message without receivedDateTime", provider=ChannelProvider.MICROSOFT365.value
        )
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ProviderError(
            "Graph returned an invalid receivedDateTime",
            provider=ChannelProvider.MICROSOFT365.value,
            detail=f"{value!r}: {exc}",
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_graph_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Microsoft365Provider(Provider):
    capabilities = ProviderCapabilities(
        provider=ChannelProvider.MICROSOFT365,
        kind=ChannelKind.EMAIL,
        requires_oauth=True,
        transport_mode=TransportMode.POLL,
        requires_prior_integration=True,
        integration_family=IntegrationFamily.MICROSOFT365,
        target_kind="folder",
    )

    # =========================================================================
    # OAuth
    # =========================================================================

    def authorize(self, ctx: ProviderContext, state: str) -> str:
        client_id, _ = _client_credentials(ctx)
        params = {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": ctx.redirect_uri,
            "response_mode": "query",
            "scope": " ".join(SCOPES),
            "state": state,
            "prompt": "select_account",
        }
        return f"{LOGIN_BASE}/{_tenant(ctx)}/oauth2/v2.0/authorize?{urlencode(params)}"

    async def exchange_token(self, ctx: ProviderContext, code: str) -> TokenSet:
        client_id, client_secret = _client_credentials(ctx)
        tokens = await self._token_request(
            ctx,
            {
                "client_id": client_id,
                "client_secret": client_secret,
                "code": code,
                "redirect_uri": ctx.redirect_uri,
                "grant_type": "authorization_code",
                "scope": " ".join(SCOPES),
            },
        )
        profile = await self._json(
            "GET",
            f"{GRAPH_BASE}/me",
            token=tokens.access_token,
            params={"$select": "mail,userPrincipalName"},
        )
        tokens.account_email = profile.get("mail") or profile.get("userPrincipalName")
        return tokens

    async def refresh_token(self, ctx: ProviderContext, refresh_token: str | None) -> TokenSet:
        if not refresh_token:
            raise ProviderError("No refresh token available", provider=self.name)
        client_id, client_secret = _client_credentials(ctx)
        tokens = await self._token_request(
            ctx,
            {
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
                "scope": " ".join(SCOPES),
            },
        )
        # Microsoft may omit a rotated refresh token
        if not tokens.refresh_token:
            tokens.refresh_token = refresh_token
        return tokens

    async def _token_request(self, ctx: ProviderContext, data: dict[str, Any]) -> TokenSet:
        payload = await self._json(
            "POST",
            f"{LOGIN_BASE}/{_tenant(ctx)}/oauth2/v2.0/token",
            data=data,
            expected=(200,),
        )
        if not payload.get("access_token"):
            raise ProviderError("Token response missing access_token", provider=self.name)
        scope = payload.get("scope")
        return TokenSet(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in"),
            granted_scopes=scope.split() if scope else None,
        )

    # =========================================================================
    # Mailbox
    # =========================================================================

    async def test_connection(self, ctx: ProviderContext) -> ConnectionTestResult:
        profile = await self._json(
            "GET",
            f"{GRAPH_BASE}/me",
            token=ctx.access_token,
            params={"$select": "mail,userPrincipalName"},
        )
        address = profile.get("mail") or profile.get("userPrincipalName") or "mailbox"
        return ConnectionTestResult(success=True, message=f"Connected to {address}")

    async def discover_targets(self, ctx: ProviderContext) -> list[DiscoveredTarget]:
        targets: list[DiscoveredTarget] = []
        url: str | None = f"{GRAPH_BASE}/me/mailFolders"
        params: dict[str, Any] | None = {"$top": 100}
        while url:
            data = await self._json("GET", url, token=ctx.access_token, params=params)
            for folder in data.get("value", []):
                targets.append(
                    DiscoveredTarget(
                        id=folder["id"],
                        name=folder.get("displayName") or folder["id"],
                        metadata={
                            "total_items": folder.get("totalItemCount"),
                            "unread_items": folder.get("unreadItemCount"),
                        },
                    )
                )
            url = data.get("@odata.nextLink")
            params = None
        return targets

    async def fetch_since(
        self, ctx: ProviderContext, folder: str, since: datetime | None
    ) -> AsyncIterator[InboundItem]:
        params: dict[str, Any] | None = {
            "$select": MESSAGE_FIELDS,
            "$orderby": "receivedDateTime asc",
            "$top": PAGE_SIZE,
        }
        if since is not None:
            params["$filter"] = f"receivedDateTime ge {_format_graph_datetime(since)}"

        url: str | None = f"{GRAPH_BASE}/me/mailFolders/{folder}/messages"
        while url:
            data = await self._json("GET", url, token=ctx.access_token, params=params)
            for message in data.get("value", []):
                yield await self._to_item(ctx, message)
            # nextLink already carries the query
            url = data.get("@odata.nextLink")
            params = None

    async def _to_item(self, ctx: ProviderContext, message: dict[str, Any]) -> InboundItem:
        if not message.get("id"):
            raise ProviderError("Graph message without id", provider=self.name)
        sender = ((message.get("from") or {}).get("emailAddress") or {}).get("address") or ""
        attachments: list[dict[str, Any]] = []
        if message.get("hasAttachments"):
            data = await self._json(
                "GET",
                f"{GRAPH_BASE}/me/messages/{message['id']}/attachments",
                token=ctx.access_token,
            )
            for attachment in data.get("value", []):
                attachments.append(
                    {
                        "filename": attachment.get("name"),
                        "content_type": attachment.get("contentType"),
                        "size": attachment.get("size"),
                        "content_base64": attachment.get("contentBytes"),
                    }
                )
        return InboundItem(
            external_message_id=message.get("internetMessageId") or message["id"],
            received_at=_parse_graph_datetime(message.get("receivedDateTime")),
            sender=sender,
            body=(message.get("body") or {}).get("content") or "",
            subject=message.get("subject"),
            attachments=attachments,
            conversation_key=message.get("conversationId"),
            source_ref=message["id"],
        )

    async def apply_post_action(
        self,
        ctx: ProviderContext,
        item: InboundItem,
        action: PostImportAction,
        target_folder: str | None,
    ) -> str | None:
        message_id = item.source_ref or item.external_message_id
        if action == PostImportAction.LEAVE:
            return None
        if action == PostImportAction.DELETE:
            await self._request(
                "DELETE", f"{GRAPH_BASE}/me/messages/{message_id}", token=ctx.access_token
            )
            return None
        if not target_folder:
            raise ConfigurationError("Move action requires a destination folder")
        moved = await self._json(
            "POST",
            f"{GRAPH_BASE}/me/messages/{message_id}/move",
            token=ctx.access_token,
            json={"destinationId": target_folder},
        )
        # Graph assigns a new id to the moved copy
        return moved.get("id")

    async def send_message(self, ctx: ProviderContext, message: OutboundMessage) -> str | None:
        payload = {
            "message": {
                "subject": message.subject or "",
                "body": {"contentType": "HTML", "content": message.body},
                "toRecipients": [{"emailAddress": {"address": message.recipient}}],
            },
            "saveToSentItems": True,
        }
        await self._request(
            "POST", f"{GRAPH_BASE}/me/sendMail", token=ctx.access_token, json=payload
        )
        return None


async def verify_integration_credentials(
    credentials: dict[str, Any], *, transport=None
) -> None:
    """Probe the app registration with a client-credentials token request."""
    provider = Microsoft365Provider(transport=transport)
    ctx = ProviderContext(channel=None, integration_credentials=credentials)  # type: ignore[arg-type]
    client_id, client_secret = _client_credentials(ctx)
    await provider._json(
        "POST",
        f"{LOGIN_BASE}/{_tenant(ctx)}/oauth2/v2.0/token",
        data={
            "client_id": client_id,
            "client_secret": client_secret,
            "scope": "https://graph.microsoft.com/.default",
            "grant_type": "client_credentials",
        },
        expected=(200,),
    )
