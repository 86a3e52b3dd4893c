"""Google Workspace mailbox provider (Gmail API, OAuth poll)."""

from __future__ import annotations

import base64
import binascii
import logging
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import make_msgid
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

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GMAIL_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"

SCOPES = [
    "openid",
    "profile",
    "email",
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.labels",
]

PAGE_SIZE = 100


def _client_credentials(ctx: ProviderContext) -> tuple[str, str]:
    client_id = ctx.integration_credentials.get("client_id")
    client_secret = ctx.integration_credentials.get("client_secret")
    if not client_id or not client_secret:
        raise ConfigurationError("Google integration is missing client credentials")
    return client_id, client_secret


def build_search_query(folder: str, since: datetime | None) -> str:
    """Gmail search for a label, bounded below by `since` (epoch seconds)."""
    if folder.upper() == "INBOX":
        query = "in:inbox"
    else:
        query = f"label:{folder}"
    if since is not None:
        query += f" after:{int(since.timestamp())}"
    return query


def _decode_part(data: str | None) -> str:
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode())
    except binascii.Error as exc:
        raise ProviderError(
            "Gmail returned an undecodable message part",
            provider=ChannelProvider.GOOGLE.value,
            detail=str(exc),
        ) from exc
    return raw.decode("utf-8", errors="replace")


def _extract_body(payload: dict[str, Any]) -> str:
    """Prefer text/plain, fall back to text/html, walking nested parts."""
    found: dict[str, str] = {}

    def walk(part: dict[str, Any]) -> None:
        mime_type = part.get("mimeType", "")
        if mime_type in ("text/plain", "text/html") and mime_type not in found:
            body = _decode_part((part.get("body") or {}).get("data"))
            if body:
                found[mime_type] = body
        for child in part.get("parts") or []:
            walk(child)

    walk(payload)
    return found.get("text/plain") or found.get("text/html") or ""


def _extract_attachments(payload: dict[str, Any]) -> list[dict[str, Any]]:
    attachments: list[dict[str, Any]] = []

    def walk(part: dict[str, Any]) -> None:
        body = part.get("body") or {}
        if part.get("filename") and body.get("attachmentId"):
            attachments.append(
                {
                    "filename": part["filename"],
                    "content_type": part.get("mimeType"),
                    "size": body.get("size"),
                    "attachment_id": body["attachmentId"],
                }
            )
        for child in part.get("parts") or []:
            walk(child)

    walk(payload)
    return attachments


def _header(payload: dict[str, Any], name: str) -> str | None:
    for header in payload.get("headers") or []:
        if header.get("name", "").lower() == name.lower():
            return header.get("value")
    return None


class GoogleProvider(Provider):
    capabilities = ProviderCapabilities(
        provider=ChannelProvider.GOOGLE,
        kind=ChannelKind.EMAIL,
        requires_oauth=True,
        transport_mode=TransportMode.POLL,
        requires_prior_integration=True,
        integration_family=IntegrationFamily.GOOGLE,
        target_kind="folder",
    )

    # =========================================================================
    # OAuth
    # =========================================================================

    def authorize(self, ctx: ProviderContext, state: str) -> str:
        client_id, _ = _client_credentials(ctx)
        params = {
            "client_id": client_id,
            "redirect_uri": ctx.redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{AUTH_URL}?{urlencode(params)}"

    async def exchange_token(self, ctx: ProviderContext, code: str) -> TokenSet:
        client_id, client_secret = _client_credentials(ctx)
        tokens = await self._token_request(
            {
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": ctx.redirect_uri,
                "grant_type": "authorization_code",
            }
        )
        userinfo = await self._json("GET", USERINFO_URL, token=tokens.access_token)
        tokens.account_email = userinfo.get("email")
        return tokens

    async def refresh_token(self, ctx: ProviderContext, refresh_token: str | None) -> TokenSet:
        if not refresh_token:
            raise ProviderError("No refresh token available", provider=self.name)
        client_id, client_secret = _client_credentials(ctx)
        tokens = await self._token_request(
            {
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "refresh_token",
            }
        )
        if not tokens.refresh_token:
            tokens.refresh_token = refresh_token
        return tokens

    async def _token_request(self, data: dict[str, Any]) -> TokenSet:
        payload = await self._json("POST", TOKEN_URL, data=data, expected=(200,))
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
        profile = await self._json("GET", f"{GMAIL_BASE}/profile", token=ctx.access_token)
        address = profile.get("emailAddress") or "mailbox"
        return ConnectionTestResult(success=True, message=f"Connected to {address}")

    async def discover_targets(self, ctx: ProviderContext) -> list[DiscoveredTarget]:
        data = await self._json("GET", f"{GMAIL_BASE}/labels", token=ctx.access_token)
        return [
            DiscoveredTarget(
                id=label["id"],
                name=label.get("name") or label["id"],
                metadata={"type": label.get("type")},
            )
            for label in data.get("labels", [])
        ]

    async def fetch_since(
        self, ctx: ProviderContext, folder: str, since: datetime | None
    ) -> AsyncIterator[InboundItem]:
        # messages.list is newest-first; collect ids, then hydrate oldest-first
        message_ids: list[str] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "q": build_search_query(folder, since),
                "maxResults": PAGE_SIZE,
            }
            if page_token:
                params["pageToken"] = page_token
            data = await self._json(
                "GET", f"{GMAIL_BASE}/messages", token=ctx.access_token, params=params
            )
            message_ids.extend(m["id"] for m in data.get("messages", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        for message_id in reversed(message_ids):
            message = await self._json(
                "GET",
                f"{GMAIL_BASE}/messages/{message_id}",
                token=ctx.access_token,
                params={"format": "full"},
            )
            item = self._to_item(message)
            # internalDate is authoritative; after: is only a coarse filter
            if since is not None and item.received_at < since:
                continue
            yield item

    def _to_item(self, message: dict[str, Any]) -> InboundItem:
        if not message.get("id"):
            raise ProviderError("Gmail message without id", provider=self.name)
        payload = message.get("payload") or {}
        try:
            internal_ms = int(message["internalDate"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderError(
                f"Gmail message {message['id']} has no valid internalDate",
                provider=self.name,
                detail=repr(message.get("internalDate")),
            ) from exc
        return InboundItem(
            external_message_id=message["id"],
            received_at=datetime.fromtimestamp(internal_ms / 1000, tz=timezone.utc),
            sender=_header(payload, "From") or "",
            body=_extract_body(payload) or message.get("snippet", ""),
            subject=_header(payload, "Subject"),
            attachments=_extract_attachments(payload),
            conversation_key=message.get("threadId"),
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
                "POST", f"{GMAIL_BASE}/messages/{message_id}/trash", token=ctx.access_token
            )
            return None
        if not target_folder:
            raise ConfigurationError("Move action requires a destination label")
        source_label = ctx.channel.fetch_folder or "INBOX"
        await self._request(
            "POST",
            f"{GMAIL_BASE}/messages/{message_id}/modify",
            token=ctx.access_token,
            json={"addLabelIds": [target_folder], "removeLabelIds": [source_label]},
        )
        # Gmail ids survive label changes
        return None

    async def send_message(self, ctx: ProviderContext, message: OutboundMessage) -> str | None:
        mime = EmailMessage()
        mime["To"] = message.recipient
        if ctx.channel.email_address:
            mime["From"] = ctx.channel.email_address
        mime["Subject"] = message.subject or ""
        mime["Message-ID"] = make_msgid()
        if message.in_reply_to:
            mime["In-Reply-To"] = message.in_reply_to
            mime["References"] = message.in_reply_to
        mime.set_content(message.body)
        raw = base64.urlsafe_b64encode(mime.as_bytes()).decode()

        data = await self._json(
            "POST", f"{GMAIL_BASE}/messages/send", token=ctx.access_token, json={"raw": raw}
        )
        return data.get("id")
