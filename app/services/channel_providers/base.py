"""Provider contract shared by every channel provider.

A provider implements the subset of capabilities its service supports.
Calling anything else raises UnsupportedOperationError (fail closed).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncIterator

import httpx

from app.db.enums import (
    ChannelKind,
    ChannelProvider,
    IntegrationFamily,
    PostImportAction,
    TransportMode,
)
from app.services.channel_errors import ProviderError, UnsupportedOperationError
from app.services.http_service import request_with_retries

if TYPE_CHECKING:
    from app.db.models import Channel

logger = logging.getLogger(__name__)

HTTPX_TIMEOUT = httpx.Timeout(15.0, connect=5.0)

CAPABILITY_METHODS = (
    "authorize",
    "exchange_token",
    "refresh_token",
    "test_connection",
    "discover_targets",
    "fetch_since",
    "apply_post_action",
    "send_message",
    "subscribe_webhook",
    "verify_webhook_signature",
    "parse_webhook",
)


@dataclass(frozen=True)
class ProviderCapabilities:
    """Static capability descriptor for a provider."""

    provider: ChannelProvider
    kind: ChannelKind
    requires_oauth: bool
    transport_mode: TransportMode
    requires_prior_integration: bool = False
    integration_family: IntegrationFamily | None = None
    credential_fields: tuple[str, ...] = ()
    target_kind: str = "folder"  # "folder" for mailboxes, "account" for messaging


@dataclass
class ProviderContext:
    """Everything a provider call needs for one channel. Built by credential_service."""

    channel: "Channel"
    access_token: str | None = None
    secrets: dict[str, Any] = field(default_factory=dict)
    integration_credentials: dict[str, Any] = field(default_factory=dict)
    redirect_uri: str | None = None


@dataclass
class TokenSet:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    account_email: str | None = None
    granted_scopes: list[str] | None = None


@dataclass
class ConnectionTestResult:
    success: bool
    message: str


@dataclass
class DiscoveredTarget:
    """A folder (mailbox) or account (page, phone number) the channel can bind to."""

    id: str
    name: str
    metadata: dict[str, Any] = field(default_factory=dict)
    # Per-target secrets (page tokens); persisted to the credential store, never returned to clients
    credentials: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class InboundItem:
    """One provider message, normalized."""

    external_message_id: str
    received_at: datetime
    sender: str
    body: str
    subject: str | None = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    conversation_key: str | None = None
    # Provider handle used for post-processing (Graph id, Gmail id, IMAP uid)
    source_ref: str | None = None


@dataclass
class OutboundMessage:
    recipient: str
    body: str
    subject: str | None = None
    in_reply_to: str | None = None


@dataclass
class WebhookEvent:
    """An inbound push event resolved to the external account it targets."""

    account_id: str
    delivery_id: str
    item: InboundItem


class Provider:
    """Base provider. Subclasses override the capabilities they support."""

    capabilities: ProviderCapabilities

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    @property
    def name(self) -> str:
        return self.capabilities.provider.value

    def supports(self, operation: str) -> bool:
        """True if this provider's class implements the capability."""
        if operation not in CAPABILITY_METHODS:
            return False
        return getattr(type(self), operation) is not getattr(Provider, operation)

    def supported_operations(self) -> frozenset[str]:
        return frozenset(op for op in CAPABILITY_METHODS if self.supports(op))

    def _unsupported(self, operation: str) -> UnsupportedOperationError:
        return UnsupportedOperationError(self.name, operation)

    # ------------------------------------------------------------------
    # Capabilities (fail closed unless overridden)
    # ------------------------------------------------------------------

    def authorize(self, ctx: ProviderContext, state: str) -> str:
        """Build the provider authorization URL carrying `state`."""
        raise self._unsupported("authorize")

    async def exchange_token(self, ctx: ProviderContext, code: str) -> TokenSet:
        raise self._unsupported("exchange_token")

    async def refresh_token(self, ctx: ProviderContext, refresh_token: str | None) -> TokenSet:
        raise self._unsupported("refresh_token")

    async def test_connection(self, ctx: ProviderContext) -> ConnectionTestResult:
        raise self._unsupported("test_connection")

    async def discover_targets(self, ctx: ProviderContext) -> list[DiscoveredTarget]:
        raise self._unsupported("discover_targets")

    def fetch_since(
        self, ctx: ProviderContext, folder: str, since: datetime | None
    ) -> AsyncIterator[InboundItem]:
        """Lazy, finite sequence of items ordered by provider timestamp."""
        raise self._unsupported("fetch_since")

    async def apply_post_action(
        self,
        ctx: ProviderContext,
        item: InboundItem,
        action: PostImportAction,
        target_folder: str | None,
    ) -> str | None:
        """Apply leave/move/delete. Returns the item's new provider id if it changed."""
        raise self._unsupported("apply_post_action")

    async def send_message(self, ctx: ProviderContext, message: OutboundMessage) -> str | None:
        raise self._unsupported("send_message")

    async def subscribe_webhook(self, ctx: ProviderContext) -> list[str]:
        """Register the inbound endpoint for the channel's account. Returns topics."""
        raise self._unsupported("subscribe_webhook")

    def verify_webhook_signature(
        self, raw_body: bytes, signature: str | None, secret: str | None
    ) -> bool:
        raise self._unsupported("verify_webhook_signature")

    def parse_webhook(self, payload: dict[str, Any]) -> list[WebhookEvent]:
        raise self._unsupported("parse_webhook")

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        token: str | None = None,
        expected: tuple[int, ...] = (200, 201, 202, 204),
        **kwargs: Any,
    ) -> httpx.Response:
        """Perform one provider HTTP call, mapping transport failures to ProviderError."""
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            async with httpx.AsyncClient(
                timeout=HTTPX_TIMEOUT, transport=self._transport
            ) as client:
                response = await request_with_retries(
                    lambda: client.request(method, url, headers=headers, **kwargs),
                    base_delay=0.5,
                )
        except httpx.TimeoutException as exc:
            raise ProviderError(
                f"{self.name} API timeout", provider=self.name, detail=str(exc)
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(
                f"{self.name} API connection failed", provider=self.name, detail=str(exc)
            ) from exc

        if response.status_code not in expected:
            message = _extract_error_message(response)
            logger.warning(
                "%s API error %s on %s %s", self.name, response.status_code, method, _safe_path(url)
            )
            raise ProviderError(
                f"{self.name} API error {response.status_code}: {message}",
                provider=self.name,
                status_code=response.status_code,
                detail=response.text[:2000],
            )
        return response

    async def _json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._request(method, url, **kwargs)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(
                f"{self.name} API returned invalid JSON",
                provider=self.name,
                status_code=response.status_code,
                detail=response.text[:2000],
            ) from exc
        if not isinstance(data, dict):
            raise ProviderError(f"{self.name} API returned unexpected payload", provider=self.name)
        return data


def _extract_error_message(response: httpx.Response) -> str:
    """Pull the human-readable message out of OAuth/Graph/Gmail error bodies."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(data, dict):
        if data.get("error_description"):
            return str(data["error_description"])
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return response.reason_phrase


def _safe_path(url: str) -> str:
    return url.split("?", 1)[0]
