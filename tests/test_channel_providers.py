"""Provider contracts against canned provider responses (httpx.MockTransport)."""

from __future__ import annotations

import base64
import json
from datetime import datetime, timezone
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from app.core.security import compute_hub_signature
from app.db.enums import PostImportAction
from app.services.channel_errors import ProviderError, UnsupportedOperationError
from app.services.channel_providers import InboundItem, OutboundMessage, ProviderContext
from app.services.channel_providers.google import GoogleProvider, build_search_query
from app.services.channel_providers.imap import ImapProvider
from app.services.channel_providers.meta import InstagramProvider, MessengerProvider
from app.services.channel_providers.microsoft365 import Microsoft365Provider
from app.services.channel_providers.whatsapp import WhatsAppProvider


def _ctx(**channel_fields) -> ProviderContext:
    fields = {"external_account_id": None, "fetch_folder": "INBOX", "email_address": None}
    fields.update(channel_fields)
    channel = SimpleNamespace(**fields)
    return ProviderContext(
        channel=channel,
        access_token="access-token",
        integration_credentials={"client_id": "cid", "client_secret": "csecret", "app_id": "app", "app_secret": "asecret"},
        redirect_uri="http://localhost:8000/channels/oauth/test/callback",
    )


async def _collect(iterator) -> list:
    return [item async for item in iterator]


# =============================================================================
# Capabilities
# =============================================================================


def test_unimplemented_capabilities_fail_closed():
    imap = ImapProvider()

    assert imap.supports("fetch_since")
    assert not imap.supports("authorize")
    assert not imap.supports("parse_webhook")
    assert not imap.supports("no_such_operation")
    with pytest.raises(UnsupportedOperationError):
        imap.authorize(_ctx(), "state")
    with pytest.raises(UnsupportedOperationError):
        imap.parse_webhook({})


def test_push_providers_do_not_poll():
    for provider in (InstagramProvider(), MessengerProvider(), WhatsAppProvider()):
        assert not provider.supports("fetch_since")
        assert provider.supports("parse_webhook")
        assert provider.supports("subscribe_webhook")


# =============================================================================
# Microsoft 365 (Graph)
# =============================================================================


def test_graph_authorize_url_carries_state_and_offline_scope():
    url = Microsoft365Provider().authorize(_ctx(), "state-123")

    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    assert parsed.path == "/common/oauth2/v2.0/authorize"
    assert query["state"] == ["state-123"]
    assert query["client_id"] == ["cid"]
    assert "offline_access" in query["scope"][0].split()


@pytest.mark.asyncio
async def test_graph_fetch_since_pages_and_hydrates_attachments():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        assert request.headers["Authorization"] == "Bearer access-token"
        path = request.url.path
        if path.endswith("/mailFolders/inbox-id/messages") and "page=2" not in str(request.url):
            return httpx.Response(
                200,
                json={
                    "value": [
                        {
                            "id": "AAA1",
                            "internetMessageId": "<one@example.com>",
                            "subject": "Printer on fire",
                            "from": {"emailAddress": {"address": "customer@example.com"}},
                            "body": {"content": "<p>help</p>"},
                            "receivedDateTime": "2026-03-01T09:00:00Z",
                            "conversationId": "conv-1",
                            "hasAttachments": True,
                        }
                    ],
                    "@odata.nextLink": "https://graph.microsoft.com/v1.0/me/mailFolders/inbox-id/messages?page=2",
                },
            )
        if "page=2" in str(request.url):
            return httpx.Response(
                200,
                json={
                    "value": [
                        {
                            "id": "AAA2",
                            "subject": "Follow-up",
                            "from": {"emailAddress": {"address": "customer@example.com"}},
                            "body": {"content": "still burning"},
                            "receivedDateTime": "2026-03-01T10:00:00Z",
                            "conversationId": "conv-1",
                            "hasAttachments": False,
                        }
                    ]
                },
            )
        if path.endswith("/messages/AAA1/attachments"):
            return httpx.Response(
                200,
                json={"value": [{"name": "photo.jpg", "contentType": "image/jpeg", "size": 10, "contentBytes": "AAAA"}]},
            )
        return httpx.Response(404, json={"error": {"message": f"unexpected {path}"}})

    provider = Microsoft365Provider(transport=httpx.MockTransport(handler))
    since = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

    items = await _collect(provider.fetch_since(_ctx(), "inbox-id", since))

    assert [i.external_message_id for i in items] == ["<one@example.com>", "AAA2"]
    assert items[0].source_ref == "AAA1"
    assert items[0].received_at == datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    assert items[0].attachments[0]["filename"] == "photo.jpg"
    assert items[1].attachments == []
    first_query = parse_qs(seen[0].url.query.decode())
    assert first_query["$filter"] == ["receivedDateTime ge 2026-03-01T08:00:00Z"]
    assert first_query["$orderby"] == ["receivedDateTime asc"]


@pytest.mark.asyncio
async def test_graph_move_returns_new_id():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1.0/me/messages/AAA1/move"
        return httpx.Response(201, json={"id": "MOVED1"})

    provider = Microsoft365Provider(transport=httpx.MockTransport(handler))
    item = InboundItem(
        external_message_id="<one@example.com>",
        received_at=datetime.now(timezone.utc),
        sender="customer@example.com",
        body="",
        source_ref="AAA1",
    )

    new_id = await provider.apply_post_action(_ctx(), item, PostImportAction.MOVE_TO_FOLDER, "done-id")

    assert new_id == "MOVED1"


@pytest.mark.asyncio
async def test_graph_errors_become_provider_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            401, json={"error": {"code": "InvalidAuthenticationToken", "message": "Token expired"}}
        )

    provider = Microsoft365Provider(transport=httpx.MockTransport(handler))

    with pytest.raises(ProviderError) as exc_info:
        await provider.test_connection(_ctx())

    assert exc_info.value.status_code == 401
    assert "Token expired" in str(exc_info.value)


@pytest.mark.asyncio
async def test_graph_refresh_keeps_refresh_token_when_not_rotated():
    def handler(request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["old-refresh"]
        return httpx.Response(200, json={"access_token": "new-access", "expires_in": 3599})

    provider = Microsoft365Provider(transport=httpx.MockTransport(handler))

    tokens = await provider.refresh_token(_ctx(), "old-refresh")

    assert tokens.access_token == "new-access"
    assert tokens.refresh_token == "old-refresh"
    assert tokens.expires_in == 3599


@pytest.mark.asyncio
async def test_transient_errors_are_retried(monkeypatch):
    from app.services import http_service
    from app.services.channel_providers import base

    def _without_backoff(request_fn, **kwargs):
        kwargs["base_delay"] = 0
        return http_service.request_with_retries(request_fn, **kwargs)

    monkeypatch.setattr(base, "request_with_retries", _without_backoff)
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] == 1:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={"mail": "helpdesk@contoso.com"})

    provider = Microsoft365Provider(transport=httpx.MockTransport(handler))

    result = await provider.test_connection(_ctx())

    assert result.success is True
    assert "helpdesk@contoso.com" in result.message
    assert attempts["count"] == 2


# =============================================================================
# Google (Gmail)
# =============================================================================


def test_gmail_search_query():
    since = datetime(2026, 3, 1, tzinfo=timezone.utc)

    assert build_search_query("INBOX", None) == "in:inbox"
    assert build_search_query("Label_7", since) == f"label:Label_7 after:{int(since.timestamp())}"


def _gmail_message(message_id: str, internal_ms: int, text: str) -> dict:
    data = base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")
    return {
        "id": message_id,
        "threadId": "thread-1",
        "internalDate": str(internal_ms),
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "From", "value": "customer@example.com"},
                {"name": "Subject", "value": "Refund"},
            ],
            "parts": [
                {"mimeType": "text/html", "body": {"data": base64.urlsafe_b64encode(b"<b>x</b>").decode()}},
                {"mimeType": "text/plain", "body": {"data": data}},
            ],
        },
    }


@pytest.mark.asyncio
async def test_gmail_fetch_since_is_oldest_first_and_filters_by_internal_date():
    since = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    since_ms = int(since.timestamp() * 1000)
    messages = {
        "new": _gmail_message("new", since_ms + 60_000, "second"),
        "mid": _gmail_message("mid", since_ms + 1_000, "first"),
        "old": _gmail_message("old", since_ms - 60_000, "too old"),
    }

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/messages"):
            assert request.url.params["q"].startswith("in:inbox after:")
            return httpx.Response(200, json={"messages": [{"id": "new"}, {"id": "mid"}, {"id": "old"}]})
        message_id = path.rsplit("/", 1)[-1]
        return httpx.Response(200, json=messages[message_id])

    provider = GoogleProvider(transport=httpx.MockTransport(handler))

    items = await _collect(provider.fetch_since(_ctx(), "INBOX", since))

    assert [i.external_message_id for i in items] == ["mid", "new"]
    assert items[0].body == "first"
    assert items[0].subject == "Refund"
    assert items[0].conversation_key == "thread-1"


@pytest.mark.asyncio
async def test_gmail_move_swaps_labels():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["json"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "m1"})

    provider = GoogleProvider(transport=httpx.MockTransport(handler))
    item = InboundItem(
        external_message_id="m1", received_at=datetime.now(timezone.utc), sender="a@b.c", body=""
    )

    new_id = await provider.apply_post_action(
        _ctx(), item, PostImportAction.MOVE_TO_FOLDER, "Label_Done"
    )

    assert new_id is None
    assert captured["path"].endswith("/messages/m1/modify")
    assert captured["json"] == {"addLabelIds": ["Label_Done"], "removeLabelIds": ["INBOX"]}


@pytest.mark.asyncio
async def test_gmail_send_encodes_reply_headers():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["raw"] = json.loads(request.content)["raw"]
        return httpx.Response(200, json={"id": "sent-1"})

    provider = GoogleProvider(transport=httpx.MockTransport(handler))

    message_id = await provider.send_message(
        _ctx(email_address="support@example.com"),
        OutboundMessage(
            recipient="customer@example.com", body="On it", subject="Re: Refund", in_reply_to="<orig@x>"
        ),
    )

    assert message_id == "sent-1"
    raw = base64.urlsafe_b64decode(captured["raw"]).decode()
    assert "In-Reply-To: <orig@x>" in raw
    assert "From: support@example.com" in raw


# =============================================================================
# Meta (Messenger, Instagram, WhatsApp)
# =============================================================================


def test_messenger_parse_webhook_skips_echoes():
    payload = {
        "object": "page",
        "entry": [
            {
                "id": "page-1",
                "messaging": [
                    {
                        "sender": {"id": "psid-1"},
                        "recipient": {"id": "page-1"},
                        "timestamp": 1772355600000,
                        "message": {"mid": "m_1", "text": "hello", "attachments": [{"type": "image", "payload": {"url": "https://cdn/x.jpg"}}]},
                    },
                    {
                        "sender": {"id": "page-1"},
                        "recipient": {"id": "psid-1"},
                        "message": {"mid": "m_2", "text": "reply", "is_echo": True},
                    },
                    {
                        "sender": {"id": "psid-1"},
                        "recipient": {"id": "page-1"},
                        "postback": {"mid": "m_3", "title": "Get started"},
                    },
                ],
            }
        ],
    }

    events = MessengerProvider().parse_webhook(payload)

    assert [e.delivery_id for e in events] == ["m_1", "m_3"]
    assert events[0].account_id == "page-1"
    assert events[0].item.received_at == datetime.fromtimestamp(1772355600, tz=timezone.utc)
    assert events[0].item.attachments == [{"type": "image", "url": "https://cdn/x.jpg"}]
    assert events[1].item.body == "Get started"


def test_instagram_ignores_page_objects():
    assert InstagramProvider().parse_webhook({"object": "page", "entry": [{"id": "1"}]}) == []


def test_whatsapp_parse_webhook_ignores_status_updates():
    payload = {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "waba-1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "metadata": {"phone_number_id": "pn-1"},
                            "statuses": [{"id": "wamid.S", "status": "delivered"}],
                            "messages": [
                                {"id": "wamid.1", "from": "15551234567", "timestamp": "1772355600", "type": "text", "text": {"body": "hi"}},
                                {"id": "wamid.2", "from": "15551234567", "type": "document", "document": {"id": "media-9", "mime_type": "application/pdf", "filename": "invoice.pdf"}},
                            ],
                        },
                    }
                ],
            }
        ],
    }

    events = WhatsAppProvider().parse_webhook(payload)

    assert [e.delivery_id for e in events] == ["wamid.1", "wamid.2"]
    assert events[0].account_id == "pn-1"
    assert events[0].item.body == "hi"
    assert events[1].item.attachments[0]["media_id"] == "media-9"


def test_meta_signature_verification():
    body = b'{"object":"page"}'
    provider = MessengerProvider()

    assert provider.verify_webhook_signature(body, compute_hub_signature(body, "s3cret"), "s3cret")
    assert not provider.verify_webhook_signature(body, compute_hub_signature(body, "other"), "s3cret")
    assert not provider.verify_webhook_signature(body, "sha1=abc", "s3cret")
    assert not provider.verify_webhook_signature(body, None, "s3cret")


@pytest.mark.asyncio
async def test_instagram_discover_targets_carries_page_tokens():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/me/accounts")
        return httpx.Response(
            200,
            json={
                "data": [
                    {"id": "page-1", "name": "Acme", "access_token": "page-token", "instagram_business_account": {"id": "ig-1", "username": "acme"}},
                    {"id": "page-2", "name": "No IG", "access_token": "other"},
                ]
            },
        )

    provider = InstagramProvider(transport=httpx.MockTransport(handler))

    targets = await provider.discover_targets(_ctx())

    assert [(t.id, t.name) for t in targets] == [("ig-1", "acme")]
    assert targets[0].credentials == {"page_id": "page-1", "page_access_token": "page-token"}
    assert "page-token" not in repr(targets[0])


@pytest.mark.asyncio
async def test_meta_exchange_upgrades_to_long_lived_token():
    calls: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        params = dict(request.url.params)
        calls.append(params)
        if "code" in params:
            return httpx.Response(200, json={"access_token": "short", "expires_in": 3600})
        assert params["grant_type"] == "fb_exchange_token"
        assert params["fb_exchange_token"] == "short"
        return httpx.Response(200, json={"access_token": "long"})

    provider = MessengerProvider(transport=httpx.MockTransport(handler))

    tokens = await provider.exchange_token(_ctx(), "auth-code")

    assert tokens.access_token == "long"
    assert tokens.expires_in == 5184000
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_long_retry_after_is_not_waited_for():
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(429, headers={"Retry-After": "3600"}, json={"error": "throttled"})

    provider = GoogleProvider(transport=httpx.MockTransport(handler))

    with pytest.raises(ProviderError) as exc_info:
        await provider.test_connection(_ctx())

    assert exc_info.value.status_code == 429
    assert attempts["count"] == 1


def test_retry_after_parsing():
    from app.services.http_service import retry_after_seconds

    assert retry_after_seconds(httpx.Response(429, headers={"Retry-After": "2"})) == 2.0
    assert retry_after_seconds(httpx.Response(429, headers={"Retry-After": "soon"})) is None
    assert retry_after_seconds(httpx.Response(429)) is None


# =============================================================================
# Malformed provider data
# =============================================================================


@pytest.mark.asyncio
async def test_graph_invalid_received_date_is_a_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "value": [
                    {
                        "id": "AAA1",
                        "from": {"emailAddress": {"address": "customer@example.com"}},
                        "receivedDateTime": "not-a-date",
                        "hasAttachments": False,
                    }
                ]
            },
        )

    provider = Microsoft365Provider(transport=httpx.MockTransport(handler))

    with pytest.raises(ProviderError) as exc_info:
        await _collect(provider.fetch_since(_ctx(), "inbox-id", None))
    assert exc_info.value.provider == "microsoft365"
    assert "not-a-date" in exc_info.value.detail


@pytest.mark.asyncio
async def test_gmail_message_without_internal_date_is_a_provider_error():
    message = _gmail_message("m1", 0, "hello")
    del message["internalDate"]

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/messages"):
            return httpx.Response(200, json={"messages": [{"id": "m1"}]})
        return httpx.Response(200, json=message)

    provider = GoogleProvider(transport=httpx.MockTransport(handler))

    with pytest.raises(ProviderError, match="internalDate"):
        await _collect(provider.fetch_since(_ctx(), "INBOX", None))


@pytest.mark.asyncio
async def test_gmail_undecodable_body_is_a_provider_error():
    message = _gmail_message("m1", 1772355600000, "hello")
    message["payload"]["parts"][1]["body"]["data"] = "abcde"

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/messages"):
            return httpx.Response(200, json={"messages": [{"id": "m1"}]})
        return httpx.Response(200, json=message)

    provider = GoogleProvider(transport=httpx.MockTransport(handler))

    with pytest.raises(ProviderError, match="undecodable"):
        await _collect(provider.fetch_since(_ctx(), "INBOX", None))
