from __future__ import annotations

import imaplib
from datetime import datetime, timedelta, timezone

import anyio
import pytest

from app.db.enums import (
    ChannelKind,
    ChannelProvider,
    ChannelState,
    ConnectionEventType,
    ConnectionOutcome,
    PostImportAction,
    TransportMode,
)
from app.services.channel_errors import ProviderError
from app.services.channel_providers import (
    InboundItem,
    Provider,
    ProviderCapabilities,
    ProviderContext,
)

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _item(n: int, *, sender: str = "customer@example.com", at: datetime | None = None) -> InboundItem:
    return InboundItem(
        external_message_id=f"<msg-{n}@example.com>",
        received_at=at or T0 + timedelta(minutes=n),
        sender=sender,
        body=f"body {n}",
        subject=f"Subject {n}",
        conversation_key=f"conv-{n}",
        source_ref=f"graph-{n}",
    )


class FakeMailboxProvider(Provider):
    capabilities = ProviderCapabilities(
        provider=ChannelProvider.MICROSOFT365,
        kind=ChannelKind.EMAIL,
        requires_oauth=True,
        transport_mode=TransportMode.POLL,
        target_kind="folder",
    )

    def __init__(self, items=None, *, fail_after: int | None = None, hang_after: int | None = None):
        super().__init__()
        self.items = list(items or [])
        self.fail_after = fail_after
        self.hang_after = hang_after
        self.fetch_calls: list[tuple[str, datetime | None]] = []
        self.post_actions: list[tuple[str, PostImportAction]] = []
        self.post_action_error: Exception | None = None
        self.failure: Exception | None = None
        self.moved_ids: dict[str, str] = {}

    async def fetch_since(self, ctx, folder, since):
        self.fetch_calls.append((folder, since))
        for index, item in enumerate(self.items):
            if self.fail_after is not None and index == self.fail_after:
                raise self.failure or ProviderError(
                    "Graph API error 503: unavailable", provider="microsoft365"
                )
            if self.hang_after is not None and index == self.hang_after:
                await anyio.sleep(5)
            yield item

    async def apply_post_action(self, ctx, item, action, target_folder):
        if self.post_action_error is not None:
            raise self.post_action_error
        self.post_actions.append((item.external_message_id, action))
        return self.moved_ids.get(item.external_message_id)


@pytest.fixture
def fake_provider(monkeypatch):
    from app.services import channel_sync_service, credential_service

    provider = FakeMailboxProvider()

    async def _build_context(db, channel, *, refresh=True):
        return ProviderContext(channel=channel, access_token="access-token")

    monkeypatch.setattr(channel_sync_service, "get_provider", lambda _key: provider)
    monkeypatch.setattr(credential_service, "build_context", _build_context)
    return provider


def _sync_audits(db, channel):
    from app.db.models import ConnectionAuditEntry

    return (
        db.query(ConnectionAuditEntry)
        .filter(
            ConnectionAuditEntry.channel_id == channel.id,
            ConnectionAuditEntry.event_type == ConnectionEventType.SYNC,
        )
        .all()
    )


@pytest.mark.asyncio
async def test_sync_creates_tickets_and_advances_watermark(db, make_channel, fake_provider):
    from app.db.models import Ticket
    from app.services import channel_sync_service

    channel = make_channel()
    fake_provider.items = [_item(1), _item(2), _item(3)]

    result = await channel_sync_service.sync_channel(db, channel.id)

    assert result.status == "success"
    assert result.items_processed == 3
    assert result.tickets_created == 3
    db.refresh(channel)
    assert channel.sync_watermark == T0 + timedelta(minutes=3)
    assert channel.sync_started_at is None
    assert channel.last_synced_at is not None
    assert db.query(Ticket).filter(Ticket.channel_id == channel.id).count() == 3

    audits = _sync_audits(db, channel)
    assert len(audits) == 1
    assert audits[0].outcome == ConnectionOutcome.SUCCESS
    assert audits[0].items_processed == 3


@pytest.mark.asyncio
async def test_sync_fetches_from_watermark_or_import_floor(db, make_channel, fake_provider):
    from app.services import channel_sync_service

    floor = T0 + timedelta(days=1)
    channel = make_channel(sync_watermark=T0, synced_since=floor, fetch_folder="archive-id")

    await channel_sync_service.sync_channel(db, channel.id)

    assert fake_provider.fetch_calls == [("archive-id", floor)]


@pytest.mark.asyncio
async def test_watermark_never_moves_backwards(db, make_channel, fake_provider):
    from app.services import channel_sync_service

    channel = make_channel(sync_watermark=T0 + timedelta(hours=1))
    fake_provider.items = [_item(1)]  # older than the stored watermark

    result = await channel_sync_service.sync_channel(db, channel.id)

    assert result.status == "success"
    db.refresh(channel)
    assert channel.sync_watermark == T0 + timedelta(hours=1)


@pytest.mark.asyncio
async def test_partial_failure_keeps_processed_items_and_counts_failure(
    db, make_channel, fake_provider
):
    from app.db.models import Ticket
    from app.services import channel_sync_service

    channel = make_channel()
    fake_provider.items = [_item(1), _item(2), _item(3)]
    fake_provider.fail_after = 2

    result = await channel_sync_service.sync_channel(db, channel.id)

    assert result.status == "failure"
    assert result.items_processed == 2
    assert "503" in result.error
    db.refresh(channel)
    # Watermark stops at the last fully processed item
    assert channel.sync_watermark == T0 + timedelta(minutes=2)
    assert channel.failure_count == 1
    assert channel.last_error
    assert channel.state == ChannelState.ACTIVE
    assert db.query(Ticket).filter(Ticket.channel_id == channel.id).count() == 2

    audits = _sync_audits(db, channel)
    assert len(audits) == 1
    assert audits[0].outcome == ConnectionOutcome.FAILURE
    assert audits[0].items_processed == 2


@pytest.mark.asyncio
async def test_timeout_does_not_move_watermark(db, make_channel, fake_provider, monkeypatch):
    from app.core.config import settings
    from app.services import channel_sync_service

    monkeypatch.setattr(settings, "CHANNEL_SYNC_TIMEOUT_SECONDS", 0.2)
    channel = make_channel(sync_watermark=T0)
    fake_provider.items = [_item(1), _item(2)]
    fake_provider.hang_after = 1

    result = await channel_sync_service.sync_channel(db, channel.id)

    assert result.status == "failure"
    assert "timed out" in result.error
    db.refresh(channel)
    assert channel.sync_watermark == T0
    assert channel.sync_started_at is None
    assert channel.failure_count == 1


@pytest.mark.asyncio
async def test_resync_is_idempotent(db, make_channel, fake_provider):
    from app.db.models import Ticket, TicketMessage
    from app.services import channel_sync_service

    channel = make_channel()
    fake_provider.items = [_item(1), _item(2)]

    first = await channel_sync_service.sync_channel(db, channel.id)
    # Provider replays the same items (inclusive lower bound)
    second = await channel_sync_service.sync_channel(db, channel.id)

    assert first.tickets_created == 2
    assert second.tickets_created == 0
    assert second.duplicates == 2
    assert db.query(Ticket).filter(Ticket.channel_id == channel.id).count() == 2
    assert db.query(TicketMessage).filter(TicketMessage.channel_id == channel.id).count() == 2


@pytest.mark.asyncio
async def test_duplicate_ids_within_one_run_are_processed_once(db, make_channel, fake_provider):
    from app.services import channel_sync_service

    channel = make_channel()
    fake_provider.items = [_item(1), _item(1), _item(2)]

    result = await channel_sync_service.sync_channel(db, channel.id)

    assert result.items_processed == 2
    assert result.tickets_created == 2


@pytest.mark.asyncio
async def test_self_sent_messages_are_skipped(db, make_channel, fake_provider):
    from app.db.models import Ticket
    from app.services import channel_sync_service

    channel = make_channel(email_address="support@example.com")
    fake_provider.items = [_item(1, sender="Support@Example.com"), _item(2)]

    result = await channel_sync_service.sync_channel(db, channel.id)

    assert result.skipped_self == 1
    assert result.tickets_created == 1
    assert db.query(Ticket).filter(Ticket.channel_id == channel.id).count() == 1
    db.refresh(channel)
    assert channel.sync_watermark == T0 + timedelta(minutes=2)


@pytest.mark.asyncio
async def test_post_action_failure_is_reported_but_sync_succeeds(db, make_channel, fake_provider):
    from app.services import channel_sync_service

    channel = make_channel(post_import_action=PostImportAction.DELETE)
    fake_provider.items = [_item(1)]
    fake_provider.post_action_error = ProviderError("Graph API error 403: denied", provider="microsoft365")

    result = await channel_sync_service.sync_channel(db, channel.id)

    assert result.status == "success"
    assert result.tickets_created == 1
    assert result.post_action_failures == [
        {"external_message_id": "<msg-1@example.com>", "error": "Graph API error 403: denied"}
    ]
    audit = _sync_audits(db, channel)[0]
    assert audit.details["post_action_failures"][0]["external_message_id"] == "<msg-1@example.com>"


@pytest.mark.asyncio
async def test_post_action_runs_for_each_ingested_item(db, make_channel, fake_provider):
    from app.services import channel_sync_service

    channel = make_channel(
        post_import_action=PostImportAction.MOVE_TO_FOLDER, post_import_folder="done-id"
    )
    fake_provider.items = [_item(1), _item(2)]

    await channel_sync_service.sync_channel(db, channel.id)

    assert fake_provider.post_actions == [
        ("<msg-1@example.com>", PostImportAction.MOVE_TO_FOLDER),
        ("<msg-2@example.com>", PostImportAction.MOVE_TO_FOLDER),
    ]


@pytest.mark.asyncio
async def test_concurrent_run_is_a_noop(db, make_channel, fake_provider):
    from app.services import channel_sync_service

    channel = make_channel(sync_started_at=datetime.now(timezone.utc))
    fake_provider.items = [_item(1)]

    result = await channel_sync_service.sync_channel(db, channel.id)

    assert result.status == "skipped"
    assert result.reason == "already_running"
    assert fake_provider.fetch_calls == []
    assert _sync_audits(db, channel) == []


@pytest.mark.asyncio
async def test_stale_claim_is_taken_over(db, make_channel, fake_provider):
    from app.services import channel_sync_service

    channel = make_channel(sync_started_at=datetime.now(timezone.utc) - timedelta(hours=2))
    fake_provider.items = [_item(1)]

    result = await channel_sync_service.sync_channel(db, channel.id)

    assert result.status == "success"


@pytest.mark.asyncio
async def test_inactive_channel_is_skipped(db, make_channel, fake_provider):
    from app.services import channel_sync_service

    channel = make_channel(state=ChannelState.SUSPENDED)

    result = await channel_sync_service.sync_channel(db, channel.id)

    assert result.status == "skipped"
    assert result.reason == "not_active"
    assert fake_provider.fetch_calls == []


@pytest.mark.asyncio
async def test_success_resets_failure_count(db, make_channel, fake_provider):
    from app.services import channel_sync_service

    channel = make_channel(failure_count=4, last_error="boom")

    await channel_sync_service.sync_channel(db, channel.id)

    db.refresh(channel)
    assert channel.failure_count == 0
    assert channel.last_error is None


@pytest.mark.asyncio
async def test_tenth_consecutive_failure_suspends_channel(db, make_channel, fake_provider):
    from app.services import channel_sync_service

    channel = make_channel()
    fake_provider.items = [_item(1)]
    fake_provider.fail_after = 0

    for _ in range(9):
        await channel_sync_service.sync_channel(db, channel.id)
    db.refresh(channel)
    assert channel.failure_count == 9
    assert channel.state == ChannelState.ACTIVE

    await channel_sync_service.sync_channel(db, channel.id)

    db.refresh(channel)
    assert channel.failure_count == 10
    assert channel.state == ChannelState.SUSPENDED
    assert channel.deactivated_at is not None

    # Suspended channels are not synced any more
    result = await channel_sync_service.sync_channel(db, channel.id)
    assert result.reason == "not_active"


@pytest.mark.asyncio
async def test_unexpected_provider_error_is_an_audited_failure(db, make_channel, fake_provider):
    from app.services import channel_sync_service

    channel = make_channel()
    fake_provider.items = [_item(1), _item(2)]
    fake_provider.fail_after = 1
    fake_provider.failure = ValueError("Invalid isoformat string: 'not-a-date'")

    result = await channel_sync_service.sync_channel(db, channel.id)

    assert result.status == "failure"
    assert result.items_processed == 1
    assert "ValueError" in result.error
    db.refresh(channel)
    assert channel.sync_started_at is None
    assert channel.failure_count == 1
    assert channel.sync_watermark == T0 + timedelta(minutes=1)
    audits = _sync_audits(db, channel)
    assert len(audits) == 1
    assert audits[0].outcome == ConnectionOutcome.FAILURE

    # The claim was released, so the next run is not skipped
    second = await channel_sync_service.sync_channel(db, channel.id)

    assert second.status == "failure"
    db.refresh(channel)
    assert channel.failure_count == 2
    assert len(_sync_audits(db, channel)) == 2


@pytest.mark.asyncio
async def test_moved_item_keeps_its_new_provider_id(db, make_channel, fake_provider):
    from app.db.models import TicketMessage
    from app.services import channel_sync_service

    channel = make_channel(
        post_import_action=PostImportAction.MOVE_TO_FOLDER, post_import_folder="done-id"
    )
    fake_provider.items = [_item(1), _item(2)]
    fake_provider.moved_ids = {"<msg-1@example.com>": "graph-1-moved"}

    await channel_sync_service.sync_channel(db, channel.id)

    refs = {
        m.external_message_id: m.provider_ref
        for m in db.query(TicketMessage).filter(TicketMessage.channel_id == channel.id)
    }
    assert refs == {"<msg-1@example.com>": "graph-1-moved", "<msg-2@example.com>": "graph-2"}


# =============================================================================
# IMAP ordering
# =============================================================================


def _rfc822(n: int) -> bytes:
    return (
        "From: customer@example.com\r\n"
        f"Subject: Order {n}\r\n"
        f"Message-ID: <imap-{n}@example.com>\r\n"
        "\r\n"
        f"body {n}\r\n"
    ).encode()


class FakeImapConnection:
    """Just enough of imaplib.IMAP4 for a fetch run. messages: uid -> (INTERNALDATE, raw)."""

    def __init__(self, messages: dict[str, tuple[str, bytes]]):
        self.messages = messages
        self.fetched: list[str] = []
        self.fail_on: str | None = None

    def select(self, mailbox, readonly=False):
        return "OK", [str(len(self.messages)).encode()]

    def uid(self, command, *args):
        if command == "SEARCH":
            return "OK", [" ".join(self.messages).encode()]
        uid_set, query = args
        if query == "(INTERNALDATE)":
            return "OK", [
                f'{seq} (UID {uid} INTERNALDATE "{self.messages[uid][0]}")'.encode()
                for seq, uid in enumerate(uid_set.split(","), start=1)
            ]
        self.fetched.append(uid_set)
        if uid_set == self.fail_on:
            raise imaplib.IMAP4.abort("socket error: EOF")
        raw = self.messages[uid_set][1]
        return "OK", [(f"1 (UID {uid_set} RFC822 {{{len(raw)}}}".encode(), raw), b")"]

    def logout(self):
        return "BYE", [b"Logging out"]


@pytest.mark.asyncio
async def test_imap_sync_follows_arrival_order_across_partial_failure(
    db, make_channel, monkeypatch
):
    from app.db.models import Ticket
    from app.services import channel_sync_service, credential_service
    from app.services.channel_providers.imap import ImapProvider

    # 101 was copied into the folder last, so its UID is not its arrival position
    conn = FakeImapConnection(
        {
            "101": ("01-Mar-2026 10:00:00 +0000", _rfc822(101)),
            "102": ("01-Mar-2026 09:00:00 +0000", _rfc822(102)),
            "103": ("01-Mar-2026 09:30:00 +0000", _rfc822(103)),
        }
    )
    conn.fail_on = "101"
    provider = ImapProvider()
    provider._connect = lambda secrets: conn

    async def _build_context(db, channel, *, refresh=True):
        return ProviderContext(channel=channel, secrets={})

    monkeypatch.setattr(channel_sync_service, "get_provider", lambda _key: provider)
    monkeypatch.setattr(credential_service, "build_context", _build_context)
    channel = make_channel(ChannelProvider.IMAP)

    first = await channel_sync_service.sync_channel(db, channel.id)

    assert first.status == "failure"
    assert "EOF" in first.error
    assert conn.fetched == ["102", "103", "101"]
    db.refresh(channel)
    assert channel.sync_watermark == datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)

    conn.fail_on = None
    conn.fetched = []
    second = await channel_sync_service.sync_channel(db, channel.id)

    assert second.status == "success"
    # 102 is below the watermark; 103 is replayed (inclusive bound) and deduplicated
    assert conn.fetched == ["103", "101"]
    assert second.duplicates == 1
    assert second.tickets_created == 1
    db.refresh(channel)
    assert channel.sync_watermark == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
    assert db.query(Ticket).filter(Ticket.channel_id == channel.id).count() == 3
