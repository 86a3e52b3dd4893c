from datetime import datetime, timezone

import pytest

from app.services.channel_errors import ConfigurationError, ProviderError
from app.services.channel_providers.imap import (
    parse_fetch_dates,
    parse_internaldate,
    parse_list_response,
    parse_message,
    validate_credentials,
)


def test_validate_credentials_normalizes():
    normalized = validate_credentials(
        {
            "imap_host": "mail.example.com",
            "imap_port": "993",
            "imap_username": "support",
            "imap_password": "pw",
            "smtp_host": "",
            "smtp_encryption": "STARTTLS",
        }
    )

    assert normalized["imap_port"] == 993
    assert normalized["imap_encryption"] == "ssl"
    assert normalized["smtp_encryption"] == "starttls"
    assert "smtp_host" not in normalized


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"imap_password": ""}, "imap_password"),
        ({"imap_port": "imap"}, "must be a number"),
        ({"imap_port": 70000}, "out of range"),
        ({"imap_encryption": "rot13"}, "imap_encryption"),
    ],
)
def test_validate_credentials_rejects(overrides, message):
    secrets = {
        "imap_host": "mail.example.com",
        "imap_port": 993,
        "imap_username": "support",
        "imap_password": "pw",
    }
    secrets.update(overrides)

    with pytest.raises(ConfigurationError, match=message):
        validate_credentials(secrets)


def test_parse_internaldate_converts_to_utc():
    header = b'12 (UID 7 INTERNALDATE "01-Mar-2026 10:30:00 +0200" RFC822 {512}'

    assert parse_internaldate(header) == datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc)
    assert parse_internaldate(b"12 (UID 7 RFC822 {512}") is None
    assert parse_internaldate(b'INTERNALDATE "not a date"') is None


def test_parse_list_response_skips_unselectable():
    lines = [
        b'(\\HasNoChildren) "/" "INBOX"',
        b'(\\Noselect \\HasChildren) "/" "[Gmail]"',
        b'(\\HasNoChildren \\Sent) "/" "Sent Items"',
        b"(\\HasNoChildren) \".\" Archive",
        b"",
        b"garbage",
    ]

    assert parse_list_response(lines) == ["INBOX", "Sent Items", "Archive"]


def test_parse_message_prefers_plain_text_and_lists_attachments():
    raw = (
        b"From: Customer <customer@example.com>\r\n"
        b"To: support@example.com\r\n"
        b"Subject: Broken widget\r\n"
        b"Message-ID: <abc@example.com>\r\n"
        b"In-Reply-To: <root@example.com>\r\n"
        b"Date: Sun, 01 Mar 2026 09:00:00 +0000\r\n"
        b"MIME-Version: 1.0\r\n"
        b'Content-Type: multipart/mixed; boundary="b1"\r\n'
        b"\r\n"
        b"--b1\r\n"
        b"Content-Type: text/plain; charset=utf-8\r\n"
        b"\r\n"
        b"It broke again.\r\n"
        b"--b1\r\n"
        b"Content-Type: application/pdf\r\n"
        b'Content-Disposition: attachment; filename="receipt.pdf"\r\n'
        b"Content-Transfer-Encoding: base64\r\n"
        b"\r\n"
        b"JVBERi0xLjQ=\r\n"
        b"--b1--\r\n"
    )

    item = parse_message("42", raw, None)

    assert item.external_message_id == "<abc@example.com>"
    assert item.sender == "customer@example.com"
    assert item.subject == "Broken widget"
    assert item.body.strip() == "It broke again."
    assert item.received_at == datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    assert item.conversation_key == "<root@example.com>"
    assert item.source_ref == "42"
    assert item.attachments == [
        {"filename": "receipt.pdf", "content_type": "application/pdf", "size": 8}
    ]


def test_parse_message_without_message_id_uses_uid():
    internal = datetime(2026, 3, 2, tzinfo=timezone.utc)

    item = parse_message("7", b"From: a@example.com\r\n\r\nhello\r\n", internal)

    assert item.external_message_id == "imap-uid:7"
    assert item.received_at == internal
    assert item.subject is None


def test_parse_fetch_dates_maps_uids():
    lines = [
        b'1 (UID 101 INTERNALDATE "01-Mar-2026 10:00:00 +0000")',
        (b'2 (UID 102 INTERNALDATE "01-Mar-2026 11:00:00 +0200")', b""),
        b"3 (UID 103)",
        b")",
    ]

    assert parse_fetch_dates(lines) == {
        "101": datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc),
        "102": datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc),
    }


def test_parse_message_without_any_date_is_rejected():
    with pytest.raises(ProviderError, match="no date"):
        parse_message("9", b"From: a@example.com\r\n\r\nhello\r\n", None)


def test_parse_message_with_unknown_charset_still_reads_body():
    raw = (
        b"From: a@example.com\r\n"
        b"Content-Type: text/plain; charset=x-no-such-charset\r\n"
        b"\r\n"
        b"hello\r\n"
    )

    item = parse_message("9", raw, datetime(2026, 3, 2, tzinfo=timezone.utc))

    assert item.body.strip() == "hello"
