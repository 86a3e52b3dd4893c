"""Generic IMAP/SMTP mailbox provider (credential-based poll)."""

from __future__ import annotations

import imaplib
import logging
import re
import smtplib
from contextlib import contextmanager
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import make_msgid, parseaddr
from typing import Any, AsyncIterator, Iterator

import anyio

from app.db.enums import ChannelKind, ChannelProvider, PostImportAction, TransportMode
from app.services.channel_errors import ConfigurationError, ProviderError
from app.services.channel_providers.base import (
    ConnectionTestResult,
    DiscoveredTarget,
    InboundItem,
    OutboundMessage,
    Provider,
    ProviderCapabilities,
    ProviderContext,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("imap_host", "imap_port", "imap_username", "imap_password")
OPTIONAL_FIELDS = (
    "imap_encryption",
    "smtp_host",
    "smtp_port",
    "smtp_username",
    "smtp_password",
    "smtp_encryption",
)
ENCRYPTION_MODES = {"ssl", "tls", "starttls", "none"}
SOCKET_TIMEOUT_SECONDS = 15

_LIST_RE = re.compile(rb'\((?P<flags>[^)]*)\) (?P<delim>"[^"]*"|NIL) (?P<name>.+)')
_INTERNALDATE_RE = re.compile(rb'INTERNALDATE "([^"]+)"')
_UID_RE = re.compile(rb"UID (\d+)")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def validate_credentials(secrets: dict[str, Any]) -> dict[str, Any]:
    """Check IMAP/SMTP credentials shape and return the normalized dict."""
    missing = [f for f in REQUIRED_FIELDS if not secrets.get(f)]
    if missing:
        raise ConfigurationError(f"Missing IMAP credentials: {', '.join(missing)}")

    normalized: dict[str, Any] = {
        f: secrets[f] for f in REQUIRED_FIELDS + OPTIONAL_FIELDS if secrets.get(f) not in (None, "")
    }
    for port_field in ("imap_port", "smtp_port"):
        if port_field in normalized:
            try:
                port = int(normalized[port_field])
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"{port_field} must be a number") from exc
            if not 0 < port < 65536:
                raise ConfigurationError(f"{port_field} out of range")
            normalized[port_field] = port
    for mode_field in ("imap_encryption", "smtp_encryption"):
        mode = str(normalized.get(mode_field, "ssl")).lower()
        if mode not in ENCRYPTION_MODES:
            raise ConfigurationError(f"{mode_field} must be one of {sorted(ENCRYPTION_MODES)}")
        normalized[mode_field] = mode
    return normalized


def parse_internaldate(header: bytes) -> datetime | None:
    match = _INTERNALDATE_RE.search(header)
    if not match:
        return None
    raw = match.group(1).decode().strip()
    try:
        return datetime.strptime(raw, "%d-%b-%Y %H:%M:%S %z").astimezone(timezone.utc)
    except ValueError:
        return None


def parse_fetch_dates(lines: list[Any]) -> dict[str, datetime]:
    """UID -> INTERNALDATE from a `UID FETCH <set> (INTERNALDATE)` response."""
    dates: dict[str, datetime] = {}
    for line in lines:
        if isinstance(line, tuple):
            line = line[0]
        if not line:
            continue
        uid = _UID_RE.search(line)
        when = parse_internaldate(line)
        if uid and when:
            dates[uid.group(1).decode()] = when
    return dates


def _imap_date(value: datetime) -> str:
    value = value.astimezone(timezone.utc)
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


def _quote_mailbox(name: str) -> str:
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse_list_response(lines: list[bytes]) -> list[str]:
    """Folder names from an IMAP LIST response, skipping \\Noselect entries."""
    folders: list[str] = []
    for line in lines:
        if not line:
            continue
        match = _LIST_RE.match(line)
        if not match:
            continue
        if b"\\Noselect" in match.group("flags"):
            continue
        name = match.group("name").strip().decode("utf-8", errors="replace")
        if name.startswith('"') and name.endswith('"'):
            name = name[1:-1]
        folders.append(name)
    return folders


def _text_content(part: EmailMessage) -> str:
    try:
        return part.get_content()
    except (LookupError, UnicodeDecodeError):
        # Unknown or lying charset
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def parse_message(uid: str, raw: bytes, internal_date: datetime | None) -> InboundItem:
    """
    Normalize an RFC822 message fetched over IMAP.

    received_at is the server INTERNALDATE, else the Date header. A message
    with neither is rejected rather than stamped with the current time.
    """
    message = BytesParser(policy=policy.default).parsebytes(raw)

    body_part = message.get_body(preferencelist=("plain", "html"))
    body = _text_content(body_part) if body_part is not None else ""

    attachments = []
    for part in message.iter_attachments():
        payload = part.get_payload(decode=True) or b""
        attachments.append(
            {
                "filename": part.get_filename(),
                "content_type": part.get_content_type(),
                "size": len(payload),
            }
        )

    received_at = internal_date
    if received_at is None and message["Date"] is not None:
        received_at = message["Date"].datetime
    if received_at is None:
        raise ProviderError(
            f"IMAP message {uid} has no date", provider=ChannelProvider.IMAP.value
        )
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)

    message_id = (message["Message-ID"] or "").strip()
    return InboundItem(
        external_message_id=message_id or f"imap-uid:{uid}",
        received_at=received_at,
        sender=parseaddr(str(message["From"] or ""))[1],
        body=body,
        subject=str(message["Subject"]) if message["Subject"] is not None else None,
        attachments=attachments,
        conversation_key=(message["In-Reply-To"] or message_id or None),
        source_ref=uid,
    )


class ImapProvider(Provider):
    capabilities = ProviderCapabilities(
        provider=ChannelProvider.IMAP,
        kind=ChannelKind.EMAIL,
        requires_oauth=False,
        transport_mode=TransportMode.POLL,
        credential_fields=REQUIRED_FIELDS + OPTIONAL_FIELDS,
        target_kind="folder",
    )

    # =========================================================================
    # Blocking client (always called through anyio.to_thread)
    # =========================================================================

    def _connect(self, secrets: dict[str, Any]) -> imaplib.IMAP4:
        creds = validate_credentials(secrets)
        host, port = creds["imap_host"], creds["imap_port"]
        mode = creds.get("imap_encryption", "ssl")
        try:
            if mode == "ssl":
                conn: imaplib.IMAP4 = imaplib.IMAP4_SSL(host, port, timeout=SOCKET_TIMEOUT_SECONDS)
            else:
                conn = imaplib.IMAP4(host, port, timeout=SOCKET_TIMEOUT_SECONDS)
                if mode in ("tls", "starttls"):
                    conn.starttls()
            conn.login(creds["imap_username"], creds["imap_password"])
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ProviderError(
                "IMAP connection failed", provider=self.name, detail=str(exc)
            ) from exc
        return conn

    def _logout(self, conn: imaplib.IMAP4) -> None:
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError):
            logger.debug("IMAP logout failed", exc_info=True)

    def _check(self, result: tuple[str, Any], operation: str) -> Any:
        status, data = result
        if status != "OK":
            raise ProviderError(
                f"IMAP {operation} failed", provider=self.name, detail=repr(data)
            )
        return data

    @contextmanager
    def _mapped_errors(self, operation: str) -> Iterator[None]:
        """Protocol and socket failures on an open connection become ProviderError."""
        try:
            yield
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ProviderError(
                f"IMAP {operation} failed", provider=self.name, detail=str(exc)
            ) from exc

    def _list_folders(self, secrets: dict[str, Any]) -> list[str]:
        conn = self._connect(secrets)
        try:
            with self._mapped_errors("LIST"):
                return parse_list_response(self._check(conn.list(), "LIST"))
        finally:
            self._logout(conn)

    def _search(
        self, conn: imaplib.IMAP4, folder: str, since: datetime | None
    ) -> list[tuple[str, datetime]]:
        """
        UIDs to import with their INTERNALDATE, oldest first.

        UID order is not arrival order (copied or moved mail gets a new, higher
        UID), so the server dates are fetched up front and sorted on.
        """
        with self._mapped_errors("SEARCH"):
            self._check(conn.select(_quote_mailbox(folder), readonly=False), "SELECT")
            criteria = f"SINCE {_imap_date(since)}" if since else "ALL"
            data = self._check(conn.uid("SEARCH", None, criteria), "SEARCH")
            uids = [u.decode() for u in data[0].split()] if data and data[0] else []
            if not uids:
                return []
            dates = parse_fetch_dates(
                self._check(conn.uid("FETCH", ",".join(uids), "(INTERNALDATE)"), "FETCH")
            )

        dated: list[tuple[str, datetime]] = []
        for uid in uids:
            when = dates.get(uid)
            if when is None:
                logger.warning("IMAP uid %s in %s has no INTERNALDATE, skipping", uid, folder)
                continue
            # SINCE is date-granular
            if since is not None and when < since:
                continue
            dated.append((uid, when))
        return sorted(dated, key=lambda entry: (entry[1], int(entry[0])))

    def _fetch_one(self, conn: imaplib.IMAP4, uid: str, internal_date: datetime) -> InboundItem | None:
        with self._mapped_errors("FETCH"):
            data = self._check(conn.uid("FETCH", uid, "(RFC822)"), "FETCH")
        for part in data:
            if isinstance(part, tuple) and len(part) == 2:
                return parse_message(uid, part[1], internal_date)
        return None

    def _apply_action(
        self, secrets: dict[str, Any], folder: str, uid: str, action: PostImportAction, target: str | None
    ) -> None:
        conn = self._connect(secrets)
        try:
            with self._mapped_errors(action.value):
                self._check(conn.select(_quote_mailbox(folder)), "SELECT")
                if action == PostImportAction.MOVE_TO_FOLDER:
                    self._check(conn.uid("COPY", uid, _quote_mailbox(target or "")), "COPY")
                self._check(conn.uid("STORE", uid, "+FLAGS", "(\\Deleted)"), "STORE")
                self._check(conn.expunge(), "EXPUNGE")
        finally:
            self._logout(conn)

    def _send(self, secrets: dict[str, Any], mime: EmailMessage) -> None:
        creds = validate_credentials(secrets)
        host = creds.get("smtp_host") or creds["imap_host"]
        port = creds.get("smtp_port") or 465
        mode = creds.get("smtp_encryption", "ssl")
        username = creds.get("smtp_username") or creds["imap_username"]
        password = creds.get("smtp_password") or creds["imap_password"]
        try:
            if mode == "ssl":
                smtp: smtplib.SMTP = smtplib.SMTP_SSL(host, port, timeout=SOCKET_TIMEOUT_SECONDS)
            else:
                smtp = smtplib.SMTP(host, port, timeout=SOCKET_TIMEOUT_SECONDS)
                if mode in ("tls", "starttls"):
                    smtp.starttls()
            with smtp:
                smtp.login(username, password)
                smtp.send_message(mime)
        except (smtplib.SMTPException, OSError) as exc:
            raise ProviderError("SMTP send failed", provider=self.name, detail=str(exc)) from exc

    # =========================================================================
    # Capabilities
    # =========================================================================

    async def test_connection(self, ctx: ProviderContext) -> ConnectionTestResult:
        folders = await anyio.to_thread.run_sync(self._list_folders, ctx.secrets)
        return ConnectionTestResult(
            success=True, message=f"Connected ({len(folders)} folders available)"
        )

    async def discover_targets(self, ctx: ProviderContext) -> list[DiscoveredTarget]:
        folders = await anyio.to_thread.run_sync(self._list_folders, ctx.secrets)
        return [DiscoveredTarget(id=name, name=name) for name in folders]

    async def fetch_since(
        self, ctx: ProviderContext, folder: str, since: datetime | None
    ) -> AsyncIterator[InboundItem]:
        conn = await anyio.to_thread.run_sync(self._connect, ctx.secrets)
        try:
            dated_uids = await anyio.to_thread.run_sync(self._search, conn, folder, since)
            for uid, internal_date in dated_uids:
                item = await anyio.to_thread.run_sync(self._fetch_one, conn, uid, internal_date)
                if item is None:
                    continue
                yield item
        finally:
            await anyio.to_thread.run_sync(self._logout, conn)

    async def apply_post_action(
        self,
        ctx: ProviderContext,
        item: InboundItem,
        action: PostImportAction,
        target_folder: str | None,
    ) -> str | None:
        if action == PostImportAction.LEAVE:
            return None
        if action == PostImportAction.MOVE_TO_FOLDER and not target_folder:
            raise ConfigurationError("Move action requires a destination folder")
        if not item.source_ref:
            raise ProviderError("IMAP item has no uid", provider=self.name)
        await anyio.to_thread.run_sync(
            self._apply_action,
            ctx.secrets,
            ctx.channel.fetch_folder or "INBOX",
            item.source_ref,
            action,
            target_folder,
        )
        return None

    async def send_message(self, ctx: ProviderContext, message: OutboundMessage) -> str | None:
        mime = EmailMessage()
        mime["From"] = ctx.channel.email_address or ctx.secrets.get("imap_username", "")
        mime["To"] = message.recipient
        mime["Subject"] = message.subject or ""
        message_id = make_msgid()
        mime["Message-ID"] = message_id
        if message.in_reply_to:
            mime["In-Reply-To"] = message.in_reply_to
            mime["References"] = message.in_reply_to
        mime.set_content(message.body)
        await anyio.to_thread.run_sync(self._send, ctx.secrets, mime)
        return message_id
