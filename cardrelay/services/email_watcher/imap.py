"""IMAP mailbox adapter (stdlib imaplib/email, run in a worker thread)."""

import asyncio
import email
import imaplib
from datetime import datetime, timezone
from email.message import EmailMessage
from email.policy import default as default_policy
from email.utils import parsedate_to_datetime
from hashlib import sha256
from typing import Callable

from cardrelay.common.logging import logger
from cardrelay.services.email_watcher.service import InboundMessage, MailboxError
from cardrelay.services.secrets.store import ServiceLogin


def build_search_criteria(since: datetime, senders: list[str]) -> str:
    """IMAP SEARCH string: SINCE date, optionally OR-ed FROM senders."""

    criteria = [f'SINCE "{since.strftime("%d-%b-%Y")}"']
    if senders:
        # IMAP OR is binary and prefix: OR OR a b c
        criteria.append("OR " * (len(senders) - 1) + " ".join(f'FROM "{s}"' for s in senders))
    return "(" + " ".join(criteria) + ")"


def parse_message(raw: bytes) -> InboundMessage:
    msg: EmailMessage = email.message_from_bytes(raw, policy=default_policy)
    message_id = (msg.get("Message-ID") or "").strip()
    if not message_id:
        # Stable fallback so re-fetching the same message still dedupes.
        message_id = "sha256:" + sha256(raw).hexdigest()

    try:
        received_at = parsedate_to_datetime(msg["Date"]) if msg["Date"] else datetime.now(timezone.utc)
    except (TypeError, ValueError):
        received_at = datetime.now(timezone.utc)
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)

    return InboundMessage(
        message_id=message_id,
        subject=str(msg.get("Subject") or ""),
        sender=str(msg.get("From") or ""),
        received_at=received_at,
        text=_body_text(msg, "plain"),
        html=_body_text(msg, "html"),
    )


def _body_text(msg: EmailMessage, subtype: str) -> str:
    part = msg.get_body(preferencelist=(subtype,))
    if part is None:
        return ""
    try:
        return part.get_content()
    except (LookupError, UnicodeError):
        # Unknown or lying charset: keep the bytes readable rather than drop the message.
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


class ImapMailbox:
    """Read-only IMAP fetch over TLS; never changes flags on the server."""

    def __init__(
        self,
        host: str,
        port: int,
        folder: str,
        senders: list[str],
        credentials: Callable[[], ServiceLogin | None],
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.folder = folder
        self.senders = senders
        self.credentials = credentials
        self.timeout = timeout

    def _fetch_sync(self, since: datetime) -> list[InboundMessage]:
        login = self.credentials()
        if login is None:
            raise MailboxError("mailbox credentials not configured")

        messages = []
        try:
            conn = imaplib.IMAP4_SSL(self.host, self.port, timeout=self.timeout)
            try:
                conn.login(login.login, login.password.get_secret_value())
                status, _ = conn.select(self.folder, readonly=True)
                if status != "OK":
                    raise MailboxError(f"cannot select folder {self.folder}")
                status, data = conn.uid("search", None, build_search_criteria(since, self.senders))
                if status != "OK":
                    raise MailboxError("IMAP search failed")
                uids = data[0].split() if data and data[0] else []
                for uid in uids:
                    status, parts = conn.uid("fetch", uid, "(BODY.PEEK[])")
                    if status != "OK":
                        logger.warning("imap_fetch_failed uid=%s", uid.decode())
                        continue
                    for part in parts:
                        if not (isinstance(part, tuple) and len(part) == 2):
                            continue
                        try:
                            messages.append(parse_message(part[1]))
                        except (LookupError, UnicodeError, ValueError) as exc:
                            logger.warning("imap_parse_failed uid=%s error=%s", uid.decode(), exc)
            finally:
                try:
                    conn.logout()
                except (imaplib.IMAP4.error, OSError):
                    pass
        except imaplib.IMAP4.error as exc:
            raise MailboxError(f"IMAP error: {exc}") from exc
        return messages

    async def fetch_messages(self, since: datetime) -> list[InboundMessage]:
        messages = await asyncio.wait_for(asyncio.to_thread(self._fetch_sync, since), timeout=self.timeout * 2)
        logger.info("imap_fetch_complete folder=%s count=%s", self.folder, len(messages))
        return messages
