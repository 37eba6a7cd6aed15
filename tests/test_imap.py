"""IMAP search criteria and RFC 5322 message parsing."""

from datetime import datetime, timezone
from email.message import EmailMessage

from cardrelay.services.email_watcher import imap
from cardrelay.services.email_watcher.imap import ImapMailbox, build_search_criteria, parse_message
from cardrelay.services.secrets.store import ServiceLogin


def test_search_criteria_with_senders():
    since = datetime(2026, 1, 4, 9, 0, tzinfo=timezone.utc)

    assert build_search_criteria(since, []) == '(SINCE "04-Jan-2026")'
    assert build_search_criteria(since, ["a@x.com"]) == '(SINCE "04-Jan-2026" FROM "a@x.com")'
    assert build_search_criteria(since, ["a", "b", "c"]) == '(SINCE "04-Jan-2026" OR OR FROM "a" FROM "b" FROM "c")'


def _raw(message_id: str | None = "<abc@costco.test>") -> bytes:
    msg = EmailMessage()
    if message_id:
        msg["Message-ID"] = message_id
    msg["Subject"] = "Your Costco Digital Gift Card"
    msg["From"] = "Costco <noreply@costco.test>"
    msg["Date"] = "Sun, 04 Jan 2026 10:00:00 +0000"
    msg.set_content("Gift Card Code: ABCD1234EFGH5678\n")
    msg.add_alternative("<p>Gift Card Code: <b>ABCD1234EFGH5678</b></p>", subtype="html")
    return msg.as_bytes()


def test_parse_multipart_message():
    message = parse_message(_raw())

    assert message.message_id == "<abc@costco.test>"
    assert message.subject == "Your Costco Digital Gift Card"
    assert "noreply@costco.test" in message.sender
    assert message.received_at == datetime(2026, 1, 4, 10, 0, tzinfo=timezone.utc)
    assert "ABCD1234EFGH5678" in message.text
    assert "<b>ABCD1234EFGH5678</b>" in message.html


def test_missing_message_id_gets_stable_digest():
    raw = _raw(message_id=None)

    first = parse_message(raw)

    assert first.message_id.startswith("sha256:")
    assert parse_message(raw).message_id == first.message_id


BOGUS_CHARSET = (
    b"Message-ID: <bogus@costco.test>\r\n"
    b"Subject: Your Costco Digital Gift Card\r\n"
    b"From: noreply@costco.test\r\n"
    b"Date: Sun, 04 Jan 2026 10:00:00 +0000\r\n"
    b"MIME-Version: 1.0\r\n"
    b'Content-Type: text/plain; charset="x-bogus-charset"\r\n'
    b"Content-Transfer-Encoding: 7bit\r\n"
    b"\r\n"
    b"Gift Card Code: ABCD1234EFGH5678\r\n"
)


def test_unknown_charset_falls_back_to_utf8():
    message = parse_message(BOGUS_CHARSET)

    assert message.message_id == "<bogus@costco.test>"
    assert "Gift Card Code: ABCD1234EFGH5678" in message.text
    assert message.html == ""


class FakeImap:
    def __init__(self, *args, **kwargs):
        self.logged_out = False

    def login(self, user, password):
        return "OK", [b""]

    def select(self, folder, readonly=False):
        return "OK", [b"2"]

    def uid(self, command, *args):
        if command == "search":
            return "OK", [b"1 2"]
        uid = args[0]
        return "OK", [(b"%s (BODY[] {0}" % uid, b"raw-" + uid), b")"]

    def logout(self):
        self.logged_out = True


def test_unparseable_message_is_skipped(monkeypatch):
    def fake_parse(raw):
        if raw == b"raw-1":
            raise ValueError("mangled headers")
        return parse_message(_raw())

    monkeypatch.setattr(imap.imaplib, "IMAP4_SSL", FakeImap)
    monkeypatch.setattr(imap, "parse_message", fake_parse)
    mailbox = ImapMailbox(
        "imap.test", 993, "INBOX", [], lambda: ServiceLogin(login="me", password="pw")
    )

    messages = mailbox._fetch_sync(datetime(2026, 1, 4, tzinfo=timezone.utc))

    assert [m.message_id for m in messages] == ["<abc@costco.test>"]
