"""Inbox polling: classify new messages, extract codes, and dedupe via the ledger.

The watcher never persists codes itself. It creates one `EmailRecord` per
provider message id and hands back the extracted candidates; the orchestrator
stores them and marks each record processed.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

from cardrelay.common.clock import Clock, SystemClock, as_utc
from cardrelay.common.config import CommonSettings
from cardrelay.common.logging import logger
from cardrelay.common.state_machine import EmailStatus, EmailType, PurchaseStatus
from cardrelay.services.email_watcher.extraction import (
    ExtractedCode,
    classify_email,
    extract_amounts,
    extract_codes,
    html_to_text,
    pair_codes_with_amounts,
)
from cardrelay.services.ledger.models import EmailRecord
from cardrelay.services.ledger.service import LedgerService

CHECKPOINT_KEY = "email_last_polled_at"


class MailboxError(RuntimeError):
    """Mailbox could not be reached or read."""


@dataclass
class InboundMessage:
    message_id: str
    subject: str
    sender: str
    received_at: datetime
    text: str = ""
    html: str = ""

    def body_text(self) -> str:
        return self.text if self.text.strip() else html_to_text(self.html)


class Mailbox(Protocol):
    async def fetch_messages(self, since: datetime) -> list[InboundMessage]: ...


@dataclass
class IngestedEmail:
    record: EmailRecord
    codes: list[ExtractedCode] = field(default_factory=list)


@dataclass
class EmailPollResult:
    emails: list[IngestedEmail] = field(default_factory=list)
    error_message: str | None = None

    @property
    def code_count(self) -> int:
        return sum(len(item.codes) for item in self.emails)


class EmailWatcher:
    """Polls one mailbox and returns records that still need processing."""

    def __init__(
        self,
        ledger: LedgerService,
        mailbox: Mailbox,
        settings: CommonSettings,
        clock: Clock | None = None,
    ) -> None:
        self.ledger = ledger
        self.mailbox = mailbox
        self.settings = settings
        self.clock = clock or SystemClock()

    def _fetch_window_start(self, now: datetime) -> datetime:
        checkpoint = self.ledger.get_system_state(CHECKPOINT_KEY)
        if checkpoint:
            return as_utc(datetime.fromisoformat(checkpoint)) - timedelta(days=1)
        return now - timedelta(days=self.settings.email_lookback_days)

    def extract(self, email_type: str, body: str) -> list[ExtractedCode]:
        """Candidate codes for one message body; only deliveries carry codes."""

        if email_type != EmailType.GIFT_CARD_DELIVERY.value:
            return []
        codes = extract_codes(body, self.settings.code_min_length, self.settings.code_max_length)
        amounts = extract_amounts(body, self.settings.card_value_min_cents, self.settings.card_value_max_cents)
        return pair_codes_with_amounts(codes, amounts, self.settings.default_card_value_cents)

    def _related_purchase_id(self, latest, received_at: datetime) -> str | None:
        if latest is None or latest.status != PurchaseStatus.COMPLETED.value:
            return None
        if as_utc(latest.attempted_at) > received_at:
            return None
        return latest.id

    def _ingest(self, record: EmailRecord, body: str) -> IngestedEmail | None:
        try:
            codes = self.extract(record.email_type, body)
        except ValueError as exc:
            logger.warning("email_extraction_failed id=%s error=%s", record.id, exc)
            self.ledger.mark_email_failed(record.id, f"extraction failed: {exc}", self.clock.now())
            return None
        return IngestedEmail(record=record, codes=codes)

    async def check_for_new_emails(self) -> EmailPollResult:
        """Fetch, dedupe, classify and extract; mailbox errors become `error_message`."""

        now = self.clock.now()
        since = self._fetch_window_start(now)
        try:
            messages = await self.mailbox.fetch_messages(since)
        except (MailboxError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("mailbox_fetch_failed error=%s", exc)
            return EmailPollResult(error_message=str(exc) or exc.__class__.__name__)

        latest = self.ledger.get_latest_purchase_attempt()
        result = EmailPollResult()
        seen_ids: set[str] = set()
        for message in sorted(messages, key=lambda m: as_utc(m.received_at)):
            body = message.body_text()
            email_type = classify_email(message.subject, body, self.settings.gift_card_keywords)
            received_at = as_utc(message.received_at)
            record, created = self.ledger.create_email_record(
                external_message_id=message.message_id,
                received_at=received_at,
                email_type=email_type.value,
                subject=message.subject,
                sender=message.sender,
                raw_content=body,
                related_purchase_id=self._related_purchase_id(latest, received_at)
                if email_type != EmailType.OTHER
                else None,
            )
            if record.id in seen_ids:
                continue
            seen_ids.add(record.id)
            if not created and record.status != EmailStatus.PENDING.value:
                continue
            ingested = self._ingest(record, body)
            if ingested:
                result.emails.append(ingested)

        # Records left pending by an interrupted cycle, outside this fetch window.
        for record in self.ledger.get_unprocessed_emails():
            if record.id in seen_ids:
                continue
            ingested = self._ingest(record, record.raw_content)
            if ingested:
                result.emails.append(ingested)

        self.ledger.set_system_state(CHECKPOINT_KEY, now.isoformat())
        logger.info(
            "email_poll_complete fetched=%s to_process=%s codes=%s",
            len(messages),
            len(result.emails),
            result.code_count,
        )
        return result
