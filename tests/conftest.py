"""Shared fixtures: in-memory ledger, virtual clock, and fake automation collaborators."""

from datetime import timedelta

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool

from cardrelay.common.clock import VirtualClock
from cardrelay.common.config import CommonSettings
from cardrelay.common.db import Base, make_session_factory
from cardrelay.services.automation.base import AutomationResult
from cardrelay.services.automation.session import AutomationSessionPool, DetachedSessionFactory
from cardrelay.services.email_watcher.service import EmailWatcher, InboundMessage
from cardrelay.services.ledger.service import LedgerService
from cardrelay.services.notification.service import NotificationService
from cardrelay.services.orchestrator.scheduler import TaskScheduler
from cardrelay.services.orchestrator.service import Orchestrator

GIFT_CARD_BODY = (
    "Thank you for your order!\n"
    "Your digital gift card is ready.\n"
    "Gift Card Code: ABCD1234EFGH5678\n"
    "Amount: $100.00\n"
    "Redeem it in the app."
)


class FakePurchaser:
    """Returns queued outcomes in order; exceptions in the queue are raised."""

    def __init__(self) -> None:
        self.outcomes: list = []
        self.sessions: list = []

    @property
    def calls(self) -> int:
        return len(self.sessions)

    async def purchase(self, session):
        self.sessions.append(session)
        if not self.outcomes:
            return AutomationResult.ok("ORD-1", 10_000)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome()
        return outcome


class FakeRedeemer:
    def __init__(self) -> None:
        self.outcomes: list = []
        self.codes: list[str] = []

    async def redeem(self, session, code: str):
        self.codes.append(code)
        if not self.outcomes:
            return AutomationResult.ok(f"RED-{len(self.codes)}")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome()
        return outcome


class FakeMailbox:
    def __init__(self) -> None:
        self.messages: list[InboundMessage] = []
        self.error: Exception | None = None
        self.since_calls: list = []

    async def fetch_messages(self, since):
        self.since_calls.append(since)
        if self.error is not None:
            raise self.error
        return list(self.messages)


class RecordingChannel:
    name = "recorder"

    def __init__(self) -> None:
        self.sent = []

    async def send(self, notification) -> None:
        self.sent.append(notification)


@pytest.fixture()
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)

    @event.listens_for(eng, "connect")
    def _enable_fk(dbapi_conn, _):
        dbapi_conn.execute("PRAGMA foreign_keys=ON")

    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def ledger(engine):
    return LedgerService(make_session_factory(engine))


@pytest.fixture()
def clock():
    return VirtualClock()


@pytest.fixture()
def settings(tmp_path):
    return CommonSettings(
        _env_file=None,
        database_dsn="sqlite://",
        master_key=None,
        credentials_path=str(tmp_path / "creds.enc"),
        max_retries=3,
        retry_backoff_multiplier=2.0,
        retry_base_delay_minutes=15,
        purchase_cooldown_days=6,
        redemption_delay_min_seconds=2,
        redemption_delay_max_seconds=5,
        automation_timeout_seconds=5,
        slack_webhook_url=None,
        discord_webhook_url=None,
        api_key=None,
        otel_exporter_otlp_endpoint=None,
    )


@pytest.fixture()
def purchaser():
    return FakePurchaser()


@pytest.fixture()
def redeemer():
    return FakeRedeemer()


@pytest.fixture()
def mailbox():
    return FakeMailbox()


@pytest.fixture()
def recorder():
    return RecordingChannel()


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def watcher(ledger, mailbox, settings, clock):
    return EmailWatcher(ledger, mailbox, settings, clock)


@pytest.fixture()
def scheduler(clock):
    return TaskScheduler(clock, grace_seconds=1)


@pytest.fixture()
def make_orchestrator(ledger, watcher, settings, clock, recorder, scheduler, sleeps):
    """Build an orchestrator; pass `purchaser=None` / `redeemer=None` for missing plug-ins."""

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    def build(purchaser=None, redeemer=None, **overrides):
        return Orchestrator(
            ledger=ledger,
            watcher=watcher,
            pool=AutomationSessionPool(DetachedSessionFactory()),
            notifier=NotificationService([recorder], ledger),
            scheduler=scheduler,
            settings=settings.model_copy(update=overrides) if overrides else settings,
            clock=clock,
            purchaser=purchaser,
            redeemer=redeemer,
            sleep=fake_sleep,
        )

    return build


@pytest.fixture()
def orchestrator(make_orchestrator, purchaser, redeemer):
    return make_orchestrator(purchaser=purchaser, redeemer=redeemer)


@pytest.fixture()
def gift_card_message(clock):
    def build(message_id: str = "m1", body: str = GIFT_CARD_BODY, offset: timedelta = timedelta(hours=1)):
        return InboundMessage(
            message_id=message_id,
            subject="Your Costco Digital Gift Card",
            sender="noreply@costco.com",
            received_at=clock.now() + offset,
            text=body,
        )

    return build


@pytest.fixture()
def seed_code(ledger, clock):
    """Insert an email record plus one pending code; returns the code row."""

    def build(code: str = "ABCD1234EFGH5678", value_cents: int = 10_000, message_id: str | None = None):
        record, _ = ledger.create_email_record(
            external_message_id=message_id or f"seed-{code}",
            received_at=clock.now(),
            email_type="gift_card_delivery",
            subject="seed",
            raw_content="seed",
        )
        return ledger.create_gift_card_code(
            code=code, value_cents=value_cents, extracted_at=clock.now(), source_email_id=record.id
        )

    return build
