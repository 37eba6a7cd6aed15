"""End-to-end workflow scenarios on a virtual clock with fake automation."""

import asyncio
from datetime import timedelta

import pytest

from cardrelay.common.clock import as_utc
from cardrelay.services.automation.base import AutomationResult
from cardrelay.services.ledger.models import GiftCardCode
from cardrelay.services.notification.service import NotificationType
from cardrelay.services.orchestrator.service import should_skip_purchase


def _titles(recorder, kind=None):
    return [n.title for n in recorder.sent if kind is None or n.type == kind]


def _all_codes(ledger):
    with ledger.session_factory() as db:
        return db.query(GiftCardCode).all()


@pytest.mark.asyncio
async def test_purchase_email_redemption_happy_path(orchestrator, ledger, mailbox, redeemer, recorder, clock, gift_card_message):
    attempt = await orchestrator.run_purchase_cycle()

    assert attempt.status == "completed"
    assert attempt.external_order_id == "ORD-1"
    assert attempt.total_amount_cents == 10_000

    mailbox.messages = [gift_card_message("m1")]
    clock.advance(timedelta(hours=2))
    summary = await orchestrator.run_email_cycle()

    assert summary.new_codes == 1
    assert summary.redemption.redeemed == 1
    assert redeemer.codes == ["ABCD1234EFGH5678"]
    record = ledger.get_email_by_message_id("m1")
    assert record.status == "processed"
    assert record.email_type == "gift_card_delivery"
    [card] = _all_codes(ledger)
    assert card.redemption_status == "redeemed"
    assert card.value_cents == 10_000
    assert card.purchase_id == attempt.id
    assert card.external_redemption_id == "RED-1"
    assert _titles(recorder) == ["Gift card purchased", "Gift card received", "Gift card redeemed"]


@pytest.mark.asyncio
async def test_purchase_retries_then_gives_up(orchestrator, purchaser, ledger, scheduler, recorder, clock):
    purchaser.outcomes = [AutomationResult.failure("site unavailable")] * 3

    first = await orchestrator.run_purchase_cycle()
    assert as_utc(first.next_retry_at) == clock.now() + timedelta(minutes=15)
    assert scheduler.is_queued("retry:purchase")

    clock.advance(timedelta(minutes=15))
    assert await scheduler.run_due() == 1
    clock.advance(timedelta(minutes=30))
    assert await scheduler.run_due() == 1

    attempts = ledger.list_purchase_attempts()
    assert [a.status for a in attempts] == ["failed"] * 3
    assert purchaser.calls == 3
    assert orchestrator.retries.counter("purchase") == 0
    assert not scheduler.is_queued("retry:purchase")
    assert _titles(recorder, NotificationType.ERROR) == ["Purchase failed after 3 attempts"]


@pytest.mark.asyncio
async def test_mixed_failures_end_with_warning(orchestrator, purchaser, scheduler, recorder, clock):
    purchaser.outcomes = [
        AutomationResult.failure("selector missing"),
        AutomationResult.failure("timeout"),
        AutomationResult.failure("timeout"),
    ]

    await orchestrator.run_purchase_cycle()
    clock.advance(timedelta(minutes=15))
    await scheduler.run_due()
    clock.advance(timedelta(minutes=30))
    await scheduler.run_due()

    assert _titles(recorder, NotificationType.ERROR) == []
    assert _titles(recorder, NotificationType.WARNING) == ["Purchase failed after 3 attempts"]


@pytest.mark.asyncio
async def test_success_after_failure_resets_retry_counter(orchestrator, purchaser, scheduler, recorder, clock):
    purchaser.outcomes = [AutomationResult.failure("site unavailable")]

    await orchestrator.run_purchase_cycle()
    assert orchestrator.retries.counter("purchase") == 1
    clock.advance(timedelta(minutes=15))
    await scheduler.run_due()

    assert orchestrator.retries.counter("purchase") == 0
    assert _titles(recorder, NotificationType.SUCCESS) == ["Gift card purchased"]


@pytest.mark.asyncio
async def test_replayed_email_is_ingested_once(orchestrator, ledger, mailbox, redeemer, gift_card_message):
    mailbox.messages = [gift_card_message("m1")]

    await orchestrator.run_email_cycle()
    second = await orchestrator.run_email_cycle()

    assert second.new_codes == 0
    assert len(_all_codes(ledger)) == 1
    assert redeemer.codes == ["ABCD1234EFGH5678"]


@pytest.mark.asyncio
async def test_same_code_in_two_emails_is_stored_once(orchestrator, ledger, mailbox, gift_card_message):
    mailbox.messages = [gift_card_message("m1"), gift_card_message("m2", offset=timedelta(hours=2))]

    summary = await orchestrator.run_email_cycle()

    assert summary.new_codes == 1
    assert len(_all_codes(ledger)) == 1
    assert ledger.get_email_by_message_id("m2").status == "processed"


@pytest.mark.asyncio
async def test_cooldown_skips_recent_purchase(orchestrator, purchaser, ledger, clock):
    await orchestrator.run_purchase_cycle()

    clock.advance(timedelta(days=3))
    skipped = await orchestrator.run_purchase_cycle()
    assert skipped.status == "skipped"
    assert purchaser.calls == 1

    clock.advance(timedelta(days=4))
    again = await orchestrator.run_purchase_cycle()
    assert again.status == "completed"
    assert purchaser.calls == 2
    assert ledger.get_latest_purchase_attempt().id == again.id


def test_should_skip_only_recent_completed(ledger, clock):
    cooldown = timedelta(days=6)
    assert should_skip_purchase(None, clock.now(), cooldown) is False

    attempt = ledger.create_purchase_attempt(scheduled_at=clock.now(), attempted_at=clock.now())
    ledger.start_purchase_attempt(attempt.id)
    failed = ledger.fail_purchase_attempt(attempt.id, "boom")
    assert should_skip_purchase(failed, clock.now() + timedelta(hours=1), cooldown) is False

    attempt = ledger.create_purchase_attempt(scheduled_at=clock.now(), attempted_at=clock.now())
    ledger.start_purchase_attempt(attempt.id)
    done = ledger.complete_purchase_attempt(attempt.id, "ORD-9", 5000)
    assert should_skip_purchase(done, clock.now() + timedelta(days=5), cooldown) is True
    assert should_skip_purchase(done, clock.now() + timedelta(days=6), cooldown) is False


@pytest.mark.asyncio
async def test_missing_purchaser_is_not_retried(make_orchestrator, redeemer, scheduler, recorder):
    orchestrator = make_orchestrator(purchaser=None, redeemer=redeemer)

    attempt = await orchestrator.run_purchase_cycle()

    assert attempt.status == "failed"
    assert attempt.next_retry_at is None
    assert orchestrator.retries.counter("purchase") == 0
    assert not scheduler.is_queued("retry:purchase")
    assert _titles(recorder, NotificationType.ERROR) == ["Purchase not configured"]


@pytest.mark.asyncio
async def test_purchaser_exception_becomes_retryable_failure(orchestrator, purchaser, scheduler):
    purchaser.outcomes = [RuntimeError("browser crashed")]

    attempt = await orchestrator.run_purchase_cycle()

    assert attempt.status == "failed"
    assert attempt.error_message == "RuntimeError: browser crashed"
    assert scheduler.is_queued("retry:purchase")


@pytest.mark.asyncio
async def test_purchaser_timeout_is_a_failure(make_orchestrator, purchaser, redeemer, scheduler):
    orchestrator = make_orchestrator(purchaser=purchaser, redeemer=redeemer, automation_timeout_seconds=0.05)

    async def hang():
        await asyncio.sleep(5)
        return AutomationResult.ok("ORD-late")

    purchaser.outcomes = [hang]
    attempt = await orchestrator.run_purchase_cycle()

    assert attempt.status == "failed"
    assert "timed out" in attempt.error_message
    assert scheduler.is_queued("retry:purchase")


@pytest.mark.asyncio
async def test_captcha_warns_and_schedules_retry(orchestrator, purchaser, scheduler, recorder):
    purchaser.outcomes = [AutomationResult.captcha("captcha shown")]

    await orchestrator.run_purchase_cycle()

    assert _titles(recorder, NotificationType.WARNING) == ["Purchase blocked by verification"]
    assert scheduler.is_queued("retry:purchase")


@pytest.mark.asyncio
async def test_captcha_on_last_attempt_sends_one_notification(orchestrator, purchaser, scheduler, recorder, clock):
    purchaser.outcomes = [
        AutomationResult.failure("site unavailable"),
        AutomationResult.failure("site unavailable"),
        AutomationResult.captcha("captcha shown"),
    ]

    await orchestrator.run_purchase_cycle()
    clock.advance(timedelta(minutes=15))
    await scheduler.run_due()
    clock.advance(timedelta(minutes=30))
    await scheduler.run_due()

    assert purchaser.calls == 3
    assert _titles(recorder, NotificationType.WARNING) == ["Purchase failed after 3 attempts"]
    assert not scheduler.is_queued("retry:purchase")


@pytest.mark.asyncio
async def test_redeemed_code_is_never_redeemed_again(orchestrator, ledger, redeemer, seed_code, clock):
    card = seed_code()
    ledger.mark_code_redeemed(card.id, "RED-0", clock.now())

    summary = await orchestrator.run_redemption_cycle(include_failed=True)

    assert summary.redeemed == 0
    assert redeemer.codes == []


@pytest.mark.asyncio
async def test_failed_redemption_is_retried(orchestrator, ledger, redeemer, scheduler, seed_code, clock):
    card = seed_code()
    redeemer.outcomes = [AutomationResult.failure("page error")]

    summary = await orchestrator.run_redemption_cycle()
    assert summary.failed == 1
    assert summary.retry_scheduled is True
    assert ledger.get_gift_card_code(card.id).redemption_status == "failed"

    # A plain sweep leaves failed codes to the retry.
    assert (await orchestrator.run_redemption_cycle()).redeemed == 0

    clock.advance(timedelta(minutes=15))
    await scheduler.run_due()

    current = ledger.get_gift_card_code(card.id)
    assert current.redemption_status == "redeemed"
    assert current.redemption_attempts == 2
    assert redeemer.codes == ["ABCD1234EFGH5678", "ABCD1234EFGH5678"]


@pytest.mark.asyncio
async def test_rejected_code_is_expired_without_retry(orchestrator, ledger, redeemer, scheduler, recorder, seed_code):
    card = seed_code()
    redeemer.outcomes = [AutomationResult.expired("already used")]

    summary = await orchestrator.run_redemption_cycle()

    assert summary.expired == 1
    assert ledger.get_gift_card_code(card.id).redemption_status == "expired"
    assert not scheduler.is_queued("retry:redemption")
    assert _titles(recorder, NotificationType.WARNING) == ["Gift card rejected"]


@pytest.mark.asyncio
async def test_redeemer_configuration_error_leaves_code_pending(orchestrator, ledger, redeemer, recorder, seed_code):
    card = seed_code()
    redeemer.outcomes = [AutomationResult.configuration_error("platform credentials not configured")]

    summary = await orchestrator.run_redemption_cycle()

    assert summary.halted == "configuration"
    assert ledger.get_gift_card_code(card.id).redemption_status == "pending"
    assert _titles(recorder, NotificationType.ERROR) == ["Redemption not configured"]


@pytest.mark.asyncio
async def test_missing_redeemer_leaves_code_pending(make_orchestrator, purchaser, ledger, seed_code):
    orchestrator = make_orchestrator(purchaser=purchaser, redeemer=None)
    card = seed_code()

    summary = await orchestrator.run_redemption_cycle()

    assert summary.halted == "configuration"
    assert ledger.get_gift_card_code(card.id).redemption_status == "pending"


@pytest.mark.asyncio
async def test_configuration_error_is_notified_once_until_success(make_orchestrator, purchaser, redeemer, recorder, seed_code):
    orchestrator = make_orchestrator(purchaser=purchaser, redeemer=None)
    seed_code("ABCD1234EFGH5678")

    await orchestrator.run_redemption_cycle()
    await orchestrator.run_redemption_cycle()
    assert _titles(recorder, NotificationType.ERROR) == ["Redemption not configured"]

    orchestrator.redeemer = redeemer
    assert (await orchestrator.run_redemption_cycle()).redeemed == 1

    orchestrator.redeemer = None
    seed_code("WXYZ9876ABCD5432")
    await orchestrator.run_redemption_cycle()
    assert _titles(recorder, NotificationType.ERROR) == ["Redemption not configured"] * 2


@pytest.mark.asyncio
async def test_redemptions_are_spaced_out(orchestrator, redeemer, seed_code, sleeps):
    seed_code("ABCD1234EFGH5678")
    seed_code("WXYZ9876ABCD5432")

    summary = await orchestrator.run_redemption_cycle()

    assert summary.redeemed == 2
    assert len(sleeps) == 1
    assert 2 <= sleeps[0] <= 5


@pytest.mark.asyncio
async def test_captcha_halts_the_sweep(orchestrator, ledger, redeemer, seed_code):
    cards = [seed_code("ABCD1234EFGH5678"), seed_code("WXYZ9876ABCD5432")]
    redeemer.outcomes = [AutomationResult.captcha()]

    summary = await orchestrator.run_redemption_cycle()

    assert summary.halted == "captcha"
    assert len(redeemer.codes) == 1
    statuses = sorted(ledger.get_gift_card_code(card.id).redemption_status for card in cards)
    assert statuses == ["failed", "pending"]


@pytest.mark.asyncio
async def test_recover_fails_interrupted_attempts(orchestrator, ledger, recorder, clock):
    attempt = ledger.create_purchase_attempt(scheduled_at=clock.now(), attempted_at=clock.now())
    ledger.start_purchase_attempt(attempt.id)

    recovered = await orchestrator.recover()

    assert [a.id for a in recovered] == [attempt.id]
    assert ledger.get_purchase_attempt(attempt.id).status == "failed"
    assert _titles(recorder, NotificationType.WARNING) == ["Interrupted purchase recovered"]


@pytest.mark.asyncio
async def test_manual_trigger_is_deduplicated(orchestrator, purchaser, scheduler):
    assert orchestrator.trigger_purchase() is True
    assert orchestrator.trigger_purchase() is False

    await scheduler.run_due()

    assert purchaser.calls == 1
    assert orchestrator.trigger_purchase() is True


def test_registered_schedules_show_in_status(orchestrator):
    orchestrator.register_schedules()

    status = orchestrator.status()

    assert {task["name"] for task in status["tasks"]} == {"purchase", "email", "redemption"}
    assert status["retry_counters"] == {"purchase": 0, "redemption": 0}
    assert status["automation_busy"] is False
    assert status["last_purchase"] is None


@pytest.mark.asyncio
async def test_automation_cycles_never_overlap(orchestrator, purchaser, redeemer, mailbox, seed_code, monkeypatch):
    active: list[str] = []
    peak: list[int] = []

    def hold(name, result):
        async def run():
            active.append(name)
            peak.append(len(active))
            await asyncio.sleep(0.01)
            active.remove(name)
            return result

        return run

    async def slow_fetch(since):
        return await hold("email", [])()

    seed_code()
    purchaser.outcomes = [hold("purchase", AutomationResult.ok("ORD-1", 10_000))]
    redeemer.outcomes = [hold("redemption", AutomationResult.ok("RED-1"))]
    monkeypatch.setattr(mailbox, "fetch_messages", slow_fetch)

    attempt, summary, email = await asyncio.gather(
        orchestrator.run_purchase_cycle(),
        orchestrator.run_redemption_cycle(),
        orchestrator.run_email_cycle(),
    )

    assert attempt.status == "completed"
    assert summary.redeemed == 1
    assert email.poll.error_message is None
    assert peak == [1, 1, 1]
    assert orchestrator.pool.holder is None
