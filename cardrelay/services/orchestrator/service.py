"""Orchestrator control loop.

Decides when to purchase, drives the purchaser and redeemer through the
single automation session, persists email-extracted codes, schedules bounded
backoff retries, and emits one notification per terminal outcome. It holds no
durable state of its own: every decision re-reads the ledger.
"""

import asyncio
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable
from uuid import uuid4

from cardrelay.common.clock import Clock, as_utc
from cardrelay.common.config import CommonSettings
from cardrelay.common.logging import cycle_id_ctx, logger, mask_code, trigger_ctx
from cardrelay.common.metrics import (
    cycle_duration_seconds,
    pending_gift_cards,
    purchase_attempts_total,
    redemptions_total,
)
from cardrelay.common.state_machine import PurchaseStatus, RedemptionStatus
from cardrelay.common.tracing import tracer
from cardrelay.services.automation.base import AutomationResult, FailureKind, Purchaser, Redeemer
from cardrelay.services.automation.session import AutomationSessionPool
from cardrelay.services.email_watcher.service import EmailPollResult, EmailWatcher
from cardrelay.services.ledger.models import PurchaseAttempt
from cardrelay.services.ledger.service import LedgerError, LedgerService
from cardrelay.services.notification.service import Notification, NotificationService, NotificationType
from cardrelay.services.orchestrator.retry import RetryTracker
from cardrelay.services.orchestrator.scheduler import TaskScheduler

PURCHASE = "purchase"
REDEMPTION = "redemption"


def should_skip_purchase(latest: PurchaseAttempt | None, now: datetime, cooldown: timedelta) -> bool:
    """Skip only when the latest attempt completed within the cool-down window."""

    if latest is None or latest.status != PurchaseStatus.COMPLETED.value:
        return False
    return now - as_utc(latest.attempted_at) < cooldown


def _money(cents: int | None) -> str:
    return f"${(cents or 0) / 100:.2f}"


@dataclass
class RedemptionSummary:
    redeemed: int = 0
    failed: int = 0
    skipped: int = 0
    expired: int = 0
    halted: str | None = None
    retry_scheduled: bool = False


@dataclass
class EmailCycleSummary:
    poll: EmailPollResult = field(default_factory=EmailPollResult)
    new_codes: int = 0
    redemption: RedemptionSummary | None = None


class Orchestrator:
    """Owns the purchase → email → redemption workflow."""

    def __init__(
        self,
        *,
        ledger: LedgerService,
        watcher: EmailWatcher,
        pool: AutomationSessionPool,
        notifier: NotificationService,
        scheduler: TaskScheduler,
        settings: CommonSettings,
        clock: Clock,
        purchaser: Purchaser | None = None,
        redeemer: Redeemer | None = None,
        plugin_errors: dict[str, str] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        service_name: str = "orchestrator",
    ) -> None:
        self.ledger = ledger
        self.watcher = watcher
        self.pool = pool
        self.notifier = notifier
        self.scheduler = scheduler
        self.settings = settings
        self.clock = clock
        self.purchaser = purchaser
        self.redeemer = redeemer
        self.plugin_errors = plugin_errors or {}
        self._sleep = sleep
        self.service_name = service_name
        self.retries = RetryTracker(
            ledger,
            settings.max_retries,
            settings.retry_backoff_multiplier,
            settings.retry_base_delay_minutes,
            service_name=service_name,
        )

    # Plumbing

    @asynccontextmanager
    async def _cycle(self, name: str, trigger: str):
        cycle_token = cycle_id_ctx.set(f"{name}-{uuid4().hex[:12]}")
        trigger_token = trigger_ctx.set(trigger)
        started = time.perf_counter()
        try:
            with tracer.start_as_current_span(f"cycle.{name}") as span:
                span.set_attribute("cardrelay.trigger", trigger)
                logger.info("cycle_started cycle=%s trigger=%s", name, trigger)
                yield span
        finally:
            elapsed = time.perf_counter() - started
            cycle_duration_seconds.labels(service=self.service_name, cycle=name).observe(elapsed)
            logger.info("cycle_finished cycle=%s elapsed_seconds=%.3f", name, elapsed)
            cycle_id_ctx.reset(cycle_token)
            trigger_ctx.reset(trigger_token)

    async def _invoke(self, call: Callable[[], Awaitable[AutomationResult]]) -> AutomationResult:
        """Run one automation call; timeouts and exceptions become failure results."""

        timeout = self.settings.automation_timeout_seconds
        try:
            result = await asyncio.wait_for(call(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("automation_timeout timeout_seconds=%s", timeout)
            return AutomationResult.failure(f"automation timed out after {int(timeout)}s")
        except Exception as exc:
            logger.exception("automation_raised error=%s", exc)
            return AutomationResult.failure(f"{exc.__class__.__name__}: {exc}")
        if not isinstance(result, AutomationResult):
            return AutomationResult.failure(f"automation returned {type(result).__name__}, expected AutomationResult")
        return result

    async def notify(self, kind: NotificationType, title: str, message: str, **metadata) -> None:
        await self.notifier.send(Notification(kind, title, message, metadata))

    def _refresh_pending_gauge(self) -> None:
        pending_gift_cards.labels(service=self.service_name).set(len(self.ledger.get_pending_gift_card_codes()))

    async def _after_failure(
        self,
        operation: str,
        result: AutomationResult,
        rerun: Callable[[], Awaitable[object]],
    ) -> datetime | None:
        """Apply the failure taxonomy; returns when a retry will run, if any."""

        label = operation.capitalize()
        if result.failure_kind == FailureKind.CONFIGURATION:
            # Once per outage; a success clears the flag.
            flag = f"{operation}_config_error_notified"
            if self.ledger.get_system_state(flag) == "1":
                logger.info("config_error_repeat operation=%s", operation)
                return None
            self.ledger.set_system_state(flag, "1")
            await self.notify(
                NotificationType.ERROR,
                f"{label} not configured",
                result.error_message or "configuration error",
                operation=operation,
            )
            return None

        decision = self.retries.record_failure(operation, result.error_message)
        if decision.exhausted:
            await self.notify(
                NotificationType.ERROR if decision.identical_failures else NotificationType.WARNING,
                f"{label} failed after {decision.attempt} attempts",
                result.error_message or "unknown error",
                operation=operation,
                attempts=decision.attempt,
            )
            return None
        if result.failure_kind == FailureKind.CAPTCHA:
            await self.notify(
                NotificationType.WARNING,
                f"{label} blocked by verification",
                result.error_message or "manual verification required",
                operation=operation,
            )

        run_at = self.clock.now() + decision.delay
        self.scheduler.call_at(f"retry:{operation}", rerun, run_at, replace=True)
        return run_at

    def _record_success(self, operation: str) -> None:
        self.retries.record_success(operation)
        self.ledger.set_system_state(f"{operation}_config_error_notified", "0")

    # Purchase

    async def run_purchase_cycle(self, trigger: str = "scheduled") -> PurchaseAttempt | None:
        """Run one purchase decision and, unless skipped, one purchase attempt."""

        async with self._cycle(PURCHASE, trigger):
            async with self.pool.exclusive(PURCHASE):
                now = self.clock.now()
                latest = self.ledger.get_latest_purchase_attempt()
                attempt = self.ledger.create_purchase_attempt(
                    scheduled_at=now,
                    attempted_at=now,
                    trigger=trigger,
                    retry_count=self.retries.counter(PURCHASE),
                )
                if should_skip_purchase(latest, now, timedelta(days=self.settings.purchase_cooldown_days)):
                    logger.info("purchase_skipped last_completed_at=%s", as_utc(latest.attempted_at).isoformat())
                    purchase_attempts_total.labels(service=self.service_name, outcome="skipped").inc()
                    return self.ledger.skip_purchase_attempt(
                        attempt.id, f"completed purchase {latest.id} is within the cool-down window"
                    )

                self.ledger.start_purchase_attempt(attempt.id)
                if self.purchaser is None:
                    result = AutomationResult.configuration_error(
                        self.plugin_errors.get(PURCHASE, "purchaser not configured")
                    )
                else:
                    async with self.pool.open_session(PURCHASE) as session:
                        result = await self._invoke(lambda: self.purchaser.purchase(session))

            if result.success:
                return await self._purchase_succeeded(attempt, result)

            purchase_attempts_total.labels(service=self.service_name, outcome="failed").inc()
            logger.warning(
                "purchase_failed id=%s kind=%s error=%s",
                attempt.id,
                result.failure_kind.value if result.failure_kind else None,
                result.error_message,
            )
            next_retry_at = await self._after_failure(
                PURCHASE, result, lambda: self.run_purchase_cycle(trigger="retry")
            )
            return self.ledger.fail_purchase_attempt(
                attempt.id, result.error_message or "purchase failed", next_retry_at
            )

    async def _purchase_succeeded(self, attempt: PurchaseAttempt, result: AutomationResult) -> PurchaseAttempt | None:
        purchase_attempts_total.labels(service=self.service_name, outcome="completed").inc()
        try:
            completed = self.ledger.complete_purchase_attempt(attempt.id, result.external_id, result.amount_cents)
        except LedgerError as exc:
            # Never retried: a second attempt could buy twice.
            logger.error("purchase_not_recorded id=%s order_id=%s error=%s", attempt.id, result.external_id, exc)
            await self.notify(
                NotificationType.ERROR,
                "Purchase completed but not recorded",
                f"Order {result.external_id} succeeded but the ledger write failed; reconcile manually.",
                order_id=result.external_id,
            )
            return None
        self._record_success(PURCHASE)
        await self.notify(
            NotificationType.SUCCESS,
            "Gift card purchased",
            f"Order {result.external_id} placed for {_money(result.amount_cents)}.",
            order_id=result.external_id,
            amount=_money(result.amount_cents),
        )
        return completed

    # Email

    async def run_email_cycle(self, trigger: str = "scheduled") -> EmailCycleSummary:
        """Poll the mailbox, persist new codes, then redeem them if any arrived."""

        summary = EmailCycleSummary()
        async with self._cycle("email", trigger):
            async with self.pool.exclusive("email"):
                summary.poll = await self.watcher.check_for_new_emails()
                if summary.poll.error_message:
                    logger.warning("email_cycle_mailbox_error error=%s", summary.poll.error_message)
                    return summary
                new_value = 0
                for item in summary.poll.emails:
                    for extracted in item.codes:
                        card = self.ledger.create_gift_card_code(
                            code=extracted.code,
                            value_cents=extracted.value_cents,
                            extracted_at=self.clock.now(),
                            source_email_id=item.record.id,
                            purchase_id=item.record.related_purchase_id,
                        )
                        if card is not None:
                            summary.new_codes += 1
                            new_value += card.value_cents
                    self.ledger.mark_email_processed(item.record.id, self.clock.now())
            self._refresh_pending_gauge()

        if summary.new_codes:
            await self.notify(
                NotificationType.INFO,
                "Gift card received",
                f"{summary.new_codes} new gift card code(s) worth {_money(new_value)} queued for redemption.",
                codes=summary.new_codes,
                value=_money(new_value),
            )
            summary.redemption = await self.run_redemption_cycle(trigger)
        return summary

    # Redemption

    async def run_redemption_cycle(self, trigger: str = "scheduled", include_failed: bool = False) -> RedemptionSummary:
        """Redeem pending codes (plus failed ones on retry) one at a time."""

        summary = RedemptionSummary()
        async with self._cycle(REDEMPTION, trigger):
            include_failed = include_failed or trigger == "retry"
            redeemable = {RedemptionStatus.PENDING.value}
            if include_failed:
                redeemable.add(RedemptionStatus.FAILED.value)

            async with self.pool.exclusive(REDEMPTION):
                cards = (
                    self.ledger.get_retryable_gift_card_codes()
                    if include_failed
                    else self.ledger.get_pending_gift_card_codes()
                )
                if not cards:
                    logger.info("redemption_nothing_pending")
                    return summary
                if self.redeemer is None:
                    failure = AutomationResult.configuration_error(
                        self.plugin_errors.get(REDEMPTION, "redeemer not configured")
                    )
                else:
                    async with self.pool.open_session(REDEMPTION) as session:
                        failure = await self._redeem_cards(session, cards, redeemable, summary)

            if failure is not None and failure.failure_kind == FailureKind.CONFIGURATION:
                summary.halted = "configuration"
                await self._after_failure(REDEMPTION, failure, self._redemption_retry)
            elif failure is not None:
                summary.retry_scheduled = (
                    await self._after_failure(REDEMPTION, failure, self._redemption_retry) is not None
                )
            elif summary.redeemed:
                self._record_success(REDEMPTION)
            self._refresh_pending_gauge()
        return summary

    async def _redeem_cards(self, session, cards, redeemable: set[str], summary: RedemptionSummary):
        """Redeem sequentially; returns the failure that should drive the retry decision."""

        failure: AutomationResult | None = None
        attempted = False
        for card in cards:
            current = self.ledger.get_gift_card_code(card.id)
            if current is None or current.redemption_status not in redeemable:
                summary.skipped += 1
                continue
            if attempted:
                await self._sleep(
                    random.uniform(
                        self.settings.redemption_delay_min_seconds,
                        self.settings.redemption_delay_max_seconds,
                    )
                )
            attempted = True
            result = await self._invoke(lambda: self.redeemer.redeem(session, current.code))

            if result.success:
                await self._code_redeemed(current, result)
                summary.redeemed += 1
                continue
            if result.failure_kind == FailureKind.CONFIGURATION:
                # Not the code's fault; it stays redeemable.
                return result
            if result.failure_kind == FailureKind.EXPIRED:
                self.ledger.mark_code_expired(current.id, result.error_message or "code expired")
                redemptions_total.labels(service=self.service_name, outcome="expired").inc()
                summary.expired += 1
                await self.notify(
                    NotificationType.WARNING,
                    "Gift card rejected",
                    f"Code {mask_code(current.code)} was rejected: {result.error_message}",
                    code=mask_code(current.code),
                )
                continue

            self.ledger.mark_code_failed(current.id, result.error_message or "redemption failed")
            redemptions_total.labels(service=self.service_name, outcome="failed").inc()
            summary.failed += 1
            failure = result
            logger.warning("redemption_failed id=%s error=%s", current.id, result.error_message)
            if result.failure_kind == FailureKind.CAPTCHA:
                summary.halted = "captcha"
                break
        return failure

    def _redemption_retry(self):
        return self.run_redemption_cycle(trigger="retry", include_failed=True)

    async def _code_redeemed(self, card, result: AutomationResult) -> None:
        self.ledger.mark_code_redeemed(card.id, result.external_id, self.clock.now())
        redemptions_total.labels(service=self.service_name, outcome="redeemed").inc()
        await self.notify(
            NotificationType.SUCCESS,
            "Gift card redeemed",
            f"Code {mask_code(card.code)} worth {_money(card.value_cents)} was redeemed.",
            code=mask_code(card.code),
            value=_money(card.value_cents),
        )

    # Lifecycle and manual triggers

    async def recover(self) -> list[PurchaseAttempt]:
        """Fail attempts interrupted by a previous crash and ask for manual verification."""

        recovered = self.ledger.recover_interrupted_purchases()
        if recovered:
            await self.notify(
                NotificationType.WARNING,
                "Interrupted purchase recovered",
                f"{len(recovered)} purchase attempt(s) were interrupted; verify the retailer order history.",
                attempts=", ".join(a.id for a in recovered),
            )
        self._refresh_pending_gauge()
        return recovered

    def register_schedules(self) -> None:
        settings = self.settings
        self.scheduler.add_cron(
            "purchase", lambda: self.run_purchase_cycle("scheduled"), settings.purchase_cron, settings.timezone
        )
        self.scheduler.add_interval(
            "email", lambda: self.run_email_cycle("scheduled"), timedelta(minutes=settings.email_poll_interval_minutes)
        )
        self.scheduler.add_interval(
            "redemption",
            lambda: self.run_redemption_cycle("scheduled"),
            timedelta(minutes=settings.redemption_sweep_interval_minutes),
        )

    def trigger_purchase(self) -> bool:
        return self.scheduler.call_later(
            "manual:purchase", lambda: self.run_purchase_cycle("manual"), timedelta(0), unique=True
        )

    def trigger_email_check(self) -> bool:
        return self.scheduler.call_later(
            "manual:email", lambda: self.run_email_cycle("manual"), timedelta(0), unique=True
        )

    def trigger_redemption(self, include_failed: bool = False) -> bool:
        return self.scheduler.call_later(
            "manual:redemption",
            lambda: self.run_redemption_cycle("manual", include_failed=include_failed),
            timedelta(0),
            unique=True,
        )

    def status(self) -> dict:
        latest = self.ledger.get_latest_purchase_attempt()
        return {
            "running": self.scheduler.running,
            "automation_busy": self.pool.busy,
            "automation_holder": self.pool.holder,
            "tasks": self.scheduler.status(),
            "retry_counters": {op: self.retries.counter(op) for op in (PURCHASE, REDEMPTION)},
            "last_purchase": None
            if latest is None
            else {
                "id": latest.id,
                "status": latest.status,
                "attempted_at": as_utc(latest.attempted_at).isoformat(),
                "external_order_id": latest.external_order_id,
            },
            "scheduling": {
                "enabled": self.settings.scheduling_enabled,
                "purchase_cron": self.settings.purchase_cron,
                "timezone": self.settings.timezone,
                "max_retries": self.settings.max_retries,
                "retry_backoff_multiplier": self.settings.retry_backoff_multiplier,
                "email_poll_interval_minutes": self.settings.email_poll_interval_minutes,
                "redemption_sweep_interval_minutes": self.settings.redemption_sweep_interval_minutes,
            },
        }
