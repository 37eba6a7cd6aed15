"""Ledger persistence logic with idempotency and guarded state transitions.

Every write goes through a short-lived session. Conflicting writes are
serialized by the database itself: unique constraints reject duplicate
messages/codes, and status changes are guarded UPDATEs that only succeed when
the row is still in the status the caller read.
"""

from contextlib import contextmanager
from datetime import datetime
from hashlib import sha256

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from cardrelay.common.logging import logger, mask_code
from cardrelay.common.metrics import duplicate_codes_skipped_total, emails_ingested_total
from cardrelay.common.state_machine import (
    EMAIL_TRANSITIONS,
    PURCHASE_TRANSITIONS,
    REDEMPTION_TRANSITIONS,
    EmailStatus,
    PurchaseStatus,
    RedemptionStatus,
    validate_transition,
)
from cardrelay.services.ledger.models import (
    EmailRecord,
    GiftCardCode,
    NotificationLog,
    PurchaseAttempt,
    SystemState,
)

RAW_CONTENT_LIMIT = 10_000


class LedgerError(RuntimeError):
    """Persistence failure; the caller cannot trust its view of state."""


class LedgerService:
    """Owns every persisted entity of the purchase → email → redemption flow."""

    def __init__(self, session_factory, service_name: str = "ledger") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    @contextmanager
    def _session(self):
        try:
            with self.session_factory() as db:
                yield db
        except SQLAlchemyError as exc:
            logger.error("ledger_error error=%s", exc)
            raise LedgerError(str(exc)) from exc

    def _guarded_update(self, db, model, row_id: str, status_column, from_status: str, values: dict) -> None:
        """Apply one status change only if the row still has `from_status`."""

        result = db.execute(
            update(model)
            .where(model.id == row_id, status_column == from_status)
            .values(**values)
        )
        if result.rowcount != 1:
            raise LedgerError(
                f"concurrent update for {model.__tablename__} {row_id} (expected status {from_status})"
            )

    # Purchase attempts

    def create_purchase_attempt(
        self,
        *,
        scheduled_at: datetime,
        attempted_at: datetime,
        trigger: str = "scheduled",
        retry_count: int = 0,
    ) -> PurchaseAttempt:
        with self._session() as db:
            attempt = PurchaseAttempt(
                scheduled_at=scheduled_at,
                attempted_at=attempted_at,
                status=PurchaseStatus.PENDING.value,
                trigger=trigger,
                retry_count=retry_count,
            )
            db.add(attempt)
            db.commit()
            logger.info("purchase_attempt_created id=%s trigger=%s retry_count=%s", attempt.id, trigger, retry_count)
            return attempt

    def update_purchase_attempt(self, attempt_id: str, new_status: PurchaseStatus, **values) -> PurchaseAttempt:
        """Validated transition of one attempt; terminal rows are never rewritten."""

        with self._session() as db:
            attempt = db.get(PurchaseAttempt, attempt_id)
            if attempt is None:
                raise LedgerError(f"purchase attempt {attempt_id} not found")
            validate_transition(PURCHASE_TRANSITIONS, attempt.status, new_status.value)
            self._guarded_update(
                db,
                PurchaseAttempt,
                attempt_id,
                PurchaseAttempt.status,
                attempt.status,
                {"status": new_status.value, **values},
            )
            db.commit()
            db.refresh(attempt)
            logger.info("purchase_attempt_updated id=%s status=%s", attempt_id, new_status.value)
            return attempt

    def start_purchase_attempt(self, attempt_id: str) -> PurchaseAttempt:
        return self.update_purchase_attempt(attempt_id, PurchaseStatus.IN_PROGRESS)

    def complete_purchase_attempt(
        self, attempt_id: str, external_order_id: str | None, total_amount_cents: int | None
    ) -> PurchaseAttempt:
        return self.update_purchase_attempt(
            attempt_id,
            PurchaseStatus.COMPLETED,
            external_order_id=external_order_id,
            total_amount_cents=total_amount_cents,
            error_message=None,
        )

    def fail_purchase_attempt(
        self, attempt_id: str, error_message: str, next_retry_at: datetime | None = None
    ) -> PurchaseAttempt:
        return self.update_purchase_attempt(
            attempt_id,
            PurchaseStatus.FAILED,
            error_message=error_message,
            next_retry_at=next_retry_at,
        )

    def skip_purchase_attempt(self, attempt_id: str, reason: str) -> PurchaseAttempt:
        return self.update_purchase_attempt(attempt_id, PurchaseStatus.SKIPPED, error_message=reason)

    def get_purchase_attempt(self, attempt_id: str) -> PurchaseAttempt | None:
        with self._session() as db:
            return db.get(PurchaseAttempt, attempt_id)

    def get_latest_purchase_attempt(self, include_skipped: bool = False) -> PurchaseAttempt | None:
        """Most recent attempt; cool-down skips are audit rows and ignored by default."""

        stmt = select(PurchaseAttempt)
        if not include_skipped:
            stmt = stmt.where(PurchaseAttempt.status != PurchaseStatus.SKIPPED.value)
        with self._session() as db:
            return db.execute(
                stmt.order_by(PurchaseAttempt.attempted_at.desc(), PurchaseAttempt.created_at.desc()).limit(1)
            ).scalar_one_or_none()

    def get_pending_purchase_attempts(self) -> list[PurchaseAttempt]:
        with self._session() as db:
            return list(
                db.execute(
                    select(PurchaseAttempt)
                    .where(
                        PurchaseAttempt.status.in_(
                            [PurchaseStatus.PENDING.value, PurchaseStatus.IN_PROGRESS.value]
                        )
                    )
                    .order_by(PurchaseAttempt.scheduled_at)
                ).scalars()
            )

    def list_purchase_attempts(self, limit: int = 50) -> list[PurchaseAttempt]:
        with self._session() as db:
            return list(
                db.execute(
                    select(PurchaseAttempt)
                    .order_by(PurchaseAttempt.attempted_at.desc(), PurchaseAttempt.created_at.desc())
                    .limit(limit)
                ).scalars()
            )

    def recover_interrupted_purchases(self) -> list[PurchaseAttempt]:
        """Fail attempts a previous process left pending/in_progress."""

        recovered = []
        for attempt in self.get_pending_purchase_attempts():
            recovered.append(
                self.fail_purchase_attempt(
                    attempt.id,
                    f"interrupted while {attempt.status}; verify the retailer order manually",
                )
            )
        return recovered

    # Email records

    def _find_email(self, db, external_message_id: str) -> EmailRecord | None:
        return db.execute(
            select(EmailRecord).where(EmailRecord.external_message_id == external_message_id)
        ).scalar_one_or_none()

    def get_email_by_message_id(self, external_message_id: str) -> EmailRecord | None:
        with self._session() as db:
            return self._find_email(db, external_message_id)

    def create_email_record(
        self,
        *,
        external_message_id: str,
        received_at: datetime,
        email_type: str,
        subject: str = "",
        sender: str = "",
        raw_content: str = "",
        related_purchase_id: str | None = None,
    ) -> tuple[EmailRecord, bool]:
        """Insert one record per message id; returns `(record, created)`."""

        with self._session() as db:
            existing = self._find_email(db, external_message_id)
            if existing:
                return existing, False

            record = EmailRecord(
                external_message_id=external_message_id,
                received_at=received_at,
                email_type=email_type,
                status=EmailStatus.PENDING.value,
                subject=subject[:500],
                sender=sender[:500],
                raw_content=raw_content[:RAW_CONTENT_LIMIT],
                content_digest=sha256(raw_content.encode("utf-8")).hexdigest(),
                related_purchase_id=related_purchase_id,
            )
            db.add(record)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = self._find_email(db, external_message_id)
                if existing is None:
                    raise
                logger.info("duplicate email skipped message_id=%s", external_message_id)
                return existing, False
            emails_ingested_total.labels(service=self.service_name, email_type=email_type).inc()
            logger.info("email_record_created id=%s type=%s", record.id, email_type)
            return record, True

    def update_email_record(self, record_id: str, new_status: EmailStatus, **values) -> EmailRecord:
        with self._session() as db:
            record = db.get(EmailRecord, record_id)
            if record is None:
                raise LedgerError(f"email record {record_id} not found")
            validate_transition(EMAIL_TRANSITIONS, record.status, new_status.value)
            self._guarded_update(
                db, EmailRecord, record_id, EmailRecord.status, record.status, {"status": new_status.value, **values}
            )
            db.commit()
            db.refresh(record)
            return record

    def mark_email_processed(self, record_id: str, processed_at: datetime) -> EmailRecord:
        return self.update_email_record(record_id, EmailStatus.PROCESSED, processed_at=processed_at)

    def mark_email_failed(self, record_id: str, error_message: str, processed_at: datetime) -> EmailRecord:
        return self.update_email_record(
            record_id, EmailStatus.FAILED, error_message=error_message, processed_at=processed_at
        )

    def get_unprocessed_emails(self) -> list[EmailRecord]:
        with self._session() as db:
            return list(
                db.execute(
                    select(EmailRecord)
                    .where(EmailRecord.status == EmailStatus.PENDING.value)
                    .order_by(EmailRecord.received_at)
                ).scalars()
            )

    # Gift card codes

    def _code_exists(self, db, code: str) -> bool:
        return db.execute(select(GiftCardCode.id).where(GiftCardCode.code == code)).first() is not None

    def _record_duplicate(self, code: str) -> None:
        logger.warning("duplicate gift card code skipped code=%s", mask_code(code))
        duplicate_codes_skipped_total.labels(service=self.service_name).inc()

    def check_duplicate_code(self, code: str) -> bool:
        with self._session() as db:
            return self._code_exists(db, code.upper())

    def create_gift_card_code(
        self,
        *,
        code: str,
        value_cents: int,
        extracted_at: datetime,
        source_email_id: str,
        purchase_id: str | None = None,
    ) -> GiftCardCode | None:
        """Insert a new code, or return None when the code already exists.

        The unique constraint on `code` is the real guard; the pre-check only
        avoids a noisy constraint violation in the common case.
        """

        code = code.upper()
        with self._session() as db:
            if self._code_exists(db, code):
                self._record_duplicate(code)
                return None
            card = GiftCardCode(
                code=code,
                value_cents=value_cents,
                extracted_at=extracted_at,
                redemption_status=RedemptionStatus.PENDING.value,
                source_email_id=source_email_id,
                purchase_id=purchase_id,
            )
            db.add(card)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                if not self._code_exists(db, code):
                    raise
                self._record_duplicate(code)
                return None
            logger.info("gift_card_created id=%s value_cents=%s", card.id, value_cents)
            return card

    def update_gift_card_code(self, card_id: str, new_status: RedemptionStatus, **values) -> GiftCardCode:
        with self._session() as db:
            card = db.get(GiftCardCode, card_id)
            if card is None:
                raise LedgerError(f"gift card {card_id} not found")
            validate_transition(REDEMPTION_TRANSITIONS, card.redemption_status, new_status.value)
            self._guarded_update(
                db,
                GiftCardCode,
                card_id,
                GiftCardCode.redemption_status,
                card.redemption_status,
                {
                    "redemption_status": new_status.value,
                    "redemption_attempts": card.redemption_attempts + 1,
                    **values,
                },
            )
            db.commit()
            db.refresh(card)
            logger.info("gift_card_updated id=%s status=%s", card_id, new_status.value)
            return card

    def mark_code_redeemed(self, card_id: str, external_redemption_id: str | None, redeemed_at: datetime) -> GiftCardCode:
        return self.update_gift_card_code(
            card_id,
            RedemptionStatus.REDEEMED,
            external_redemption_id=external_redemption_id,
            redeemed_at=redeemed_at,
            error_message=None,
        )

    def mark_code_failed(self, card_id: str, error_message: str) -> GiftCardCode:
        return self.update_gift_card_code(card_id, RedemptionStatus.FAILED, error_message=error_message)

    def mark_code_expired(self, card_id: str, reason: str) -> GiftCardCode:
        return self.update_gift_card_code(card_id, RedemptionStatus.EXPIRED, error_message=reason)

    def get_gift_card_code(self, card_id: str) -> GiftCardCode | None:
        with self._session() as db:
            return db.get(GiftCardCode, card_id)

    def _codes_with_status(self, statuses: list[str]) -> list[GiftCardCode]:
        with self._session() as db:
            return list(
                db.execute(
                    select(GiftCardCode)
                    .where(GiftCardCode.redemption_status.in_(statuses))
                    .order_by(GiftCardCode.extracted_at)
                ).scalars()
            )

    def get_pending_gift_card_codes(self) -> list[GiftCardCode]:
        return self._codes_with_status([RedemptionStatus.PENDING.value])

    def get_retryable_gift_card_codes(self) -> list[GiftCardCode]:
        return self._codes_with_status([RedemptionStatus.PENDING.value, RedemptionStatus.FAILED.value])

    # System state

    def get_system_state(self, key: str) -> str | None:
        with self._session() as db:
            row = db.get(SystemState, key)
            return row.value if row else None

    def set_system_state(self, key: str, value: str) -> None:
        """Atomic upsert of one key."""

        with self._session() as db:
            dialect = db.get_bind().dialect.name
            if dialect == "postgresql":
                stmt = pg_insert(SystemState).values(key=key, value=value)
            elif dialect == "sqlite":
                stmt = sqlite_insert(SystemState).values(key=key, value=value)
            else:
                db.merge(SystemState(key=key, value=value))
                db.commit()
                return
            db.execute(
                stmt.on_conflict_do_update(
                    index_elements=[SystemState.key],
                    set_={"value": value, "updated_at": func.now()},
                )
            )
            db.commit()

    # Notifications

    def record_notification(
        self,
        *,
        notification_type: str,
        title: str,
        message: str,
        delivered_channels: list[str],
        failed_channels: list[str],
    ) -> None:
        with self._session() as db:
            db.add(
                NotificationLog(
                    notification_type=notification_type,
                    title=title,
                    message=message,
                    delivered_channels=delivered_channels,
                    failed_channels=failed_channels,
                )
            )
            db.commit()

    # Statistics

    def get_statistics(self) -> dict:
        """Aggregate purchase and gift card counts, sums, and rates."""

        with self._session() as db:
            purchases = db.execute(
                select(
                    func.count(PurchaseAttempt.id).label("total"),
                    func.sum(case((PurchaseAttempt.status == PurchaseStatus.COMPLETED.value, 1), else_=0)).label(
                        "successful"
                    ),
                    func.sum(case((PurchaseAttempt.status == PurchaseStatus.FAILED.value, 1), else_=0)).label(
                        "failed"
                    ),
                    func.sum(
                        case(
                            (
                                PurchaseAttempt.status == PurchaseStatus.COMPLETED.value,
                                PurchaseAttempt.total_amount_cents,
                            ),
                            else_=0,
                        )
                    ).label("spent_cents"),
                )
            ).one()
            cards = db.execute(
                select(
                    func.count(GiftCardCode.id).label("total"),
                    func.sum(
                        case((GiftCardCode.redemption_status == RedemptionStatus.REDEEMED.value, 1), else_=0)
                    ).label("redeemed"),
                    func.sum(
                        case((GiftCardCode.redemption_status == RedemptionStatus.PENDING.value, 1), else_=0)
                    ).label("pending"),
                    func.sum(
                        case((GiftCardCode.redemption_status == RedemptionStatus.FAILED.value, 1), else_=0)
                    ).label("failed"),
                    func.sum(GiftCardCode.value_cents).label("total_value_cents"),
                    func.sum(
                        case(
                            (
                                GiftCardCode.redemption_status == RedemptionStatus.REDEEMED.value,
                                GiftCardCode.value_cents,
                            ),
                            else_=0,
                        )
                    ).label("redeemed_value_cents"),
                )
            ).one()
            unprocessed_emails = db.execute(
                select(func.count(EmailRecord.id)).where(EmailRecord.status == EmailStatus.PENDING.value)
            ).scalar_one()

        total_purchases = int(purchases.total or 0)
        successful = int(purchases.successful or 0)
        total_cards = int(cards.total or 0)
        redeemed = int(cards.redeemed or 0)
        return {
            "purchases": {
                "total": total_purchases,
                "successful": successful,
                "failed": int(purchases.failed or 0),
                "success_rate": (successful / total_purchases * 100) if total_purchases else 0.0,
                "spent_cents": int(purchases.spent_cents or 0),
            },
            "gift_cards": {
                "total": total_cards,
                "redeemed": redeemed,
                "pending": int(cards.pending or 0),
                "failed": int(cards.failed or 0),
                "redemption_rate": (redeemed / total_cards * 100) if total_cards else 0.0,
                "total_value_cents": int(cards.total_value_cents or 0),
                "redeemed_value_cents": int(cards.redeemed_value_cents or 0),
            },
            "emails": {"unprocessed": int(unprocessed_emails or 0)},
        }
