"""Ledger database models.

This DB is the single source of truth for purchase attempts, inbound email
records, gift card codes, cross-cycle system state, and notification logs.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from cardrelay.common.db import Base


class PurchaseAttempt(Base):
    """One scheduled/attempted purchase. Retries append new rows."""

    __tablename__ = "purchase_attempts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    status: Mapped[str] = mapped_column(String, index=True, default="pending")
    trigger: Mapped[str] = mapped_column(String, default="scheduled")
    external_order_id: Mapped[str | None] = mapped_column(String, nullable=True)
    total_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class EmailRecord(Base):
    """One inbound message relevant to the workflow, keyed by provider message id."""

    __tablename__ = "email_records"
    __table_args__ = (Index("ix_email_records_status_received_at", "status", "received_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    external_message_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    email_type: Mapped[str] = mapped_column(String, default="other")
    status: Mapped[str] = mapped_column(String, index=True, default="pending")
    subject: Mapped[str] = mapped_column(String, default="")
    sender: Mapped[str] = mapped_column(String, default="")
    raw_content: Mapped[str] = mapped_column(Text, default="")
    content_digest: Mapped[str] = mapped_column(String(64))
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    related_purchase_id: Mapped[str | None] = mapped_column(
        ForeignKey("purchase_attempts.id"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class GiftCardCode(Base):
    """One redeemable code extracted from an email."""

    __tablename__ = "gift_card_codes"
    __table_args__ = (Index("ix_gift_card_codes_status_extracted_at", "redemption_status", "extracted_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    code: Mapped[str] = mapped_column(String, unique=True, index=True)
    value_cents: Mapped[int] = mapped_column(Integer)
    extracted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    redeemed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    redemption_status: Mapped[str] = mapped_column(String, index=True, default="pending")
    redemption_attempts: Mapped[int] = mapped_column(Integer, default=0)
    external_redemption_id: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_email_id: Mapped[str] = mapped_column(ForeignKey("email_records.id"), index=True)
    purchase_id: Mapped[str | None] = mapped_column(ForeignKey("purchase_attempts.id"), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SystemState(Base):
    """Durable key/value pairs for cross-cycle counters and checkpoints."""

    __tablename__ = "system_state"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(String)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class NotificationLog(Base):
    """Stored record of each notification and its per-channel delivery."""

    __tablename__ = "notification_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    notification_type: Mapped[str] = mapped_column(String, index=True)
    title: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text)
    delivered_channels: Mapped[list] = mapped_column(JSON, default=list)
    failed_channels: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
