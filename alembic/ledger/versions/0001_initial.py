"""initial cardrelay ledger schema

Revision ID: 0001_ledger
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_ledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "purchase_attempts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("trigger", sa.String(), nullable=False),
        sa.Column("external_order_id", sa.String(), nullable=True),
        sa.Column("total_amount_cents", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_purchase_attempts_status", "purchase_attempts", ["status"])
    op.create_index("ix_purchase_attempts_attempted_at", "purchase_attempts", ["attempted_at"])

    op.create_table(
        "email_records",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("external_message_id", sa.String(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("email_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("subject", sa.String(), nullable=False),
        sa.Column("sender", sa.String(), nullable=False),
        sa.Column("raw_content", sa.Text(), nullable=False),
        sa.Column("content_digest", sa.String(length=64), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("related_purchase_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["related_purchase_id"], ["purchase_attempts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_email_records_external_message_id", "email_records", ["external_message_id"], unique=True
    )
    op.create_index("ix_email_records_status", "email_records", ["status"])
    op.create_index("ix_email_records_related_purchase_id", "email_records", ["related_purchase_id"])

    op.create_table(
        "gift_card_codes",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("value_cents", sa.Integer(), nullable=False),
        sa.Column("extracted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("redemption_status", sa.String(), nullable=False),
        sa.Column("redemption_attempts", sa.Integer(), nullable=False),
        sa.Column("external_redemption_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("source_email_id", sa.String(), nullable=False),
        sa.Column("purchase_id", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["source_email_id"], ["email_records.id"]),
        sa.ForeignKeyConstraint(["purchase_id"], ["purchase_attempts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_gift_card_codes_code", "gift_card_codes", ["code"], unique=True)
    op.create_index("ix_gift_card_codes_redemption_status", "gift_card_codes", ["redemption_status"])
    op.create_index("ix_gift_card_codes_source_email_id", "gift_card_codes", ["source_email_id"])

    op.create_table(
        "system_state",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.String(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "notification_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("notification_type", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("delivered_channels", sa.JSON(), nullable=False),
        sa.Column("failed_channels", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_logs_notification_type", "notification_logs", ["notification_type"])


def downgrade() -> None:
    op.drop_index("ix_notification_logs_notification_type", table_name="notification_logs")
    op.drop_table("notification_logs")
    op.drop_table("system_state")
    op.drop_index("ix_gift_card_codes_source_email_id", table_name="gift_card_codes")
    op.drop_index("ix_gift_card_codes_redemption_status", table_name="gift_card_codes")
    op.drop_index("ix_gift_card_codes_code", table_name="gift_card_codes")
    op.drop_table("gift_card_codes")
    op.drop_index("ix_email_records_related_purchase_id", table_name="email_records")
    op.drop_index("ix_email_records_status", table_name="email_records")
    op.drop_index("ix_email_records_external_message_id", table_name="email_records")
    op.drop_table("email_records")
    op.drop_index("ix_purchase_attempts_attempted_at", table_name="purchase_attempts")
    op.drop_index("ix_purchase_attempts_status", table_name="purchase_attempts")
    op.drop_table("purchase_attempts")
