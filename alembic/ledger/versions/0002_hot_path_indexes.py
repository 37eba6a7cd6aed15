"""add hot-path indexes for redemption sweeps and email drains

Revision ID: 0002_hot_path_indexes
Revises: 0001_ledger
Create Date: 2026-10-18
"""

from alembic import op


revision = "0002_hot_path_indexes"
down_revision = "0001_ledger"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_gift_card_codes_status_extracted_at",
        "gift_card_codes",
        ["redemption_status", "extracted_at"],
    )
    op.create_index(
        "ix_email_records_status_received_at",
        "email_records",
        ["status", "received_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_email_records_status_received_at", table_name="email_records")
    op.drop_index("ix_gift_card_codes_status_extracted_at", table_name="gift_card_codes")
