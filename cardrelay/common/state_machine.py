"""Status enums and transition tables enforced by the ledger."""

from enum import Enum


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class EmailStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class EmailType(str, Enum):
    PURCHASE_CONFIRMATION = "purchase_confirmation"
    GIFT_CARD_DELIVERY = "gift_card_delivery"
    OTHER = "other"


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    REDEEMED = "redeemed"
    FAILED = "failed"
    EXPIRED = "expired"


PURCHASE_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"in_progress", "skipped", "failed"},
    "in_progress": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
    "skipped": set(),
}

EMAIL_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processed", "failed"},
    "failed": {"processed", "failed"},
    "processed": set(),
}

# A failed code may be retried, but never returns to pending.
REDEMPTION_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"redeemed", "failed", "expired"},
    "failed": {"redeemed", "failed", "expired"},
    "redeemed": set(),
    "expired": set(),
}


class InvalidTransition(ValueError):
    """Raised when a status change is not allowed by its transition table."""


def validate_transition(table: dict[str, set[str]], current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in table.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")
