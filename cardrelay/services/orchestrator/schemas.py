"""API response schemas for the trigger and status endpoints."""

from pydantic import BaseModel


class TriggerResponse(BaseModel):
    """Whether a manual trigger was queued (False when one is already pending)."""

    trigger: str
    queued: bool


class TaskStatus(BaseModel):
    name: str
    next_run_at: str
    recurring: bool
    running: bool


class LastPurchase(BaseModel):
    id: str
    status: str
    attempted_at: str
    external_order_id: str | None = None


class StatusResponse(BaseModel):
    running: bool
    automation_busy: bool
    automation_holder: str | None = None
    tasks: list[TaskStatus]
    retry_counters: dict[str, int]
    last_purchase: LastPurchase | None = None
    scheduling: dict


class PurchaseStats(BaseModel):
    total: int
    successful: int
    failed: int
    success_rate: float
    spent_cents: int


class GiftCardStats(BaseModel):
    total: int
    redeemed: int
    pending: int
    failed: int
    redemption_rate: float
    total_value_cents: int
    redeemed_value_cents: int


class StatisticsResponse(BaseModel):
    """Aggregate ledger counters; amounts are integer cents."""

    purchases: PurchaseStats
    gift_cards: GiftCardStats
    emails: dict[str, int]
