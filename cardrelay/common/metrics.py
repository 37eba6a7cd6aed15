"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


purchase_attempts_total = Counter(
    "purchase_attempts_total",
    "Purchase attempts by outcome",
    ["service", "outcome"],
)
redemptions_total = Counter(
    "redemptions_total",
    "Gift card redemption attempts by outcome",
    ["service", "outcome"],
)
retries_scheduled_total = Counter(
    "retries_scheduled_total",
    "Backoff retries scheduled",
    ["service", "operation"],
)
retries_exhausted_total = Counter(
    "retries_exhausted_total",
    "Retry budgets exhausted",
    ["service", "operation"],
)
duplicate_codes_skipped_total = Counter(
    "duplicate_codes_skipped_total",
    "Gift card codes rejected by the duplicate-code rule",
    ["service"],
)
emails_ingested_total = Counter(
    "emails_ingested_total",
    "Inbound emails recorded by type",
    ["service", "email_type"],
)
notification_failures_total = Counter(
    "notification_failures_total",
    "Notification deliveries that failed per channel",
    ["service", "channel"],
)
cycle_duration_seconds = Histogram(
    "cycle_duration_seconds",
    "Orchestrator cycle duration seconds",
    ["service", "cycle"],
)
pending_gift_cards = Gauge(
    "pending_gift_cards",
    "Gift card codes waiting for redemption",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
