"""Bounded exponential backoff with counters persisted in system state.

Counters are read fresh from the ledger for every decision so a restart
resumes the same streak instead of granting a new retry budget.
"""

from dataclasses import dataclass
from datetime import timedelta

from cardrelay.common.logging import logger
from cardrelay.common.metrics import retries_exhausted_total, retries_scheduled_total
from cardrelay.services.ledger.service import LedgerService


@dataclass(frozen=True)
class RetryDecision:
    operation: str
    attempt: int
    exhausted: bool
    delay: timedelta | None
    identical_failures: bool


def backoff_delay(attempt: int, multiplier: float, base_delay_minutes: float) -> timedelta:
    """Delay before re-running after the `attempt`-th consecutive failure (1-based)."""

    return timedelta(minutes=(multiplier ** (attempt - 1)) * base_delay_minutes)


class RetryTracker:
    def __init__(
        self,
        ledger: LedgerService,
        max_retries: int,
        multiplier: float,
        base_delay_minutes: float,
        service_name: str = "orchestrator",
    ) -> None:
        self.ledger = ledger
        self.max_retries = max_retries
        self.multiplier = multiplier
        self.base_delay_minutes = base_delay_minutes
        self.service_name = service_name

    @staticmethod
    def _key(operation: str, suffix: str) -> str:
        return f"{operation}_{suffix}"

    def counter(self, operation: str) -> int:
        value = self.ledger.get_system_state(self._key(operation, "retry_count"))
        return int(value) if value else 0

    def _reset(self, operation: str) -> None:
        self.ledger.set_system_state(self._key(operation, "retry_count"), "0")
        self.ledger.set_system_state(self._key(operation, "last_error"), "")
        self.ledger.set_system_state(self._key(operation, "errors_identical"), "1")

    def record_success(self, operation: str) -> None:
        if self.counter(operation):
            logger.info("retry_counter_reset operation=%s", operation)
        self._reset(operation)

    def record_failure(self, operation: str, error_message: str | None) -> RetryDecision:
        """Count one failure and decide between a backoff retry and giving up."""

        error = error_message or ""
        attempt = self.counter(operation) + 1
        if attempt == 1:
            identical = True
        else:
            previous = self.ledger.get_system_state(self._key(operation, "last_error")) or ""
            identical = self.ledger.get_system_state(self._key(operation, "errors_identical")) != "0" and (
                previous == error
            )

        if attempt >= self.max_retries:
            self._reset(operation)
            retries_exhausted_total.labels(service=self.service_name, operation=operation).inc()
            logger.warning("retries_exhausted operation=%s attempts=%s identical=%s", operation, attempt, identical)
            return RetryDecision(operation, attempt, True, None, identical)

        self.ledger.set_system_state(self._key(operation, "retry_count"), str(attempt))
        self.ledger.set_system_state(self._key(operation, "last_error"), error)
        self.ledger.set_system_state(self._key(operation, "errors_identical"), "1" if identical else "0")
        delay = backoff_delay(attempt, self.multiplier, self.base_delay_minutes)
        retries_scheduled_total.labels(service=self.service_name, operation=operation).inc()
        logger.info("retry_scheduled operation=%s attempt=%s delay_minutes=%s", operation, attempt, delay.total_seconds() / 60)
        return RetryDecision(operation, attempt, False, delay, identical)
