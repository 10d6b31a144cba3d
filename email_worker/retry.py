"""Bounded exponential backoff used when a delivery attempt fails."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 60.0  # seconds


@dataclass(frozen=True)
class RetryPolicy:
    """Decide whether a failed job is retried and when.

    ``retry_count`` is the number of failed attempts so far, counting the
    one being handled: the first failure has ``retry_count == 1``.
    Retry ``k`` is delayed by ``base_delay * 2 ** (k - 1)`` seconds.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY

    def next_retry_count(self, prior: int) -> int:
        return max(0, int(prior)) + 1

    def should_retry(self, retry_count: int) -> bool:
        return retry_count <= self.max_retries

    def calculate_delay(self, retry_count: int) -> float:
        """Seconds to wait before retry number ``retry_count``."""
        exponent = max(0, int(retry_count) - 1)
        return self.base_delay * (2 ** exponent)

    def scheduled_at(self, retry_count: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.calculate_delay(retry_count))
