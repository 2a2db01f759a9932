"""
Exponential backoff policy and gateway error hierarchy.

Failed events are not retried inline: the event store reschedules them with
a delay that doubles per attempt (capped), so a downstream outage such as
database contention or gateway rate limiting does not turn into a retry storm.
Permanent failures (4xx client errors) are never retried.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

RETRIABLE_STATUS_CODES = {429, 502, 503, 504}
BASE_DELAY = 1.0
MAX_DELAY = 300.0


class ProviderError(Exception):
    """Base exception for payment gateway and rate oracle errors."""

    def __init__(self, message: str, status_code: int = 500, retriable: Optional[bool] = None):
        super().__init__(message)
        self.status_code = status_code
        if retriable is None:
            retriable = status_code in RETRIABLE_STATUS_CODES or status_code >= 500
        self.retriable = retriable


class RateLimitError(ProviderError):
    """429 Too Many Requests from the gateway."""

    def __init__(self, message: str = "Rate limited", retry_after: float | None = None):
        super().__init__(message, status_code=429, retriable=True)
        self.retry_after = retry_after


class PermanentError(ProviderError):
    """Non-retriable error (e.g. card declined for good, bad request)."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message, status_code=status_code, retriable=False)


def backoff_delay(
    attempt: int,
    base_delay: float = BASE_DELAY,
    max_delay: float = MAX_DELAY,
) -> float:
    """
    Seconds to wait before retry number ``attempt`` (1-based).

    1 → base, 2 → 2*base, 3 → 4*base, ... capped at max_delay.
    """
    if attempt < 1:
        return 0.0
    # Cap the exponent so huge attempt counts don't overflow the float
    return min(base_delay * (2 ** min(attempt - 1, 32)), max_delay)


def next_attempt_at(
    attempt: int,
    base_delay: float = BASE_DELAY,
    max_delay: float = MAX_DELAY,
    now: Optional[datetime] = None,
    retry_after: Optional[float] = None,
) -> datetime:
    """When a failed event becomes claimable again."""
    delay = backoff_delay(attempt, base_delay, max_delay)
    if retry_after:
        delay = max(delay, min(retry_after, max_delay))
    return (now or datetime.now(timezone.utc)) + timedelta(seconds=delay)
