from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


class RetryDecision(str, Enum):
    RETRY_LATER = "retry_later"
    DEAD_LETTER = "dead_letter"


def decide(retry_count_after_failure: int, max_retries: int) -> RetryDecision:
    """Dead-letters a message once its failed attempts reach max_retries."""
    if retry_count_after_failure >= max_retries:
        return RetryDecision.DEAD_LETTER
    return RetryDecision.RETRY_LATER


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry/dead-letter rules applied by the relay after a failed publish.

    With backoff_base_seconds > 0 a failed message waits
    base * 2^(retry_count - 1) seconds (capped at backoff_max_seconds)
    after its last attempt before it is published again. The relay stores
    that instant as next_retry_at and the readiness query filters on it.
    """
    max_retries: int = 3
    backoff_base_seconds: float = 0.0
    backoff_max_seconds: float = 300.0

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")

    def decide(self, retry_count_after_failure: int, permanent: bool = False) -> RetryDecision:
        if permanent:
            return RetryDecision.DEAD_LETTER
        return decide(retry_count_after_failure, self.max_retries)

    def backoff(self, retry_count: int) -> timedelta:
        if self.backoff_base_seconds <= 0 or retry_count <= 0:
            return timedelta(0)
        delay = self.backoff_base_seconds * (2 ** (retry_count - 1))
        return timedelta(seconds=min(delay, self.backoff_max_seconds))

    def next_retry_at(self, retry_count: int, now: datetime) -> Optional[datetime]:
        """When a message failed `retry_count` times at `now` may be retried; None means right away."""
        delay = self.backoff(retry_count)
        if not delay:
            return None
        return now + delay
