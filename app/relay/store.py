"""
State transitions the relay applies to outbox messages.

Each transition is one conditional UPDATE guarded on the message still being
pending, so two relay instances racing on the same row cannot both commit a
terminal state: the loser updates zero rows, which is reported as a lost race
rather than an error. No transaction is held open across a broker call.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from tortoise.expressions import Q

from app.models.outbox import OutboxMessage
from app.relay.policy import RetryDecision, RetryPolicy

log = logging.getLogger("outbox_store")

LAST_ERROR_MAX_LENGTH = 4000
EXPIRED_REASON = "Message expired before it could be published."


def _pending(message_id, conn: Any = None):
    query = OutboxMessage.filter(id=message_id, processed_at__isnull=True, is_ignored=False)
    if conn is not None:
        query = query.using_db(conn)
    return query


async def mark_processed(message: OutboxMessage, topic_name: str, now: datetime, conn: Any = None) -> bool:
    """
    Records a confirmed publish. Returns False when another relay got there first.
    """
    updated = await _pending(message.id, conn).update(
        processed_at=now,
        topic_name=topic_name,
        last_error=None,
        next_retry_at=None,
    )
    if not updated:
        log.info(f"Message {message.id} already finalized by another relay, success not recorded.")
        return False

    message.mark_as_processed(topic_name, now)
    return True


async def mark_failed(
    message: OutboxMessage,
    error: str,
    policy: RetryPolicy,
    now: datetime,
    permanent: bool = False,
    conn: Any = None
) -> Optional[RetryDecision]:
    """
    Records a failed publish and applies the retry policy.

    The update only matches while retry_count still equals the value this
    relay read, so a failure is never counted twice. Returns the decision
    taken, or None when the row changed underneath us.
    """
    error = error[:LAST_ERROR_MAX_LENGTH]
    retry_count = message.retry_count + 1
    decision = policy.decide(retry_count, permanent=permanent)

    next_retry_at = None
    if decision == RetryDecision.RETRY_LATER:
        next_retry_at = policy.next_retry_at(retry_count, now)

    values = {
        "retry_count": retry_count,
        "last_retry_at": now,
        "next_retry_at": next_retry_at,
        "last_error": error,
    }
    if decision == RetryDecision.DEAD_LETTER:
        values["is_ignored"] = True

    updated = await _pending(message.id, conn).filter(retry_count=message.retry_count).update(**values)
    if not updated:
        log.info(f"Message {message.id} changed by another relay, failure not recorded.")
        return None

    message.increment_retry(error, now, next_retry_at)
    if decision == RetryDecision.DEAD_LETTER:
        message.mark_as_ignored(error)
    return decision


@dataclass
class DeliveryOutcome:
    """The result of one publish attempt, ready to be persisted."""
    message: OutboxMessage
    topic_name: str
    error: Optional[str] = None
    permanent: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class TransitionResult:
    outcome: DeliveryOutcome
    applied: bool
    decision: Optional[RetryDecision] = None


async def apply_outcome(outcome: DeliveryOutcome, policy: RetryPolicy, now: datetime) -> TransitionResult:
    if outcome.succeeded:
        applied = await mark_processed(outcome.message, outcome.topic_name, now)
        return TransitionResult(outcome, applied)

    decision = await mark_failed(outcome.message, outcome.error, policy, now, permanent=outcome.permanent)
    return TransitionResult(outcome, decision is not None, decision)


async def apply_outcomes(
    outcomes: Sequence[DeliveryOutcome], policy: RetryPolicy, now: datetime
) -> List[TransitionResult]:
    """Applies a batch of publish results, each one atomically and independently."""
    return [await apply_outcome(outcome, policy, now) for outcome in outcomes]


async def sweep_expired(now: datetime) -> int:
    """
    Moves pending messages whose expires_at has passed to the ignored state.

    Administrative: expired messages are never published either way, the
    sweep only makes them visible as dead letters instead of lingering pending.
    """
    swept = await OutboxMessage.filter(
        processed_at__isnull=True,
        is_ignored=False,
        expires_at__lte=now,
    ).update(is_ignored=True, last_error=EXPIRED_REASON)
    if swept:
        log.warning(f"Swept {swept} expired outbox messages to the ignored state.")
    return swept


async def count_by_state(now: datetime, max_retries: int) -> Dict[str, int]:
    """
    Counts messages per relay state for monitoring. Every row lands in exactly one bucket.

    `stalled` holds unexpired, not-ignored messages already at max_retries
    (left behind when MAX_RETRIES is lowered); the relay no longer selects them.
    """
    pending = OutboxMessage.filter(processed_at__isnull=True, is_ignored=False)
    live = pending.filter(Q(expires_at__isnull=True) | Q(expires_at__gt=now))
    return {
        "pending": await live.filter(retry_count__lt=max_retries).count(),
        "stalled": await live.filter(retry_count__gte=max_retries).count(),
        "expired": await pending.filter(expires_at__lte=now).count(),
        "processed": await OutboxMessage.filter(processed_at__isnull=False).count(),
        "ignored": await OutboxMessage.filter(is_ignored=True).count(),
    }


async def list_dead_letters(limit: int = 50) -> List[OutboxMessage]:
    return await OutboxMessage.filter(is_ignored=True).order_by("-last_retry_at", "-created_at").limit(limit)
