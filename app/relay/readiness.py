from datetime import datetime
from typing import Dict, List

from tortoise.expressions import Q
from tortoise.queryset import QuerySet

from app.models.outbox import OutboxMessage, as_utc


def _eligible(max_retries: int, now: datetime) -> QuerySet[OutboxMessage]:
    return OutboxMessage.filter(
        Q(expires_at__isnull=True) | Q(expires_at__gt=now),
        processed_at__isnull=True,
        is_ignored=False,
        retry_count__lt=max_retries,
    )


async def backoff_heads(max_retries: int, now: datetime) -> Dict[str, datetime]:
    """
    Oldest creation time, per partition key, of the messages still waiting out a backoff.

    Nothing created after such a message may be published under its key yet.
    """
    rows = await (
        _eligible(max_retries, now)
        .filter(partition_key__isnull=False, next_retry_at__gt=now)
        .order_by("created_at")
        .values_list("partition_key", "created_at")
    )
    heads: Dict[str, datetime] = {}
    for partition_key, created_at in rows:
        heads.setdefault(partition_key, created_at)
    return heads


async def ready_for_processing(
    max_retries: int, batch_size: int, now: datetime, offset: int = 0
) -> List[OutboxMessage]:
    """
    Selects the messages eligible for the next relay pass.

    Pending (not processed, not ignored), not expired at `now`, below
    max_retries failed attempts and past any backoff; oldest first, at most
    batch_size rows starting at `offset`. Messages queued behind a same-key
    message that is still in backoff are held back with it. Plain reads: the
    producer's inserts are never blocked.
    """
    query = _eligible(max_retries, now).filter(
        Q(next_retry_at__isnull=True) | Q(next_retry_at__lte=now)
    )

    heads = await backoff_heads(max_retries, now)
    if heads:
        query = query.exclude(
            Q(
                *(Q(partition_key=key, created_at__gt=head) for key, head in heads.items()),
                join_type=Q.OR,
            )
        )

    return await query.order_by("created_at", "id").offset(offset).limit(batch_size)


def is_ready(message: OutboxMessage, *, max_retries: int, now: datetime) -> bool:
    """The per-message readiness predicate evaluated in memory (same-key blocking aside)."""
    if message.is_processed or message.is_ignored:
        return False
    if message.expires_at is not None and as_utc(message.expires_at) <= now:
        return False
    if not message.is_due(now):
        return False
    return message.retry_count < max_retries
