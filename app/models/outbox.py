from datetime import datetime, timezone
from typing import Optional
from tortoise import fields, models
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treats naive datetimes read back from storage as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OutboxMessage(models.Model):
    """
    One domain event waiting to be relayed to the broker.

    Rows are written by the producer in the same transaction as the business
    change and afterwards mutated only by the relay: processed_at/topic_name
    on success, retry_count/last_retry_at/last_error on failure (plus
    next_retry_at under a backoff policy), is_ignored when the retry policy
    dead-letters the message. The relay never deletes rows.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    event_type = fields.CharField(max_length=100) # e.g., 'OrderCreatedEvent'
    content = fields.TextField() # Serialized JSON payload
    created_at = fields.DatetimeField(auto_now_add=True)
    processed_at = fields.DatetimeField(null=True)
    topic_name = fields.CharField(max_length=255, null=True)
    partition_key = fields.CharField(max_length=500, null=True)
    retry_count = fields.IntField(default=0)
    last_retry_at = fields.DatetimeField(null=True)
    next_retry_at = fields.DatetimeField(null=True) # Backoff: not published again before this
    last_error = fields.TextField(null=True)
    is_ignored = fields.BooleanField(default=False)
    schema_version = fields.IntField(default=1)
    metadata = fields.TextField(null=True) # e.g., correlation id
    expires_at = fields.DatetimeField(null=True)

    class Meta:
        table = "outbox_messages"
        indexes = [
            ("processed_at", "is_ignored", "created_at"),  # Readiness scan
            ("processed_at", "next_retry_at"),             # Messages in backoff
            ("partition_key", "created_at"),               # Per-key ordering
        ]

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > as_utc(self.expires_at)

    def is_due(self, now: datetime) -> bool:
        return self.next_retry_at is None or as_utc(self.next_retry_at) <= now

    def has_exceeded_max_retries(self, max_retries: int = 3) -> bool:
        return self.retry_count >= max_retries

    # In-memory mirrors of the stored transitions in app.relay.store.

    def mark_as_processed(self, topic_name: str, now: datetime) -> None:
        self.processed_at = now
        self.topic_name = topic_name
        self.last_error = None
        self.next_retry_at = None

    def increment_retry(self, error: str, now: datetime, next_retry_at: Optional[datetime] = None) -> None:
        self.retry_count += 1
        self.last_retry_at = now
        self.last_error = error
        self.next_retry_at = next_retry_at

    def mark_as_ignored(self, reason: str) -> None:
        self.is_ignored = True
        self.last_error = reason

    def __str__(self) -> str:
        return f"OutboxMessage({self.id}, {self.event_type})"
