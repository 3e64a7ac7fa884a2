from datetime import datetime
from typing import Optional
import uuid

from pydantic import BaseModel, ConfigDict


class OutboxStatsResponse(BaseModel):
    """Message counts per relay state."""
    pending: int
    stalled: int
    expired: int
    processed: int
    ignored: int
    relay_running: bool


class DeadLetterResponse(BaseModel):
    """An outbox message the relay gave up on."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    event_type: str
    partition_key: Optional[str] = None
    retry_count: int
    last_error: Optional[str] = None
    last_retry_at: Optional[datetime] = None
    created_at: datetime
    expires_at: Optional[datetime] = None
