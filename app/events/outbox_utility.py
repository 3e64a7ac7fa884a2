import json
import logging
from datetime import datetime
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from app.models.outbox import OutboxMessage

log = logging.getLogger("outbox_utility")

EVENT_TYPE_MAX_LENGTH = 100
PARTITION_KEY_MAX_LENGTH = 500

ModelT = TypeVar("ModelT", bound=BaseModel)


def serialize_payload(payload: Any) -> str:
    """Serializes an event payload to the JSON text stored in the outbox."""
    if isinstance(payload, BaseModel):
        return payload.model_dump_json()
    return json.dumps(payload, default=str)


def default_event_type(payload: Any) -> str:
    """The payload's logical type name, used when no event type is given."""
    if isinstance(payload, (dict, list, str, int, float, bool)) or payload is None:
        raise ValueError("event_type is required for untyped payloads.")
    return type(payload).__name__


async def create_outbox_message(
    payload: Any,
    event_type: Optional[str] = None,
    partition_key: Optional[str] = None,
    metadata: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    conn: Any = None
) -> OutboxMessage:
    """
    Creates a new Outbox message using the provided database connection (transaction).

    CRITICAL: Passing 'conn' ensures the message is created atomically with the business data.
    Relay outcomes are observable only through the stored row, never through this call.
    """
    event_type = event_type or default_event_type(payload)
    if len(event_type) > EVENT_TYPE_MAX_LENGTH:
        raise ValueError(f"event_type exceeds {EVENT_TYPE_MAX_LENGTH} characters.")
    if partition_key is not None and len(partition_key) > PARTITION_KEY_MAX_LENGTH:
        raise ValueError(f"partition_key exceeds {PARTITION_KEY_MAX_LENGTH} characters.")

    content = serialize_payload(payload)
    if not content:
        raise ValueError("Outbox message content must not be empty.")

    message = await OutboxMessage.create(
        event_type=event_type,
        content=content,
        partition_key=partition_key,
        metadata=metadata,
        expires_at=expires_at,
        using_db=conn
    )
    log.debug(f"Outbox message {message.id} ({event_type}) written, partition_key={partition_key}")
    return message


def deserialize_content(message: OutboxMessage, model: Type[ModelT]) -> Optional[ModelT]:
    """Parses the message content into `model`, or returns None when it does not fit."""
    if not message.content:
        return None
    try:
        return model.model_validate_json(message.content)
    except ValidationError as e:
        log.warning(f"Outbox message {message.id} does not match {model.__name__}: {e.error_count()} errors")
        return None
