import json
import uuid
from decimal import Decimal

import pytest

from app.events.order_events import OrderCreatedEvent, OrderItemPayload, OrderStatusChangedEvent
from app.events.outbox_utility import create_outbox_message, deserialize_content
from app.models.outbox import OutboxMessage
from helpers import at

ORDER_ID = uuid.UUID("7c9e6679-7425-40de-944b-e07fc1f90ae7")
CUSTOMER_ID = uuid.UUID("0b5e4c3a-6f1d-4b9e-8a2c-1d2e3f4a5b6c")


def order_created() -> OrderCreatedEvent:
    return OrderCreatedEvent(
        order_id=ORDER_ID,
        customer_id=CUSTOMER_ID,
        items=[OrderItemPayload(product_id="p-1", category_id="c-1", quantity=2, price=Decimal("4.50"))],
        total_amount=Decimal("9.00"),
        created_at=at(0),
    )


@pytest.mark.asyncio
async def test_typed_payload_uses_class_name_as_event_type(db):
    message = await create_outbox_message(order_created(), partition_key=str(ORDER_ID))

    stored = await OutboxMessage.get(id=message.id)
    assert stored.event_type == "OrderCreatedEvent"
    assert stored.partition_key == str(ORDER_ID)
    assert stored.processed_at is None
    assert stored.retry_count == 0
    assert json.loads(stored.content)["order_id"] == str(ORDER_ID)


@pytest.mark.asyncio
async def test_untyped_payload_requires_event_type(db):
    with pytest.raises(ValueError):
        await create_outbox_message({"order_id": "42"})

    message = await create_outbox_message({"order_id": "42"}, event_type="LegacyOrderEvent")
    assert message.event_type == "LegacyOrderEvent"
    assert json.loads(message.content) == {"order_id": "42"}


@pytest.mark.asyncio
async def test_rejects_oversized_fields(db):
    with pytest.raises(ValueError):
        await create_outbox_message({"a": 1}, event_type="E" * 101)
    with pytest.raises(ValueError):
        await create_outbox_message({"a": 1}, event_type="E", partition_key="k" * 501)

    assert await OutboxMessage.all().count() == 0


@pytest.mark.asyncio
async def test_metadata_and_expiry_are_stored(db):
    message = await create_outbox_message(
        order_created(), metadata='{"correlation_id": "req-1"}', expires_at=at(3600)
    )

    stored = await OutboxMessage.get(id=message.id)
    assert json.loads(stored.metadata) == {"correlation_id": "req-1"}
    assert stored.expires_at is not None


@pytest.mark.asyncio
async def test_deserialize_content(db):
    message = await create_outbox_message(order_created())

    event = deserialize_content(message, OrderCreatedEvent)

    assert event == order_created()
    assert deserialize_content(message, OrderStatusChangedEvent) is None


@pytest.mark.asyncio
async def test_deserialize_empty_content(db):
    message = OutboxMessage(event_type="OrderCreatedEvent", content="")
    assert deserialize_content(message, OrderCreatedEvent) is None
