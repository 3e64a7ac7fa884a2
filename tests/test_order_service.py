import json
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, patch, MagicMock
from uuid import UUID
from app.events.order_events import OrderCreatedEvent
from app.events.outbox_utility import deserialize_content
from app.models.order import Order, OrderItem, OrderStatus
from app.models.outbox import OutboxMessage
from app.services.order_service import get_order_by_id, place_order, update_order_status

CUSTOMER_ID = UUID("0b5e4c3a-6f1d-4b9e-8a2c-1d2e3f4a5b6c")

# --- CORE MOCKING UTILITIES ---

class AsyncContextManagerMock:
    """Mocks 'async with in_transaction() as conn:' to fulfill the async context manager protocol."""
    async def __aenter__(self):
        return object()
    async def __aexit__(self, exc_type, exc_val, exc_tb):
        pass


class ChainableQuery:
    """
    Stands in for a Tortoise QuerySet: chaining methods return the query itself
    and awaiting it resolves to the configured result.
    """
    def __init__(self, result):
        self.result = result

    def using_db(self, conn):
        return self

    def prefetch_related(self, *related):
        return self

    def __await__(self):
        async def _resolve():
            return self.result
        return _resolve().__await__()


def mock_order(status):
    order = MagicMock()
    order.id = UUID("d675f4f3-6c36-46b9-abcf-ba0aa3c60a5e")
    order.status = status
    order.save = AsyncMock()
    return order

# --- STATUS TRANSITIONS (mocked persistence) ---

@pytest.mark.asyncio
@patch('app.services.order_service.in_transaction', new_callable=MagicMock)
@patch('app.services.order_service.create_outbox_message', new_callable=AsyncMock)
async def test_successful_status_transition(mock_outbox, mock_in_transaction):
    """PAYMENT_COMPLETED -> SHIPPED saves the order and queues one status event keyed by the order."""
    order = mock_order(OrderStatus.PAYMENT_COMPLETED)
    mock_in_transaction.return_value = AsyncContextManagerMock()

    with patch.object(Order, 'get_or_none', MagicMock(return_value=ChainableQuery(order))):
        updated_order = await update_order_status(order.id, OrderStatus.SHIPPED, reason="Handed to carrier")

    assert updated_order.status == OrderStatus.SHIPPED
    order.save.assert_called_once()
    mock_outbox.assert_called_once()

    args, kwargs = mock_outbox.call_args
    event = args[0]
    assert event.old_status == "PAYMENT_COMPLETED"
    assert event.new_status == "SHIPPED"
    assert event.reason == "Handed to carrier"
    assert kwargs['partition_key'] == str(order.id)


@pytest.mark.asyncio
@patch('app.services.order_service.in_transaction', new_callable=MagicMock)
@patch('app.services.order_service.create_outbox_message', new_callable=AsyncMock)
async def test_rejection_of_final_state_transition(mock_outbox, mock_in_transaction):
    """A DELIVERED order cannot move; nothing is saved and no event is queued."""
    order = mock_order(OrderStatus.DELIVERED)
    mock_in_transaction.return_value = AsyncContextManagerMock()

    with patch.object(Order, 'get_or_none', MagicMock(return_value=ChainableQuery(order))):
        with pytest.raises(ValueError) as excinfo:
            await update_order_status(order.id, OrderStatus.CANCELLED)

    assert "final state" in str(excinfo.value)
    order.save.assert_not_called()
    mock_outbox.assert_not_called()


@pytest.mark.asyncio
@patch('app.services.order_service.in_transaction', new_callable=MagicMock)
@patch('app.services.order_service.create_outbox_message', new_callable=AsyncMock)
async def test_rejection_of_unchanged_status(mock_outbox, mock_in_transaction):
    order = mock_order(OrderStatus.SHIPPED)
    mock_in_transaction.return_value = AsyncContextManagerMock()

    with patch.object(Order, 'get_or_none', MagicMock(return_value=ChainableQuery(order))):
        with pytest.raises(ValueError):
            await update_order_status(order.id, OrderStatus.SHIPPED)

    mock_outbox.assert_not_called()


@pytest.mark.asyncio
@patch('app.services.order_service.in_transaction', new_callable=MagicMock)
async def test_missing_order(mock_in_transaction):
    mock_in_transaction.return_value = AsyncContextManagerMock()

    with patch.object(Order, 'get_or_none', MagicMock(return_value=ChainableQuery(None))):
        with pytest.raises(ValueError) as excinfo:
            await update_order_status(UUID(int=1), OrderStatus.SHIPPED)

    assert "not found" in str(excinfo.value)

# --- ORDER PLACEMENT (in-memory database) ---

ITEMS = [
    {"product_id": "p-1", "category_id": "books", "quantity": 2, "price": "7.50"},
    {"product_id": "p-2", "category_id": "games", "quantity": 1, "price": "10.00"},
]


@pytest.mark.asyncio
async def test_place_order_writes_order_and_event_together(db):
    order = await place_order(CUSTOMER_ID, ITEMS, correlation_id="req-42")

    stored = await get_order_by_id(order.id)
    assert stored.status == OrderStatus.CREATED
    assert stored.total_amount == Decimal("25.00")
    assert len(stored.items) == 2

    messages = await OutboxMessage.all()
    assert len(messages) == 1
    message = messages[0]
    assert message.event_type == "OrderCreatedEvent"
    assert message.partition_key == str(order.id)
    assert json.loads(message.metadata) == {"correlation_id": "req-42"}
    assert message.processed_at is None

    event = deserialize_content(message, OrderCreatedEvent)
    assert event.order_id == order.id
    assert event.customer_id == CUSTOMER_ID
    assert [i.product_id for i in event.items] == ["p-1", "p-2"]


@pytest.mark.asyncio
async def test_place_order_rolls_back_on_invalid_item(db):
    """The order header is written before the bad line; the whole transaction must roll back."""
    items = [ITEMS[0], {"product_id": "p-3", "category_id": "books", "quantity": 0, "price": "1.00"}]

    with pytest.raises(ValueError):
        await place_order(CUSTOMER_ID, items)

    assert await Order.all().count() == 0
    assert await OrderItem.all().count() == 0
    assert await OutboxMessage.all().count() == 0


@pytest.mark.asyncio
async def test_place_order_requires_items(db):
    with pytest.raises(ValueError):
        await place_order(CUSTOMER_ID, [])


@pytest.mark.asyncio
async def test_status_update_queues_event_in_order(db):
    order = await place_order(CUSTOMER_ID, ITEMS[:1])

    await update_order_status(order.id, OrderStatus.PAYMENT_PROCESSING)

    messages = await OutboxMessage.filter(partition_key=str(order.id)).order_by("created_at")
    assert [m.event_type for m in messages] == ["OrderCreatedEvent", "OrderStatusChangedEvent"]
    assert (await Order.get(id=order.id)).status == OrderStatus.PAYMENT_PROCESSING
