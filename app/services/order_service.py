import json
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from tortoise.transactions import in_transaction

from app.core.config import ORDER_EVENT_TTL_SECONDS
from app.events.order_events import OrderCreatedEvent, OrderItemPayload, OrderStatusChangedEvent
from app.events.outbox_utility import create_outbox_message
from app.models.order import FINAL_STATUSES, Order, OrderItem, OrderStatus
from app.models.outbox import utcnow

log = logging.getLogger("order_service")


def _event_expiry():
    if ORDER_EVENT_TTL_SECONDS <= 0:
        return None
    return utcnow() + timedelta(seconds=ORDER_EVENT_TTL_SECONDS)


def _event_metadata(correlation_id: Optional[str]) -> Optional[str]:
    if not correlation_id:
        return None
    return json.dumps({"correlation_id": correlation_id})


async def place_order(customer_id: UUID, items: List[Dict], correlation_id: Optional[str] = None) -> Order:
    """
    Creates Order/OrderItem rows and the OrderCreatedEvent outbox message atomically.
    Delivery of the event is left to the outbox relay.
    """
    if not items:
        raise ValueError("Order must contain items.")

    async with in_transaction() as conn:
        # 1. Create the Order header
        order = await Order.create(
            customer_id=customer_id,
            status=OrderStatus.CREATED,
            total_amount=Decimal("0"),
            using_db=conn
        )

        total = Decimal("0")
        event_items = []

        for it in items:
            qty = int(it["quantity"])
            price = Decimal(str(it["price"]))
            if qty <= 0:
                raise ValueError(f"Quantity for product {it['product_id']} must be positive.")
            if price < 0:
                raise ValueError(f"Price for product {it['product_id']} must not be negative.")

            total += price * qty

            # 2. Create Order Item line
            await OrderItem.create(
                order=order,
                product_id=it["product_id"],
                category_id=it["category_id"],
                quantity=qty,
                price=price,
                using_db=conn
            )
            event_items.append(OrderItemPayload(
                product_id=it["product_id"],
                category_id=it["category_id"],
                quantity=qty,
                price=price,
            ))

        order.total_amount = total
        await order.save(using_db=conn)

        # 3. ATOMIC EVENT: keyed by order so all events of one order stay ordered
        await create_outbox_message(
            OrderCreatedEvent(
                order_id=order.id,
                customer_id=customer_id,
                items=event_items,
                total_amount=total,
                created_at=order.created_at,
            ),
            partition_key=str(order.id),
            metadata=_event_metadata(correlation_id),
            expires_at=_event_expiry(),
            conn=conn
        )

    log.info(f"Order {order.id} created for customer {customer_id}, total {total}.")
    return order


async def get_order_by_id(order_id: UUID) -> Optional[Order]:
    """Fetches order details with items."""
    return await Order.get_or_none(id=order_id).prefetch_related('items')


async def update_order_status(
    order_id: UUID, new_status: OrderStatus, reason: Optional[str] = None, correlation_id: Optional[str] = None
) -> Order:
    """
    Updates order status, enforces final-state rules, and emits OrderStatusChangedEvent.
    """
    async with in_transaction() as conn:
        order = await Order.get_or_none(id=order_id).using_db(conn)

        if not order:
            raise ValueError("Order not found")

        # Block status updates if the order is in a final, irreversible state.
        if order.status in FINAL_STATUSES:
            raise ValueError(f"Order is already in a final state: {order.status.value}. Status cannot be updated.")
        if order.status == new_status:
            raise ValueError(f"Order is already {new_status.value}.")

        old_status = order.status
        order.status = new_status
        await order.save(using_db=conn)

        # This insertion happens in the same DB transaction as the order.save()
        await create_outbox_message(
            OrderStatusChangedEvent(
                order_id=order.id,
                old_status=old_status.value,
                new_status=new_status.value,
                changed_at=utcnow(),
                reason=reason,
            ),
            partition_key=str(order.id),
            metadata=_event_metadata(correlation_id),
            expires_at=_event_expiry(),
            conn=conn
        )

    log.info(f"Order {order_id} moved from {old_status.value} to {new_status.value}.")
    return order
