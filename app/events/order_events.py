from datetime import datetime
from decimal import Decimal
from typing import List, Optional
import uuid

from pydantic import BaseModel


class OrderItemPayload(BaseModel):
    product_id: str
    category_id: str
    quantity: int
    price: Decimal


class OrderCreatedEvent(BaseModel):
    """Published once per order, keyed by the order id."""
    order_id: uuid.UUID
    customer_id: uuid.UUID
    items: List[OrderItemPayload]
    total_amount: Decimal
    created_at: datetime


class OrderStatusChangedEvent(BaseModel):
    order_id: uuid.UUID
    old_status: str
    new_status: str
    changed_at: datetime
    reason: Optional[str] = None
