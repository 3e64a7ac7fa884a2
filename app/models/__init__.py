# app/models/__init__.py
from .order import Order, OrderItem, OrderStatus
from .outbox import OutboxMessage

# Export all models
__all__ = [
    "Order",
    "OrderItem",
    "OrderStatus",
    "OutboxMessage",
]
