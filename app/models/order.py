from enum import Enum
from tortoise import fields, models
import uuid


class OrderStatus(str, Enum):
    CREATED = "CREATED"  # Initial state, OrderCreatedEvent queued in the outbox
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    INVENTORY_ALLOCATED = "INVENTORY_ALLOCATED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


FINAL_STATUSES = (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


class Order(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    customer_id = fields.UUIDField()
    status = fields.CharEnumField(OrderStatus, default=OrderStatus.CREATED)
    total_amount = fields.DecimalField(max_digits=14, decimal_places=2, default=0)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "orders"
        indexes = [
            ("customer_id",),            # Customer order history
            ("status",),                 # Status-based filtering
            ("status", "created_at"),    # Composite: status with time
        ]


class OrderItem(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    order = fields.ForeignKeyField("models.Order", related_name="items")
    product_id = fields.CharField(max_length=64)
    category_id = fields.CharField(max_length=64)
    quantity = fields.IntField()
    price = fields.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        table = "order_items"
        unique_together = (("order", "category_id", "product_id"),)
