from pydantic import BaseModel, Field
from typing import List, Optional
import uuid
from decimal import Decimal

from app.models.order import OrderStatus


class OrderItemRequest(BaseModel):
    """Schema for a single item in the order request."""
    product_id: str = Field(..., max_length=64)
    category_id: str = Field(..., max_length=64)
    quantity: int = Field(..., gt=0)
    price: Decimal = Field(..., ge=0)


class OrderRequest(BaseModel):
    """Schema for the full order placement request body."""
    customer_id: uuid.UUID
    items: List[OrderItemRequest]


class OrderPlacementResponse(BaseModel):
    """Response schema for a newly placed order (202 Accepted)."""
    order_id: uuid.UUID
    status: OrderStatus
    total_amount: Decimal
    message: str


class OrderStatusUpdate(BaseModel):
    """Schema for updating an order status."""
    status: OrderStatus
    reason: Optional[str] = Field(None, max_length=500)


class OrderItemResponse(BaseModel):
    """Schema for an item inside the detailed order response."""
    product_id: str
    category_id: str
    quantity: int
    price: str  # Use string for Decimal type serialization


class OrderDetailResponse(BaseModel):
    """Schema for fetching detailed order information."""
    id: uuid.UUID
    customer_id: uuid.UUID
    status: OrderStatus
    total_amount: Decimal
    items: List[OrderItemResponse]
    created_at: str
