import logging
from fastapi import APIRouter, HTTPException, status
from app.schemas.response import SuccessResponse, new_request_id
from app.services.order_service import place_order, get_order_by_id, update_order_status
from app.schemas.order import OrderRequest, OrderPlacementResponse, OrderStatusUpdate, OrderDetailResponse
from app.relay.worker import get_relay_worker
from uuid import UUID

router = APIRouter()
log = logging.getLogger("uvicorn")


def _wake_relay():
    """Lets the in-app relay pick up a freshly committed outbox message."""
    worker = get_relay_worker()
    if worker is not None:
        worker.notify()


@router.post("/", status_code=status.HTTP_202_ACCEPTED, response_model=SuccessResponse)
async def create_order_endpoint(request_data: OrderRequest):
    """
    Places a new order. Returns 202 Accepted because downstream processing is event driven.
    """
    request_id = new_request_id()
    try:
        if not request_data.items:
            raise HTTPException(status_code=400, detail="Order must contain items.")

        order = await place_order(
            customer_id=request_data.customer_id,
            items=[item.model_dump() for item in request_data.items],
            correlation_id=request_id,
        )
        _wake_relay()
        log.info(f"Order {order.id} placed successfully for customer {request_data.customer_id}.")
        data = OrderPlacementResponse(
            order_id=order.id,
            status=order.status,
            total_amount=order.total_amount,
            message="Order accepted and is being processed."
        ).model_dump()
        return SuccessResponse(request_id=request_id, data=data)
    except ValueError as e:
        log.error(f"Value error placing order: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except HTTPException as he:
        log.error(f"HTTP error placing order: {he.detail}")
        raise he
    except Exception as e:
        log.error(f"Error placing order: {e}")
        raise HTTPException(status_code=500, detail="Server failed to place order.")


@router.get("/{order_id}", response_model=SuccessResponse)
async def get_order_endpoint(order_id: UUID):
    """Fetches details for a specific order."""
    try:
        order = await get_order_by_id(order_id)
    except Exception as e:
        log.error(f"Error fetching order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to fetch order details.")

    if not order:
        raise HTTPException(status_code=404, detail="Order not found")

    items = [
        {
            "product_id": i.product_id,
            "category_id": i.category_id,
            "quantity": i.quantity,
            "price": str(i.price)
        }
        for i in order.items
    ]
    data = OrderDetailResponse(
        id=order.id,
        customer_id=order.customer_id,
        status=order.status,
        total_amount=order.total_amount,
        items=items,
        created_at=str(order.created_at)
    ).model_dump()
    return SuccessResponse(data=data)


@router.patch("/{order_id}/status", response_model=SuccessResponse)
async def update_status_endpoint(order_id: UUID, payload: OrderStatusUpdate):
    """
    Moves the order to a new status (e.g. 'PAYMENT_COMPLETED', 'SHIPPED', 'CANCELLED').
    """
    request_id = new_request_id()
    try:
        # Pydantic ensures payload.status is a valid OrderStatus Enum value
        order = await update_order_status(order_id, payload.status, payload.reason, correlation_id=request_id)
        _wake_relay()
        data = OrderPlacementResponse(
            order_id=order.id,
            status=order.status,
            total_amount=order.total_amount,
            message=f"Order status successfully updated to {order.status.value}"
        ).model_dump()
        return SuccessResponse(request_id=request_id, data=data)
    except ValueError as e:
        log.error(f"Value error updating order status: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        log.error(f"Error updating order status: {e}")
        raise HTTPException(status_code=500, detail="Server failed to update order status.")
