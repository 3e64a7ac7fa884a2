from pydantic import BaseModel, Field
from typing import Any, Optional
import uuid


def new_request_id() -> str:
    """Request id returned to the client and carried as the events' correlation id."""
    return uuid.uuid4().hex


class SuccessResponse(BaseModel):
    """Envelope for successful responses: data, success flag and request_id."""
    success: bool = True
    request_id: str = Field(default_factory=new_request_id)
    data: Optional[Any] = None
