from datetime import datetime
from typing import List

from pydantic import BaseModel, Field

from order_saga.models import OrderStatus


class Item(BaseModel):
    product_id: str = Field(..., min_length=1, examples=["product-A"])
    quantity: int = Field(..., gt=0, examples=[2])


class OrderCreate(BaseModel):
    user_id: str = Field(..., min_length=1, examples=["customer-123"])
    user_email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+$", examples=["customer@example.com"])
    items: List[Item] = Field(..., min_length=1)


class OrderAccepted(BaseModel):
    correlation_id: str
    message: str = "Order received and is being processed."


class OrderStatusRead(BaseModel):
    order_id: str
    status: OrderStatus
    updated_at: datetime
