from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field


class OrderItemCreate(BaseModel):
    product_id: UUID
    product_name: str
    quantity: int
    unit_price: Decimal # Snapshot of the catalogue price at order time


class OrderCreate(BaseModel):
    customer_name: str = Field(min_length=1)
    customer_email: EmailStr | None = None
    items: list[OrderItemCreate]


class OrderItemResponse(BaseModel):
    id: UUID
    product_id: UUID
    product_name: str
    quantity: int
    unit_price: Decimal

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    id: UUID
    customer_name: str
    customer_email: str | None = None
    status: str
    total_amount: Decimal
    idempotency_key: str | None = None
    inventory_updated: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None
    items: list[OrderItemResponse] = []

    class Config:
        from_attributes = True


class TimeoutUpdate(BaseModel):
    timeout_ms: int = Field(alias="timeoutMs")

    class Config:
        populate_by_name = True
