from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field


class StockLine(BaseModel):
    product_id: UUID = Field(alias="productId")
    quantity: int = Field(gt=0)

    class Config:
        populate_by_name = True


class DeductRequest(BaseModel):
    order_id: UUID = Field(alias="orderId")
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey")
    items: list[StockLine] = Field(min_length=1)

    class Config:
        populate_by_name = True


class CheckRequest(BaseModel):
    items: list[StockLine] = Field(min_length=1)


class StockUpdate(BaseModel):
    quantity: int = Field(gt=0)


class ProductCreate(BaseModel):
    name: str
    description: str | None = None
    price: Decimal = Field(gt=0)
    stock_quantity: int = Field(default=0, ge=0)
    id: UUID | None = None


class ProductResponse(BaseModel):
    id: UUID
    name: str
    description: str | None = None
    price: Decimal
    stock_quantity: int

    class Config:
        from_attributes = True


class TransactionResponse(BaseModel):
    id: UUID
    product_id: UUID
    order_id: UUID | None = None
    idempotency_key: str | None = None
    quantity_change: int
    transaction_type: str
    created_at: datetime | None = None

    class Config:
        from_attributes = True
