import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from shared.config.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
        {"schema": "inventory_schema"},
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    stock_quantity = Column(Integer, nullable=False, default=0, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class InventoryTransaction(Base):
    """Immutable audit row. One per product per deduction batch, one per restock."""
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        # A batch shares one key across its products; the pair is the dedup point
        UniqueConstraint("idempotency_key", "product_id", name="uq_inventory_tx_key_product"),
        {"schema": "inventory_schema"},
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id = Column(Uuid, ForeignKey("inventory_schema.products.id"), nullable=False)
    order_id = Column(Uuid, nullable=True, index=True)
    idempotency_key = Column(String(255), nullable=True, index=True)
    quantity_change = Column(Integer, nullable=False)
    transaction_type = Column(String(50), nullable=False) # deduct, restock
    created_at = Column(DateTime(timezone=True), default=utcnow)
