import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import ChaosFault, InsufficientStock, NotFoundError, ServiceError, StorageError, ValidationError
from shared.observability.metrics import warehouse_inventory_operations_total, warehouse_stock_level
from .fault_injection import FaultInjector
from .models import InventoryTransaction, Product
from .repository import ProductRepository, TransactionRepository
from .schemas import ProductCreate

logger = structlog.get_logger(__name__)

SAMPLE_PRODUCTS = [
    ("11111111-1111-1111-1111-111111111111", "Gaming Console X", "499.99", 100),
    ("22222222-2222-2222-2222-222222222222", "Wireless Controller", "59.99", 250),
    ("33333333-3333-3333-3333-333333333333", "VR Headset Pro", "399.99", 50),
    ("44444444-4444-4444-4444-444444444444", "4K Gaming Monitor", "699.99", 75),
    ("55555555-5555-5555-5555-555555555555", "Gaming Keyboard RGB", "149.99", 200),
    ("66666666-6666-6666-6666-666666666666", "Gaming Mouse Elite", "89.99", 300),
    ("77777777-7777-7777-7777-777777777777", "Headset 7.1 Surround", "129.99", 150),
    ("88888888-8888-8888-8888-888888888888", "Gaming Chair Pro", "299.99", 40),
]


@dataclass
class DeductionResult:
    order_id: object
    idempotency_key: str
    already_processed: bool = False
    items: list = field(default_factory=list)
    transaction_ids: list = field(default_factory=list)
    gremlin_applied: bool = False
    gremlin_delay_ms: int = 0

    @property
    def message(self) -> str:
        if self.already_processed:
            return "Inventory already deducted for this order"
        return "Inventory deducted successfully"

    def to_dict(self) -> dict:
        return {
            "success": True,
            "alreadyProcessed": self.already_processed,
            "message": self.message,
            "orderId": str(self.order_id),
            "idempotencyKey": self.idempotency_key,
            "items": self.items,
            "transactionIds": [str(t) for t in self.transaction_ids],
            "gremlinApplied": self.gremlin_applied,
            "gremlinDelayMs": self.gremlin_delay_ms,
        }


def _merge_lines(items) -> "OrderedDict":
    """Collapses repeated products into one line so each product is locked and audited once."""
    merged = OrderedDict()
    for item in items:
        if item.quantity <= 0:
            raise ValidationError(f"Quantity for product {item.product_id} must be positive")
        merged[item.product_id] = merged.get(item.product_id, 0) + item.quantity
    return merged


class InventoryLedger:
    """
    Source of truth for whether a deduction really happened.

    Stock mutations are idempotent per key, all-or-nothing per batch, and audited
    in inventory_transactions.
    """

    def __init__(self, faults: FaultInjector):
        self.faults = faults

    async def deduct(self, db: AsyncSession, order_id, idempotency_key: str, items) -> DeductionResult:
        if not items:
            raise ValidationError("At least one item is required")
        quantities = _merge_lines(items)

        gremlin = await self.faults.gremlin.apply()

        try:
            existing = await TransactionRepository.find_deductions_by_key(db, idempotency_key)
            if existing:
                await db.commit()
                logger.info("deduct_idempotent_replay", order_id=str(order_id), idempotency_key=idempotency_key)
                warehouse_inventory_operations_total.labels(operation="deduct", status="idempotent").inc()
                return self._replay(order_id, idempotency_key, existing, gremlin)

            products = await ProductRepository.lock_products(db, list(quantities))

            # Verify every line before touching any stock
            for product_id, quantity in quantities.items():
                product = products.get(product_id)
                if product is None:
                    raise NotFoundError(f"Product not found: {product_id}")
                if product.stock_quantity < quantity:
                    raise InsufficientStock(product_id, product.name, product.stock_quantity, quantity)

            lines, transaction_ids = [], []
            for product_id, quantity in quantities.items():
                product = products[product_id]
                previous = product.stock_quantity
                product.stock_quantity = previous - quantity
                tx = TransactionRepository.add(db, InventoryTransaction(
                    id=uuid.uuid4(),
                    product_id=product_id,
                    order_id=order_id,
                    idempotency_key=idempotency_key,
                    quantity_change=-quantity,
                    transaction_type="deduct",
                ))
                lines.append({
                    "productId": str(product_id),
                    "productName": product.name,
                    "previousStock": previous,
                    "newStock": product.stock_quantity,
                    "deducted": quantity,
                })
                transaction_ids.append(tx.id)

            await db.commit()
        except IntegrityError:
            # Lost the race against a concurrent duplicate: the winner's rows are the answer
            await db.rollback()
            existing = await TransactionRepository.find_deductions_by_key(db, idempotency_key)
            if not existing:
                warehouse_inventory_operations_total.labels(operation="deduct", status="error").inc()
                raise StorageError(f"Integrity failure deducting inventory for order {order_id}")
            await db.commit()
            logger.info("deduct_race_lost", order_id=str(order_id), idempotency_key=idempotency_key)
            warehouse_inventory_operations_total.labels(operation="deduct", status="idempotent").inc()
            return self._replay(order_id, idempotency_key, existing, gremlin)
        except ServiceError as e:
            await db.rollback()
            warehouse_inventory_operations_total.labels(operation="deduct", status="rejected").inc()
            logger.info("deduct_rejected", order_id=str(order_id), reason=e.message)
            raise
        except SQLAlchemyError as e:
            await db.rollback()
            warehouse_inventory_operations_total.labels(operation="deduct", status="error").inc()
            logger.error("deduct_failed", order_id=str(order_id), error=str(e))
            raise StorageError(f"Failed to deduct inventory: {e}") from e

        logger.info("stock_deducted", order_id=str(order_id), idempotency_key=idempotency_key, lines=len(lines))
        for line in lines:
            warehouse_stock_level.labels(product_id=line["productId"], product_name=line["productName"]).set(line["newStock"])

        # Committed. From here on a failure cannot undo the deduction.
        try:
            await self.faults.chaos.after_commit(f"inventory deduction for order {order_id}")
        except ChaosFault:
            warehouse_inventory_operations_total.labels(operation="deduct", status="chaos_crash").inc()
            raise

        warehouse_inventory_operations_total.labels(operation="deduct", status="success").inc()
        return DeductionResult(
            order_id=order_id,
            idempotency_key=idempotency_key,
            items=lines,
            transaction_ids=transaction_ids,
            gremlin_applied=gremlin.delayed,
            gremlin_delay_ms=gremlin.delay_ms,
        )

    @staticmethod
    def _replay(order_id, idempotency_key, existing, gremlin) -> DeductionResult:
        return DeductionResult(
            order_id=order_id,
            idempotency_key=idempotency_key,
            already_processed=True,
            items=[
                {"productId": str(tx.product_id), "deducted": -tx.quantity_change}
                for tx in existing
            ],
            transaction_ids=[tx.id for tx in existing],
            gremlin_applied=gremlin.delayed,
            gremlin_delay_ms=gremlin.delay_ms,
        )

    async def check_availability(self, db: AsyncSession, items) -> dict:
        """Read-only. No locks, no idempotency."""
        gremlin = await self.faults.gremlin.apply()

        results = []
        all_available = True
        for item in items:
            product = await ProductRepository.get_product_by_id(db, item.product_id)
            if product is None:
                results.append({
                    "productId": str(item.product_id),
                    "available": False,
                    "reason": "Product not found",
                })
                all_available = False
                continue

            available = product.stock_quantity >= item.quantity
            results.append({
                "productId": str(product.id),
                "productName": product.name,
                "requested": item.quantity,
                "inStock": product.stock_quantity,
                "available": available,
            })
            all_available = all_available and available

        warehouse_inventory_operations_total.labels(operation="check", status="success").inc()
        return {"available": all_available, "items": results, "gremlinApplied": gremlin.delayed}

    async def add_stock(self, db: AsyncSession, product_id, quantity: int) -> Product:
        if quantity <= 0:
            raise ValidationError("Positive quantity is required")

        try:
            products = await ProductRepository.lock_products(db, [product_id])
            product = products.get(product_id)
            if product is None:
                raise NotFoundError(f"Product not found: {product_id}")

            product.stock_quantity += quantity
            TransactionRepository.add(db, InventoryTransaction(
                product_id=product_id,
                quantity_change=quantity,
                transaction_type="restock",
            ))
            await db.commit()
        except ServiceError:
            await db.rollback()
            warehouse_inventory_operations_total.labels(operation="restock", status="error").inc()
            raise
        except SQLAlchemyError as e:
            await db.rollback()
            warehouse_inventory_operations_total.labels(operation="restock", status="error").inc()
            raise StorageError(f"Failed to add stock: {e}") from e

        warehouse_inventory_operations_total.labels(operation="restock", status="success").inc()
        warehouse_stock_level.labels(product_id=str(product.id), product_name=product.name).set(product.stock_quantity)
        logger.info("stock_added", product_id=str(product_id), quantity=quantity, stock=product.stock_quantity)
        return product

    @staticmethod
    async def create_product(db: AsyncSession, data: ProductCreate) -> Product:
        product = Product(
            name=data.name,
            description=data.description,
            price=data.price,
            stock_quantity=data.stock_quantity,
        )
        if data.id is not None:
            product.id = data.id
        return await ProductRepository.create_product(db, product)

    @staticmethod
    async def list_products(db: AsyncSession):
        return await ProductRepository.get_all_products(db)

    @staticmethod
    async def get_product(db: AsyncSession, product_id) -> Product:
        product = await ProductRepository.get_product_by_id(db, product_id)
        if product is None:
            raise NotFoundError(f"Product not found: {product_id}")
        return product

    @staticmethod
    async def transactions_for_order(db: AsyncSession, order_id):
        return await TransactionRepository.get_by_order(db, order_id)

    async def status(self) -> dict:
        return await self.faults.status()


async def seed_sample_products(db: AsyncSession) -> int:
    """Inserts the demo catalogue when the product table is empty."""
    if await ProductRepository.count_products(db) > 0:
        return 0
    for product_id, name, price, stock in SAMPLE_PRODUCTS:
        db.add(Product(
            id=uuid.UUID(product_id),
            name=name,
            description=f"High quality {name}",
            price=Decimal(price),
            stock_quantity=stock,
        ))
    await db.commit()
    logger.info("sample_products_seeded", count=len(SAMPLE_PRODUCTS))
    return len(SAMPLE_PRODUCTS)
