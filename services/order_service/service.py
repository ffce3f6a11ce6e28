import uuid
from dataclasses import dataclass
from decimal import Decimal

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import InvalidStateTransition, NotFoundError, StorageError, ValidationError
from shared.observability.metrics import warehouse_orders_total
from .inventory_client import OutcomeKind, ResilientInventoryClient
from .models import Order, OrderItem, OrderStatus, can_transition
from .repository import OrderRepository
from .schemas import OrderCreate

logger = structlog.get_logger(__name__)

CHECK_STATUS_MESSAGE = (
    "The operation may still complete. Please check the order status before resubmitting."
)

USER_MESSAGES = {
    OutcomeKind.TIMEOUT: (
        "The inventory system is currently slow. Your order may still be processed. "
        "Please check your order status in a few minutes."
    ),
    OutcomeKind.CIRCUIT_OPEN: (
        "The inventory system is temporarily unavailable and the order has not been shipped. "
        "Please check your order status before retrying."
    ),
    OutcomeKind.UNAVAILABLE: CHECK_STATUS_MESSAGE,
    OutcomeKind.COMMITTED_BUT_UNCONFIRMED: CHECK_STATUS_MESSAGE,
}


@dataclass
class CreateResult:
    order: Order
    already_exists: bool = False


@dataclass
class ShipResult:
    success: bool
    message: str
    order: Order | None = None
    retryable: bool = False
    error: str | None = None
    kind: str | None = None
    inventory: dict | None = None


class OrderCoordinator:
    """
    Order lifecycle and the shipment handshake with the inventory ledger.

    Shipping commits `inventory_updated` and `status` in two separate
    transactions. A crash between them leaves an order whose flag proves the
    stock was deducted, which the recovery fast path and the reconciler finish
    without touching the ledger again.
    """

    def __init__(self, inventory: ResilientInventoryClient):
        self.inventory = inventory

    @staticmethod
    def _validate(data: OrderCreate):
        if not data.items:
            raise ValidationError("Order must contain at least one item")
        for item in data.items:
            if item.quantity <= 0:
                raise ValidationError(f"Quantity for {item.product_name} must be positive")
            if item.unit_price <= 0:
                raise ValidationError(f"Unit price for {item.product_name} must be positive")

    async def create_order(self, db: AsyncSession, data: OrderCreate, idempotency_key: str | None = None) -> CreateResult:
        # A replay answers with the stored order, whatever the body now says
        if idempotency_key:
            existing = await OrderRepository.get_by_idempotency_key(db, idempotency_key)
            if existing:
                logger.info("order_idempotent_replay", order_id=str(existing.id), idempotency_key=idempotency_key)
                warehouse_orders_total.labels(operation="created", status="idempotent").inc()
                return CreateResult(existing, already_exists=True)

        self._validate(data)

        total = sum((Decimal(item.quantity) * item.unit_price for item in data.items), Decimal("0"))
        order = Order(
            id=uuid.uuid4(),
            customer_name=data.customer_name,
            customer_email=data.customer_email,
            status=OrderStatus.PENDING,
            total_amount=total,
            idempotency_key=idempotency_key,
            inventory_updated=False,
            items=[
                OrderItem(
                    product_id=item.product_id,
                    product_name=item.product_name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for item in data.items
            ],
        )

        try:
            await OrderRepository.create_order(db, order)
        except IntegrityError as e:
            await db.rollback()
            # A concurrent request with the same key got there first
            if idempotency_key:
                existing = await OrderRepository.get_by_idempotency_key(db, idempotency_key)
                if existing:
                    warehouse_orders_total.labels(operation="created", status="idempotent").inc()
                    return CreateResult(existing, already_exists=True)
            warehouse_orders_total.labels(operation="created", status="error").inc()
            raise StorageError(f"Failed to create order: {e}") from e
        except SQLAlchemyError as e:
            await db.rollback()
            warehouse_orders_total.labels(operation="created", status="error").inc()
            raise StorageError(f"Failed to create order: {e}") from e

        warehouse_orders_total.labels(operation="created", status="success").inc()
        logger.info("order_created", order_id=str(order.id), total=str(total), items=len(order.items))
        return CreateResult(order)

    @staticmethod
    async def get_order(db: AsyncSession, order_id):
        return await OrderRepository.get_order(db, order_id)

    @staticmethod
    async def list_orders(db: AsyncSession, limit: int = 50, offset: int = 0):
        return await OrderRepository.list_orders(db, limit, offset)

    async def _load(self, db: AsyncSession, order_id) -> Order:
        order = await OrderRepository.get_order(db, order_id)
        if order is None:
            raise NotFoundError(f"Order not found: {order_id}")
        return order

    async def _refuse(self, db: AsyncSession, order_id, target: str):
        current = await self._load(db, order_id)
        raise InvalidStateTransition(current.status, target)

    async def complete_shipment(self, db: AsyncSession, order: Order) -> Order:
        """
        Two commits, in this order, never merged: first the flag, then the status.
        Each is conditional on the order still being open, so a cancellation that
        landed while the ledger call was in flight is never overwritten.
        """
        try:
            if not order.inventory_updated:
                await OrderRepository.mark_inventory_updated(db, order.id)
            await OrderRepository.set_status(
                db, order.id, OrderStatus.SHIPPED, OrderStatus.OPEN, inventory_updated=True
            )
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("order_commit_failed", order_id=str(order.id), error=str(e))
            raise StorageError(f"Failed to record shipment of order {order.id}: {e}") from e

        current = await self._load(db, order.id)
        if current.status != OrderStatus.SHIPPED:
            # Stock is deducted but the order moved on; verify_order_inventory reports the drift
            logger.error(
                "order_moved_during_shipment",
                order_id=str(order.id),
                status=current.status,
                inventory_updated=current.inventory_updated,
            )
            raise InvalidStateTransition(current.status, OrderStatus.SHIPPED)
        return current

    async def ship_order(self, db: AsyncSession, order_id) -> ShipResult:
        order = await self._load(db, order_id)

        if order.status == OrderStatus.SHIPPED:
            logger.info("order_already_shipped", order_id=str(order.id))
            warehouse_orders_total.labels(operation="shipped", status="already_shipped").inc()
            return ShipResult(True, "Order already shipped", order, kind="already_shipped")

        if order.inventory_updated:
            # Stock was deducted by an earlier attempt that died before its status commit
            order = await self.complete_shipment(db, order)
            logger.info("order_shipment_recovered", order_id=str(order.id))
            warehouse_orders_total.labels(operation="shipped", status="recovered").inc()
            return ShipResult(
                True,
                "Order shipping completed (recovered from partial failure)",
                order,
                kind="recovered",
            )

        if not can_transition(order.status, OrderStatus.SHIPPED):
            raise InvalidStateTransition(order.status, OrderStatus.SHIPPED)

        # Do not hold a transaction open across the remote call
        await db.commit()

        outcome = await self.inventory.deduct(order.id, order.inventory_key, order.items)

        if not outcome.success:
            warehouse_orders_total.labels(operation="shipped", status=outcome.kind.value).inc()
            if outcome.retryable:
                message = USER_MESSAGES.get(outcome.kind, CHECK_STATUS_MESSAGE)
            else:
                message = f"Unable to ship this order: {outcome.error}"
            return ShipResult(
                False,
                message,
                order,
                retryable=outcome.retryable,
                error=outcome.error,
                kind=outcome.kind.value,
            )

        order = await self.complete_shipment(db, order)
        warehouse_orders_total.labels(operation="shipped", status="success").inc()
        logger.info("order_shipped", order_id=str(order.id), already_processed=outcome.already_processed)
        return ShipResult(
            True,
            "Order shipped successfully",
            order,
            kind=outcome.kind.value,
            inventory=outcome.data,
        )

    async def confirm_order(self, db: AsyncSession, order_id) -> Order:
        order = await self._load(db, order_id)
        if not can_transition(order.status, OrderStatus.CONFIRMED):
            raise InvalidStateTransition(order.status, OrderStatus.CONFIRMED)
        if not await OrderRepository.set_status(db, order.id, OrderStatus.CONFIRMED, (OrderStatus.PENDING,)):
            await self._refuse(db, order.id, OrderStatus.CONFIRMED)
        warehouse_orders_total.labels(operation="confirmed", status="success").inc()
        return await self._load(db, order.id)

    async def cancel_order(self, db: AsyncSession, order_id) -> Order:
        order = await self._load(db, order_id)
        # Deducted stock has left the warehouse; cancelling would strand it
        if order.inventory_updated or not can_transition(order.status, OrderStatus.CANCELLED):
            raise InvalidStateTransition(order.status, OrderStatus.CANCELLED)
        cancelled = await OrderRepository.set_status(
            db, order.id, OrderStatus.CANCELLED, OrderStatus.OPEN, inventory_updated=False
        )
        if not cancelled:
            await self._refuse(db, order.id, OrderStatus.CANCELLED)
        warehouse_orders_total.labels(operation="cancelled", status="success").inc()
        logger.info("order_cancelled", order_id=str(order.id))
        return await self._load(db, order.id)
