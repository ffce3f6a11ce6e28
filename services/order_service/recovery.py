"""
Reconciliation between the order ledger and the inventory ledger.

A shipment writes to two stores that share no transaction. If the process
dies after the inventory commit but before the order commits, stock is gone
while the order still reads pending. The inventory audit trail is the
authority on whether the deduction happened.
"""
from dataclasses import dataclass, field

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import NotFoundError, ServiceError
from shared.observability.metrics import warehouse_recovered_orders_total
from .models import Order
from .repository import OrderRepository
from .service import OrderCoordinator

logger = structlog.get_logger(__name__)


@dataclass
class RecoveryReport:
    scanned: int = 0
    fixed: int = 0
    failed: int = 0
    untouched: int = 0
    fixed_order_ids: list[str] = field(default_factory=list)
    failed_order_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "fixed": self.fixed,
            "failed": self.failed,
            "untouched": self.untouched,
            "fixedOrderIds": self.fixed_order_ids,
            "failedOrderIds": self.failed_order_ids,
        }


@dataclass
class DriftReport:
    order_id: str
    status: str
    inventory_updated: bool
    ledger_recorded: bool
    transactions: list[dict] = field(default_factory=list)

    @property
    def drift(self) -> str:
        if self.inventory_updated == self.ledger_recorded:
            return "none"
        # Deducted but never acknowledged: recover_pending_orders will fix it
        if self.ledger_recorded:
            return "ledger_only"
        return "order_only"

    @property
    def consistent(self) -> bool:
        return self.drift == "none"

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "status": self.status,
            "inventoryUpdated": self.inventory_updated,
            "ledgerRecorded": self.ledger_recorded,
            "consistent": self.consistent,
            "drift": self.drift,
            "transactions": self.transactions,
        }


def matching_deductions(order: Order, transactions: list[dict]) -> list[dict]:
    key = order.inventory_key
    return [
        tx for tx in transactions
        if tx.get("transaction_type") == "deduct" and tx.get("idempotency_key") == key
    ]


class RecoveryReconciler:
    def __init__(self, coordinator: OrderCoordinator):
        self.coordinator = coordinator

    @property
    def inventory(self):
        return self.coordinator.inventory

    async def _recover_one(self, db: AsyncSession, order: Order) -> bool:
        if order.inventory_updated:
            # The flag alone proves the deduction; no need to ask the ledger
            await self.coordinator.complete_shipment(db, order)
            return True

        transactions = await self.inventory.transactions_for_order(order.id)
        if not matching_deductions(order, transactions):
            return False

        await self.coordinator.complete_shipment(db, order)
        return True

    async def recover_pending_orders(self, db: AsyncSession) -> RecoveryReport:
        orders = await OrderRepository.list_open_orders(db)
        await db.commit()

        report = RecoveryReport(scanned=len(orders))
        logger.info("recovery_started", open_orders=len(orders))

        for order in orders:
            order_id = str(order.id)
            try:
                recovered = await self._recover_one(db, order)
            except ServiceError as e:
                # One unreachable lookup must not abort the sweep
                report.failed += 1
                report.failed_order_ids.append(order_id)
                logger.warning("recovery_order_failed", order_id=order_id, error=e.message)
                continue

            if recovered:
                report.fixed += 1
                report.fixed_order_ids.append(order_id)
                warehouse_recovered_orders_total.inc()
                logger.info("recovery_order_fixed", order_id=order_id)
            else:
                report.untouched += 1

        logger.info(
            "recovery_finished",
            scanned=report.scanned,
            fixed=report.fixed,
            failed=report.failed,
            untouched=report.untouched,
        )
        return report

    async def verify_order_inventory(self, db: AsyncSession, order_id) -> DriftReport:
        order = await OrderRepository.get_order(db, order_id)
        if order is None:
            raise NotFoundError(f"Order not found: {order_id}")
        await db.commit()

        transactions = await self.inventory.transactions_for_order(order.id)
        matches = matching_deductions(order, transactions)
        report = DriftReport(
            order_id=str(order.id),
            status=order.status,
            inventory_updated=order.inventory_updated,
            ledger_recorded=bool(matches),
            transactions=matches,
        )
        if not report.consistent:
            logger.warning("order_inventory_drift", order_id=report.order_id, drift=report.drift)
        return report
