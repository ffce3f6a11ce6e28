import uuid
from decimal import Decimal

import httpx
import pytest

from services.inventory_service.schemas import StockLine
from services.order_service.inventory_client import ResilientInventoryClient
from services.order_service.models import OrderStatus
from services.order_service.recovery import RecoveryReconciler, matching_deductions
from services.order_service.repository import OrderRepository
from services.order_service.schemas import OrderCreate, OrderItemCreate
from services.order_service.service import OrderCoordinator
from shared.errors import NotFoundError
from conftest import WIDGET_ID, no_sleep


def order_request(quantity=5):
    return OrderCreate(
        customer_name="Grace",
        items=[OrderItemCreate(
            product_id=WIDGET_ID, product_name="Widget", quantity=quantity, unit_price=Decimal("10.00"),
        )],
    )


@pytest.fixture
def reconciler(coordinator):
    return RecoveryReconciler(coordinator)


async def deduct_behind_the_orders_back(session_factory, ledger, order):
    """Stock leaves the warehouse but the order never hears about it."""
    async with session_factory() as session:
        await ledger.deduct(session, order.id, order.inventory_key, [StockLine(product_id=WIDGET_ID, quantity=5)])


class TestRecoverPendingOrders:

    async def test_repairs_an_order_stuck_in_the_window(
        self, db, coordinator, reconciler, ledger, products, stock, session_factory
    ):
        order = (await coordinator.create_order(db, order_request(), idempotency_key="ship-me")).order
        await deduct_behind_the_orders_back(session_factory, ledger, order)

        report = await reconciler.recover_pending_orders(db)

        assert report.scanned == 1
        assert report.fixed == 1
        assert report.fixed_order_ids == [str(order.id)]
        fixed = await OrderRepository.get_order(db, order.id)
        assert fixed.status == OrderStatus.SHIPPED
        assert fixed.inventory_updated is True
        assert await stock(WIDGET_ID) == 5

    async def test_leaves_orders_without_a_ledger_record(self, db, coordinator, reconciler, products):
        order = (await coordinator.create_order(db, order_request())).order

        report = await reconciler.recover_pending_orders(db)

        assert report.untouched == 1
        assert report.fixed == 0
        assert (await OrderRepository.get_order(db, order.id)).status == OrderStatus.PENDING

    async def test_flagged_order_is_finished_without_a_lookup(
        self, db, coordinator, reconciler, products, inventory_http
    ):
        order = (await coordinator.create_order(db, order_request())).order
        await OrderRepository.mark_inventory_updated(db, order.id)

        report = await reconciler.recover_pending_orders(db)

        assert report.fixed == 1
        assert inventory_http.calls.paths == []
        assert (await OrderRepository.get_order(db, order.id)).status == OrderStatus.SHIPPED

    async def test_shipped_and_cancelled_orders_are_not_scanned(self, db, coordinator, reconciler, products):
        shipped = (await coordinator.create_order(db, order_request())).order
        await coordinator.ship_order(db, shipped.id)
        cancelled = (await coordinator.create_order(db, order_request())).order
        await coordinator.cancel_order(db, cancelled.id)

        report = await reconciler.recover_pending_orders(db)

        assert report.scanned == 0

    async def test_lookup_failure_counts_as_failed(self, db, products):
        http = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503, json={})),
            base_url="http://inventory",
        )
        coordinator = OrderCoordinator(ResilientInventoryClient(http=http, sleep=no_sleep))
        reconciler = RecoveryReconciler(coordinator)
        order = (await coordinator.create_order(db, order_request())).order

        report = await reconciler.recover_pending_orders(db)

        assert report.failed == 1
        assert report.failed_order_ids == [str(order.id)]
        assert (await OrderRepository.get_order(db, order.id)).status == OrderStatus.PENDING


class TestVerifyOrderInventory:

    async def test_fresh_order_is_consistent(self, db, coordinator, reconciler, products):
        order = (await coordinator.create_order(db, order_request())).order
        report = await reconciler.verify_order_inventory(db, order.id)
        assert report.drift == "none"
        assert report.consistent

    async def test_detects_and_clears_ledger_only_drift(
        self, db, coordinator, reconciler, ledger, products, session_factory
    ):
        order = (await coordinator.create_order(db, order_request())).order
        await deduct_behind_the_orders_back(session_factory, ledger, order)

        before = await reconciler.verify_order_inventory(db, order.id)
        assert before.drift == "ledger_only"
        assert len(before.transactions) == 1

        await reconciler.recover_pending_orders(db)

        after = await reconciler.verify_order_inventory(db, order.id)
        assert after.drift == "none"

    async def test_detects_order_only_drift(self, db, coordinator, reconciler, products):
        order = (await coordinator.create_order(db, order_request())).order
        await OrderRepository.mark_inventory_updated(db, order.id)

        report = await reconciler.verify_order_inventory(db, order.id)

        assert report.drift == "order_only"
        assert report.to_dict()["consistent"] is False

    async def test_unknown_order(self, db, reconciler):
        with pytest.raises(NotFoundError):
            await reconciler.verify_order_inventory(db, uuid.uuid4())


def test_only_deductions_with_the_orders_key_match():
    class Stub:
        inventory_key = "key-1"

    transactions = [
        {"idempotency_key": "key-1", "transaction_type": "deduct"},
        {"idempotency_key": "key-2", "transaction_type": "deduct"},
        {"idempotency_key": None, "transaction_type": "restock"},
    ]
    assert matching_deductions(Stub(), transactions) == transactions[:1]
