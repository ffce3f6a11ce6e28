import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select

from shared.errors import InvalidStateTransition, NotFoundError, ValidationError
from shared.resilience import RetryPolicy
from services.inventory_service.models import InventoryTransaction
from services.order_service.inventory_client import DeductOutcome, OutcomeKind, ResilientInventoryClient
from services.order_service.models import OrderStatus
from services.order_service.repository import OrderRepository
from services.order_service.schemas import OrderCreate, OrderItemCreate
from services.order_service.service import OrderCoordinator
from conftest import GADGET_ID, WIDGET_ID, no_sleep


def order_request(quantity=5, unit_price="10.00", product_id=WIDGET_ID, name="Widget"):
    return OrderCreate(
        customer_name="Ada",
        customer_email="ada@warehouse.io",
        items=[OrderItemCreate(
            product_id=product_id,
            product_name=name,
            quantity=quantity,
            unit_price=Decimal(unit_price),
        )],
    )


async def ledger_rows(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(InventoryTransaction))
        return result.scalars().all()


class TestCreate:

    async def test_total_and_initial_state(self, db, coordinator):
        result = await coordinator.create_order(db, order_request())
        order = result.order

        assert not result.already_exists
        assert order.total_amount == Decimal("50.00")
        assert order.status == OrderStatus.PENDING
        assert order.inventory_updated is False
        assert len(order.items) == 1

    async def test_total_sums_every_line(self, db, coordinator):
        request = order_request()
        request.items.append(OrderItemCreate(
            product_id=GADGET_ID, product_name="Gadget", quantity=2, unit_price=Decimal("25.00"),
        ))
        result = await coordinator.create_order(db, request)
        assert result.order.total_amount == Decimal("100.00")

    async def test_idempotency_key_replays_the_same_order(self, db, coordinator):
        first = await coordinator.create_order(db, order_request(), idempotency_key="create-1")
        second = await coordinator.create_order(db, order_request(quantity=9), idempotency_key="create-1")

        assert second.already_exists
        assert second.order.id == first.order.id
        assert second.order.total_amount == Decimal("50.00")
        assert len(await OrderRepository.list_orders(db)) == 1

    async def test_replay_wins_over_an_invalid_body(self, db, coordinator):
        first = await coordinator.create_order(db, order_request(), idempotency_key="create-2")
        replay = await coordinator.create_order(
            db, OrderCreate(customer_name="Ada", items=[]), idempotency_key="create-2"
        )
        assert replay.already_exists
        assert replay.order.id == first.order.id

    async def test_rejects_empty_orders(self, db, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.create_order(db, OrderCreate(customer_name="Ada", items=[]))

    @pytest.mark.parametrize("quantity,price", [(0, "10.00"), (-1, "10.00"), (1, "0"), (1, "-3.50")])
    async def test_rejects_non_positive_lines(self, db, coordinator, quantity, price):
        with pytest.raises(ValidationError):
            await coordinator.create_order(db, order_request(quantity=quantity, unit_price=price))
        assert await OrderRepository.list_orders(db) == []


class TestShip:

    async def test_ship_deducts_once_and_marks_both_fields(
        self, db, coordinator, products, stock, session_factory, inventory_http
    ):
        order = (await coordinator.create_order(db, order_request())).order

        result = await coordinator.ship_order(db, order.id)

        assert result.success
        assert result.message == "Order shipped successfully"
        assert await stock(WIDGET_ID) == 5
        assert len(await ledger_rows(session_factory)) == 1
        shipped = await OrderRepository.get_order(db, order.id)
        assert shipped.status == OrderStatus.SHIPPED
        assert shipped.inventory_updated is True

        again = await coordinator.ship_order(db, order.id)

        assert again.success
        assert again.message == "Order already shipped"
        assert inventory_http.calls.deducts == 1
        assert await stock(WIDGET_ID) == 5

    async def test_flagged_order_ships_without_touching_the_ledger(
        self, db, coordinator, products, stock, inventory_http
    ):
        order = (await coordinator.create_order(db, order_request())).order
        # Simulates a crash between the two shipment commits
        await OrderRepository.mark_inventory_updated(db, order.id)

        result = await coordinator.ship_order(db, order.id)

        assert result.success
        assert result.message == "Order shipping completed (recovered from partial failure)"
        assert inventory_http.calls.paths == []
        assert await stock(WIDGET_ID) == 10
        assert (await OrderRepository.get_order(db, order.id)).status == OrderStatus.SHIPPED

    async def test_insufficient_stock_leaves_order_pending(self, db, coordinator, products, stock, inventory_http):
        order = (await coordinator.create_order(db, order_request(quantity=11))).order

        result = await coordinator.ship_order(db, order.id)

        assert not result.success
        assert not result.retryable
        assert result.kind == "rejected"
        assert "Insufficient stock" in result.error
        assert inventory_http.calls.deducts == 1
        assert await stock(WIDGET_ID) == 10
        fresh = await OrderRepository.get_order(db, order.id)
        assert fresh.status == OrderStatus.PENDING
        assert fresh.inventory_updated is False

    async def test_chaos_crash_is_absorbed_by_the_retry(
        self, db, coordinator, products, stock, faults, session_factory
    ):
        faults.chaos.enabled = True
        faults.chaos.crash_probability = 1.0
        order = (await coordinator.create_order(db, order_request())).order

        result = await coordinator.ship_order(db, order.id)

        # First attempt committed then crashed; the retry saw the replay
        assert result.success
        assert await stock(WIDGET_ID) == 5
        assert len(await ledger_rows(session_factory)) == 1
        assert faults.chaos.last_event is not None

    async def test_unconfirmed_commit_is_reported_as_retryable(
        self, db, inventory_http, products, stock, faults
    ):
        faults.chaos.enabled = True
        faults.chaos.crash_probability = 1.0
        client = ResilientInventoryClient(http=inventory_http, retry_policy=RetryPolicy(max_retries=0), sleep=no_sleep)
        coordinator = OrderCoordinator(client)
        order = (await coordinator.create_order(db, order_request())).order

        result = await coordinator.ship_order(db, order.id)

        assert not result.success
        assert result.retryable
        assert result.kind == "committed_but_unconfirmed"
        assert "check the order status" in result.message
        # Stock is gone but the order does not know it yet
        assert await stock(WIDGET_ID) == 5
        fresh = await OrderRepository.get_order(db, order.id)
        assert fresh.status == OrderStatus.PENDING
        assert fresh.inventory_updated is False

        faults.chaos.enabled = False
        retry = await coordinator.ship_order(db, order.id)
        assert retry.success
        assert await stock(WIDGET_ID) == 5

    async def test_open_circuit_fails_fast(self, db, coordinator, products, inventory_http):
        for _ in range(5):
            coordinator.inventory.breaker.record_failure()
        order = (await coordinator.create_order(db, order_request())).order

        result = await coordinator.ship_order(db, order.id)

        assert not result.success
        assert result.retryable
        assert result.kind == "circuit_open"
        assert inventory_http.calls.deducts == 0

    async def test_cancelled_order_cannot_ship(self, db, coordinator, products, inventory_http):
        order = (await coordinator.create_order(db, order_request())).order
        await coordinator.cancel_order(db, order.id)

        with pytest.raises(InvalidStateTransition):
            await coordinator.ship_order(db, order.id)
        assert inventory_http.calls.deducts == 0

    async def test_confirmed_order_ships(self, db, coordinator, products):
        order = (await coordinator.create_order(db, order_request())).order
        confirmed = await coordinator.confirm_order(db, order.id)
        assert confirmed.status == OrderStatus.CONFIRMED

        result = await coordinator.ship_order(db, order.id)
        assert result.success

    async def test_unknown_order(self, db, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.ship_order(db, uuid.uuid4())


class TestTransitions:

    async def test_cannot_cancel_after_stock_was_deducted(self, db, coordinator):
        order = (await coordinator.create_order(db, order_request())).order
        await OrderRepository.mark_inventory_updated(db, order.id)
        with pytest.raises(InvalidStateTransition):
            await coordinator.cancel_order(db, order.id)

    async def test_cannot_cancel_shipped_order(self, db, coordinator, products):
        order = (await coordinator.create_order(db, order_request())).order
        await coordinator.ship_order(db, order.id)
        with pytest.raises(InvalidStateTransition):
            await coordinator.cancel_order(db, order.id)

    async def test_cannot_confirm_twice(self, db, coordinator):
        order = (await coordinator.create_order(db, order_request())).order
        await coordinator.confirm_order(db, order.id)
        with pytest.raises(InvalidStateTransition):
            await coordinator.confirm_order(db, order.id)


class InterferingInventory:
    """Ledger stand-in that lets a second request act on the order while the deduction is in flight."""

    def __init__(self, session_factory, interfere, kind=OutcomeKind.SUCCESS):
        self.session_factory = session_factory
        self.interfere = interfere
        self.kind = kind
        self.calls = 0

    async def deduct(self, order_id, idempotency_key, items):
        self.calls += 1
        async with self.session_factory() as other:
            await self.interfere(OrderCoordinator(self), other, order_id)
        return DeductOutcome(self.kind, data={"success": True})


class TestConcurrentTransitions:

    async def test_cancel_during_deduction_is_not_overwritten(self, db, session_factory):
        async def cancel(coordinator, session, order_id):
            await coordinator.cancel_order(session, order_id)

        coordinator = OrderCoordinator(InterferingInventory(session_factory, cancel))
        order = (await coordinator.create_order(db, order_request())).order

        with pytest.raises(InvalidStateTransition):
            await coordinator.ship_order(db, order.id)

        final = await OrderRepository.get_order(db, order.id)
        assert final.status == OrderStatus.CANCELLED
        assert final.inventory_updated is False

    async def test_parallel_ship_that_finishes_first_is_accepted(self, db, session_factory):
        async def ship_elsewhere(coordinator, session, order_id):
            await coordinator.complete_shipment(session, await OrderRepository.get_order(session, order_id))

        inventory = InterferingInventory(session_factory, ship_elsewhere, kind=OutcomeKind.ALREADY_PROCESSED)
        coordinator = OrderCoordinator(inventory)
        order = (await coordinator.create_order(db, order_request())).order

        result = await coordinator.ship_order(db, order.id)

        assert result.success
        assert result.order.status == OrderStatus.SHIPPED
        assert result.order.inventory_updated is True
        assert inventory.calls == 1

    async def test_cancel_write_is_refused_once_flag_is_set(self, db, coordinator, session_factory):
        order = (await coordinator.create_order(db, order_request())).order
        async with session_factory() as other:
            await OrderRepository.mark_inventory_updated(other, order.id)

        # The in-memory order still reads unflagged; the write must not trust it
        assert order.inventory_updated is False
        cancelled = await OrderRepository.set_status(
            db, order.id, OrderStatus.CANCELLED, OrderStatus.OPEN, inventory_updated=False
        )

        assert cancelled is False
        assert (await OrderRepository.get_order(db, order.id)).status == OrderStatus.PENDING

    async def test_status_never_reaches_shipped_without_the_flag(self, db, coordinator):
        order = (await coordinator.create_order(db, order_request())).order
        shipped = await OrderRepository.set_status(
            db, order.id, OrderStatus.SHIPPED, OrderStatus.OPEN, inventory_updated=True
        )
        assert shipped is False
