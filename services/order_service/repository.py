from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select, update
from .models import Order, OrderStatus, utcnow

class OrderRepository:
    @staticmethod
    async def create_order(db: AsyncSession, order: Order):
        db.add(order)
        await db.commit()
        return order

    # Reads always refresh: another request may have moved the order since it was cached

    @staticmethod
    async def get_order(db: AsyncSession, order_id):
        result = await db.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def get_by_idempotency_key(db: AsyncSession, idempotency_key: str):
        result = await db.execute(
            select(Order)
            .where(Order.idempotency_key == idempotency_key)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def list_orders(db: AsyncSession, limit: int = 50, offset: int = 0):
        result = await db.execute(
            select(Order)
            .order_by(Order.created_at.desc())
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    @staticmethod
    async def list_open_orders(db: AsyncSession):
        """Orders that could still be sitting in the deducted-but-not-shipped window."""
        result = await db.execute(
            select(Order)
            .where(Order.status.in_(OrderStatus.OPEN))
            .order_by(Order.created_at)
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    @staticmethod
    async def count_orders(db: AsyncSession) -> int:
        result = await db.execute(select(func.count()).select_from(Order))
        return result.scalar_one()

    # Writes are compare-and-set: the WHERE clause re-checks the state the caller
    # saw, so a concurrent transition makes the write a no-op instead of a clobber.

    @staticmethod
    async def _update_where(db: AsyncSession, order_id, values: dict, *criteria) -> bool:
        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, *criteria)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    @staticmethod
    async def mark_inventory_updated(db: AsyncSession, order_id) -> bool:
        """First of the two shipment commits. Only an open order, only false -> true."""
        return await OrderRepository._update_where(
            db,
            order_id,
            {"inventory_updated": True},
            Order.status.in_(OrderStatus.OPEN),
        )

    @staticmethod
    async def set_status(
        db: AsyncSession,
        order_id,
        status: str,
        from_statuses,
        inventory_updated: bool | None = None,
    ) -> bool:
        criteria = [Order.status.in_(from_statuses)]
        if inventory_updated is not None:
            criteria.append(Order.inventory_updated.is_(inventory_updated))
        return await OrderRepository._update_where(db, order_id, {"status": status}, *criteria)
