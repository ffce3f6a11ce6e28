from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from .models import Product, InventoryTransaction

class ProductRepository:

    @staticmethod
    async def create_product(db: AsyncSession, product: Product):
        db.add(product)
        await db.commit()
        return product

    @staticmethod
    async def get_all_products(db: AsyncSession):
        result = await db.execute(select(Product).order_by(Product.name))
        return result.scalars().all()

    @staticmethod
    async def get_product_by_id(db: AsyncSession, product_id):
        result = await db.execute(select(Product).where(Product.id == product_id))
        return result.scalars().first()

    @staticmethod
    async def lock_products(db: AsyncSession, product_ids: list):
        """
        SELECT ... FOR UPDATE on each product, in id order so two batches that
        share products always lock them in the same sequence.
        """
        result = await db.execute(
            select(Product)
            .where(Product.id.in_(product_ids))
            .order_by(Product.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return {p.id: p for p in result.scalars().all()}

    @staticmethod
    async def count_products(db: AsyncSession) -> int:
        result = await db.execute(select(func.count()).select_from(Product))
        return result.scalar_one()


class TransactionRepository:

    @staticmethod
    async def find_deductions_by_key(db: AsyncSession, idempotency_key: str):
        result = await db.execute(
            select(InventoryTransaction)
            .where(InventoryTransaction.idempotency_key == idempotency_key)
            .where(InventoryTransaction.transaction_type == "deduct")
            .order_by(InventoryTransaction.created_at)
        )
        return result.scalars().all()

    @staticmethod
    async def get_by_order(db: AsyncSession, order_id):
        result = await db.execute(
            select(InventoryTransaction)
            .where(InventoryTransaction.order_id == order_id)
            .order_by(InventoryTransaction.created_at)
        )
        return result.scalars().all()

    @staticmethod
    def add(db: AsyncSession, transaction: InventoryTransaction):
        db.add(transaction)
        return transaction
