from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from shared.config.database import check_database, get_db, is_ready
from shared.errors import ChaosFault, ServiceError
from shared.security.dependencies import verify_internal_api_key
from .fault_injection import FaultInjector, get_fault_injector
from .repository import ProductRepository
from .schemas import (
    CheckRequest,
    DeductRequest,
    ProductCreate,
    ProductResponse,
    StockUpdate,
    TransactionResponse,
)
from .service import InventoryLedger

# Only the order service talks to the ledger
router = APIRouter(dependencies=[Depends(verify_internal_api_key)])
public_router = APIRouter()  # Health checks stay open to orchestrators


def get_ledger(faults: FaultInjector = Depends(get_fault_injector)) -> InventoryLedger:
    return InventoryLedger(faults)


def _to_http(e: ServiceError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


@public_router.get("/health")
async def health_check(
    db: AsyncSession = Depends(get_db),
    ledger: InventoryLedger = Depends(get_ledger),
):
    database = await check_database(db, ProductRepository.count_products, "productCount")
    healthy = is_ready(database)
    return JSONResponse(status_code=200 if healthy else 503, content={
        "service": "inventory",
        "status": "healthy" if healthy else "unhealthy",
        "database": database,
        "simulation": await ledger.status(),
    })


@public_router.get("/health/live")
async def liveness():
    return {"status": "alive"}


@public_router.get("/health/ready")
async def readiness(db: AsyncSession = Depends(get_db)):
    database = await check_database(db, ProductRepository.count_products, "productCount")
    if not is_ready(database):
        return JSONResponse(status_code=503, content={"status": "not_ready", "database": database})
    return {"status": "ready"}


@router.post("/deduct")
async def deduct_inventory(
    payload: DeductRequest,
    db: AsyncSession = Depends(get_db),
    ledger: InventoryLedger = Depends(get_ledger),
):
    key = payload.idempotency_key or str(payload.order_id)
    try:
        result = await ledger.deduct(db, payload.order_id, key, payload.items)
    except ChaosFault:
        # The stock is gone, the caller just never hears about it
        return JSONResponse(status_code=500, content={
            "success": False,
            "error": "Internal server error",
            "message": "The inventory update may have succeeded. Please verify order status.",
            "chaosEvent": True,
        })
    except ServiceError as e:
        raise _to_http(e) from e

    # 409 signals an idempotent replay; the client treats it as success
    status_code = 409 if result.already_processed else 200
    return JSONResponse(status_code=status_code, content=result.to_dict())


@router.post("/check")
async def check_availability(
    payload: CheckRequest,
    db: AsyncSession = Depends(get_db),
    ledger: InventoryLedger = Depends(get_ledger),
):
    result = await ledger.check_availability(db, payload.items)
    return {"success": True, **result}


@router.get("/products", response_model=list[ProductResponse])
async def list_products(db: AsyncSession = Depends(get_db)):
    return await InventoryLedger.list_products(db)


@router.post("/products", response_model=ProductResponse, status_code=201)
async def create_product(product: ProductCreate, db: AsyncSession = Depends(get_db)):
    return await InventoryLedger.create_product(db, product)


@router.get("/products/{product_id}", response_model=ProductResponse)
async def get_product(product_id: UUID, db: AsyncSession = Depends(get_db)):
    try:
        return await InventoryLedger.get_product(db, product_id)
    except ServiceError as e:
        raise _to_http(e) from e


@router.post("/products/{product_id}/stock", response_model=ProductResponse)
async def add_stock(
    product_id: UUID,
    payload: StockUpdate,
    db: AsyncSession = Depends(get_db),
    ledger: InventoryLedger = Depends(get_ledger),
):
    try:
        return await ledger.add_stock(db, product_id, payload.quantity)
    except ServiceError as e:
        raise _to_http(e) from e


@router.get("/transactions/order/{order_id}")
async def order_transactions(order_id: UUID, db: AsyncSession = Depends(get_db)):
    transactions = await InventoryLedger.transactions_for_order(db, order_id)
    return {
        "success": True,
        "orderId": str(order_id),
        "found": len(transactions) > 0,
        "transactions": [
            TransactionResponse.model_validate(tx).model_dump(mode="json") for tx in transactions
        ],
    }


@router.get("/status")
async def service_status(ledger: InventoryLedger = Depends(get_ledger)):
    return {"success": True, **await ledger.status()}
