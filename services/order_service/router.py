from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from shared.config import settings
from shared.config.database import check_database, get_db, is_ready
from shared.errors import ServiceError
from shared.security.dependencies import verify_internal_api_key
from .inventory_client import ResilientInventoryClient, get_inventory_client
from .recovery import RecoveryReconciler
from .repository import OrderRepository
from .schemas import OrderCreate, OrderResponse, TimeoutUpdate
from .service import OrderCoordinator

# THIS PROTECTS THE ENTIRE SERVICE
router = APIRouter(dependencies=[Depends(verify_internal_api_key)])
config_router = APIRouter(prefix="/config", dependencies=[Depends(verify_internal_api_key)])
public_router = APIRouter()


def get_coordinator(inventory: ResilientInventoryClient = Depends(get_inventory_client)) -> OrderCoordinator:
    return OrderCoordinator(inventory)


def get_reconciler(coordinator: OrderCoordinator = Depends(get_coordinator)) -> RecoveryReconciler:
    return RecoveryReconciler(coordinator)


def _error_response(e: ServiceError) -> JSONResponse:
    return JSONResponse(
        status_code=e.status_code,
        content={"success": False, "error": e.message, "retryable": e.retryable},
    )


def _order_json(order) -> dict:
    return OrderResponse.model_validate(order).model_dump(mode="json")


@public_router.get("/health")
async def health_check(
    db: AsyncSession = Depends(get_db),
    inventory: ResilientInventoryClient = Depends(get_inventory_client),
):
    database = await check_database(db, OrderRepository.count_orders, "orderCount")
    healthy = is_ready(database)
    inventory_health = await inventory.check_health()
    # A degraded inventory service does not make this one unhealthy
    return JSONResponse(status_code=200 if healthy else 503, content={
        "service": "order",
        "status": "healthy" if healthy else "unhealthy",
        "database": database,
        "inventory": {**inventory_health, "status": "healthy" if inventory_health["healthy"] else "degraded"},
        "circuitBreaker": inventory.circuit_status(),
    })


@public_router.get("/health/live")
async def liveness():
    return {"status": "alive"}


@public_router.get("/health/ready")
async def readiness(db: AsyncSession = Depends(get_db)):
    database = await check_database(db, OrderRepository.count_orders, "orderCount")
    if not is_ready(database):
        return JSONResponse(status_code=503, content={"status": "not_ready", "database": database})
    return {"status": "ready"}


@router.post("/", status_code=201)
async def create_order(
    order: OrderCreate,
    db: AsyncSession = Depends(get_db),
    coordinator: OrderCoordinator = Depends(get_coordinator),
    idempotency_key: str | None = Header(default=None, alias="X-Idempotency-Key"),
):
    try:
        result = await coordinator.create_order(db, order, idempotency_key)
    except ServiceError as e:
        return _error_response(e)

    # A replay answers 200 with the original order
    return JSONResponse(
        status_code=200 if result.already_exists else 201,
        content={
            "success": True,
            "alreadyExists": result.already_exists,
            "order": _order_json(result.order),
        },
    )


@router.get("/", response_model=list[OrderResponse])
async def list_orders(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return await OrderCoordinator.list_orders(db, limit, offset)


@router.post("/recover")
async def recover_pending_orders(
    db: AsyncSession = Depends(get_db),
    reconciler: RecoveryReconciler = Depends(get_reconciler),
):
    report = await reconciler.recover_pending_orders(db)
    return {"success": True, **report.to_dict()}


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: UUID, db: AsyncSession = Depends(get_db)):
    order = await OrderCoordinator.get_order(db, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.post("/{order_id}/ship")
async def ship_order(
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    coordinator: OrderCoordinator = Depends(get_coordinator),
):
    try:
        result = await coordinator.ship_order(db, order_id)
    except ServiceError as e:
        return _error_response(e)

    if result.success:
        return {
            "success": True,
            "message": result.message,
            "order": _order_json(result.order),
            "inventory": result.inventory,
        }

    # Retryable means "state unknown, check before resubmitting"
    return JSONResponse(
        status_code=503 if result.retryable else 400,
        content={
            "success": False,
            "error": result.error,
            "message": result.message,
            "retryable": result.retryable,
            "kind": result.kind,
        },
    )


@router.post("/{order_id}/confirm")
async def confirm_order(
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    coordinator: OrderCoordinator = Depends(get_coordinator),
):
    try:
        order = await coordinator.confirm_order(db, order_id)
    except ServiceError as e:
        return _error_response(e)
    return {"success": True, "message": "Order confirmed", "order": _order_json(order)}


@router.patch("/{order_id}/cancel")
async def cancel_order(
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    coordinator: OrderCoordinator = Depends(get_coordinator),
):
    try:
        order = await coordinator.cancel_order(db, order_id)
    except ServiceError as e:
        return _error_response(e)
    return {"message": "Order cancelled", "status": order.status}


@router.get("/{order_id}/verify")
async def verify_order_inventory(
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    reconciler: RecoveryReconciler = Depends(get_reconciler),
):
    try:
        report = await reconciler.verify_order_inventory(db, order_id)
    except ServiceError as e:
        return _error_response(e)
    return {"success": True, **report.to_dict()}


@config_router.get("/timeout")
async def get_timeout(inventory: ResilientInventoryClient = Depends(get_inventory_client)):
    return {
        "timeoutMs": inventory.timeout_ms,
        "minTimeoutMs": settings.MIN_TIMEOUT_MS,
        "maxTimeoutMs": settings.MAX_TIMEOUT_MS,
    }


@config_router.post("/timeout")
async def set_timeout(
    payload: TimeoutUpdate,
    inventory: ResilientInventoryClient = Depends(get_inventory_client),
):
    try:
        timeout_ms = inventory.set_timeout(payload.timeout_ms)
    except ServiceError as e:
        return _error_response(e)
    return {"success": True, "timeoutMs": timeout_ms}


@config_router.get("/circuit-breaker")
async def circuit_breaker_status(inventory: ResilientInventoryClient = Depends(get_inventory_client)):
    return inventory.circuit_status()
