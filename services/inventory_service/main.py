from fastapi import FastAPI
import structlog
from shared.config import settings
from shared.config.database import AsyncSessionLocal, init_models
from shared.observability import setup_observability
from .router import router, public_router
from .models import Product, InventoryTransaction # Import to register with Base
from .fault_injection import get_fault_injector
from .service import seed_sample_products

logger = structlog.get_logger(__name__)

inventory_app = FastAPI(
    title="Inventory Service",
    version="1.0.0"
)

# --- OBSERVABILITY BOOTSTRAP ---
setup_observability(inventory_app, "inventory_service")

inventory_app.include_router(public_router)
inventory_app.include_router(router)

@inventory_app.on_event("startup")
async def startup_event():
    await init_models()
    if settings.SEED_SAMPLE_PRODUCTS:
        async with AsyncSessionLocal() as db:
            await seed_sample_products(db)

    faults = get_fault_injector()
    logger.info(
        "inventory_service_started",
        gremlin_enabled=faults.gremlin.enabled,
        chaos_enabled=faults.chaos.enabled,
    )

@inventory_app.on_event("shutdown")
async def shutdown_event():
    await get_fault_injector().close()
