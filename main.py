from fastapi import FastAPI
import structlog
from shared.config import settings
from shared.config.database import AsyncSessionLocal, init_models

# IMPORTANT: import models so they register with Base
from services.inventory_service import models as inventory_models
from services.order_service import models as order_models

from services.inventory_service.main import inventory_app
from services.inventory_service.fault_injection import get_fault_injector
from services.inventory_service.service import seed_sample_products
from services.order_service.main import order_app
from services.order_service.inventory_client import get_inventory_client

logger = structlog.get_logger(__name__)

app = FastAPI(title="Warehouse Cluster")

# Mounted apps do not receive lifespan events, so the cluster runs them here
@app.on_event("startup")
async def startup_event():
    await init_models()
    if settings.SEED_SAMPLE_PRODUCTS:
        async with AsyncSessionLocal() as db:
            await seed_sample_products(db)
    logger.info("warehouse_cluster_started", inventory_url=settings.INVENTORY_URL)

@app.on_event("shutdown")
async def shutdown_event():
    await get_inventory_client().aclose()
    await get_fault_injector().close()

app.mount("/orders", order_app)
app.mount("/inventory", inventory_app)
