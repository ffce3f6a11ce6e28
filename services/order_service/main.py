from fastapi import FastAPI
from shared.config.database import init_models
from shared.observability import setup_observability
from .router import router, config_router, public_router
from .models import Order, OrderItem # Import to register with Base
from .inventory_client import get_inventory_client

order_app = FastAPI(title="Order Service", version="1.0.0")

# --- OBSERVABILITY BOOTSTRAP ---
setup_observability(order_app, "order_service")

order_app.include_router(public_router)
order_app.include_router(config_router)
order_app.include_router(router)

@order_app.on_event("startup")
async def startup_event():
    await init_models()

@order_app.on_event("shutdown")
async def shutdown_event():
    await get_inventory_client().aclose()
