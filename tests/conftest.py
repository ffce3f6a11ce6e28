"""
Shared fixtures. Environment is pinned before any service module is imported:
settings and the API key are read at import time.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ["TRACING_ENABLED"] = "false"
os.environ["METRICS_ENABLED"] = "false"
os.environ["SEED_SAMPLE_PRODUCTS"] = "false"
os.environ["GREMLIN_ENABLED"] = "false"
os.environ["CHAOS_ENABLED"] = "false"
os.environ["REDIS_URL"] = ""

import uuid
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from shared.config.database import build_engine, get_db, init_models
from shared.resilience import RetryPolicy
from shared.security import internal_headers
from services.inventory_service.fault_injection import FaultInjector, get_fault_injector
from services.inventory_service.main import inventory_app
from services.inventory_service.models import Product
from services.inventory_service.service import InventoryLedger
from services.order_service.inventory_client import ResilientInventoryClient
from services.order_service.models import Order, OrderItem  # noqa: F401
from services.order_service.service import OrderCoordinator

WIDGET_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
GADGET_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")


async def no_sleep(_seconds):
    return None


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'warehouse.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def products(session_factory):
    """Widget: 10 in stock at 10.00. Gadget: 3 in stock at 25.00."""
    async with session_factory() as session:
        session.add_all([
            Product(id=WIDGET_ID, name="Widget", price=Decimal("10.00"), stock_quantity=10),
            Product(id=GADGET_ID, name="Gadget", price=Decimal("25.00"), stock_quantity=3),
        ])
        await session.commit()
    return {"widget": WIDGET_ID, "gadget": GADGET_ID}


async def stock_of(session_factory, product_id) -> int:
    async with session_factory() as session:
        product = await session.get(Product, product_id)
        return product.stock_quantity


@pytest.fixture
def stock(session_factory):
    async def read(product_id):
        return await stock_of(session_factory, product_id)
    return read


@pytest.fixture
def faults():
    return FaultInjector.disabled()


@pytest.fixture
def ledger(faults):
    return InventoryLedger(faults)


class CallCounter:
    """Counts requests that actually reach the inventory app."""

    def __init__(self):
        self.paths = []

    def __call__(self, request):
        self.paths.append(request.url.path)

    @property
    def deducts(self) -> int:
        return sum(1 for p in self.paths if p.endswith("/deduct"))


@pytest.fixture
async def inventory_http(session_factory, faults):
    """HTTP client wired straight into the inventory app, sharing the test database."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    inventory_app.dependency_overrides[get_db] = override_get_db
    inventory_app.dependency_overrides[get_fault_injector] = lambda: faults

    calls = CallCounter()

    async def record(request):
        calls(request)

    client = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=inventory_app),
        base_url="http://inventory",
        headers=internal_headers(),
        event_hooks={"request": [record]},
    )
    client.calls = calls
    yield client
    await client.aclose()
    inventory_app.dependency_overrides.clear()


@pytest.fixture
def inventory_client(inventory_http):
    return ResilientInventoryClient(
        http=inventory_http,
        timeout_ms=5000,
        retry_policy=RetryPolicy(),
        sleep=no_sleep,
    )


@pytest.fixture
def coordinator(inventory_client):
    return OrderCoordinator(inventory_client)
