import time

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
import os
from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DB_USER = os.getenv("POSTGRES_USER", "postgres")
DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
DB_HOST = os.getenv("POSTGRES_HOST", "localhost") # In Docker, this will be 'postgres'
DB_PORT = os.getenv("POSTGRES_PORT", "5433")
DB_NAME = os.getenv("POSTGRES_DB", "warehouse")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+asyncpg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)

# Each service owns its own schema to simulate microservice isolation
SERVICE_SCHEMAS = ("order_schema", "inventory_schema")


def build_engine(url: str, **kwargs):
    """
    Creates an async engine for the given URL.
    SQLite has no schemas, so the service schema names are translated away there.
    """
    if url.startswith("sqlite"):
        kwargs.setdefault(
            "execution_options",
            {"schema_translate_map": {name: None for name in SERVICE_SCHEMAS}},
        )
    return create_async_engine(url, **kwargs)


engine = build_engine(DATABASE_URL, echo=os.getenv("SQL_ECHO", "false").lower() == "true")

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)

Base = declarative_base()


async def init_models(bind=None):
    """Creates service schemas (Postgres only) and all registered tables."""
    bind = bind or engine
    async with bind.begin() as conn:
        if conn.dialect.name == "postgresql":
            for schema in SERVICE_SCHEMAS:
                await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {schema}"))
        await conn.run_sync(Base.metadata.create_all)
    logger.info("tables_initialized", tables=sorted(Base.metadata.tables.keys()))


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session


async def check_database(db, count_rows, count_field: str) -> dict:
    """
    Readiness of one service's store: can we connect, and are its tables there.
    `count_rows` is a repository counter; its result is reported as `count_field`.
    """
    started = time.perf_counter()
    report = {"connected": False, "tablesExist": False}
    try:
        await db.execute(text("SELECT 1"))
        report["connected"] = True
        report[count_field] = await count_rows(db)
        report["tablesExist"] = True
    except SQLAlchemyError as e:
        await db.rollback()
        report["error"] = str(e)
        logger.warning("database_health_check_failed", error=str(e), connected=report["connected"])
    report["responseTimeMs"] = round((time.perf_counter() - started) * 1000)
    return report


def is_ready(report: dict) -> bool:
    return report["connected"] and report["tablesExist"]
