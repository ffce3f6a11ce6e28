import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Inventory client (order side)
INVENTORY_URL = os.getenv("INVENTORY_URL", "http://localhost:8000/inventory")
REQUEST_TIMEOUT_MS = int(os.getenv("REQUEST_TIMEOUT_MS", "3000"))
MIN_TIMEOUT_MS = 1000
MAX_TIMEOUT_MS = 30000

# Gremlin latency (inventory side)
GREMLIN_ENABLED = _flag("GREMLIN_ENABLED")
GREMLIN_EVERY_NTH_REQUEST = int(os.getenv("GREMLIN_EVERY_NTH_REQUEST", "5"))
GREMLIN_DELAY_MS = int(os.getenv("GREMLIN_DELAY_MS", "5000"))

# Chaos crash-after-commit (inventory side)
CHAOS_ENABLED = _flag("CHAOS_ENABLED")
CHAOS_CRASH_PROBABILITY = float(os.getenv("CHAOS_CRASH_PROBABILITY", "0.1"))

# Shared counter store. Empty means process-local counters.
REDIS_URL = os.getenv("REDIS_URL", "")

SEED_SAMPLE_PRODUCTS = _flag("SEED_SAMPLE_PRODUCTS", "true")

# Observability switches
TRACING_ENABLED = _flag("TRACING_ENABLED", "true")
METRICS_ENABLED = _flag("METRICS_ENABLED", "true")
OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
