from prometheus_client import Counter, Histogram, Gauge

# Order side
warehouse_orders_total = Counter(
    "warehouse_orders_total",
    "Total order operations processed",
    ["operation", "status"] # Labels: operation='created'|'shipped', status='success'|'idempotent'|'recovered'|'timeout'|...
)

warehouse_inventory_call_duration_seconds = Histogram(
    "warehouse_inventory_call_duration_seconds",
    "Duration of calls from the order service to the inventory service",
    ["outcome"],
    buckets=[0.1, 0.5, 1, 2, 3, 5, 10]
)

inventory_circuit_state = Gauge(
    "warehouse_inventory_circuit_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["breaker"]
)

warehouse_recovered_orders_total = Counter(
    "warehouse_recovered_orders_total",
    "Orders repaired by the reconciliation sweep"
)

# Inventory side
warehouse_inventory_operations_total = Counter(
    "warehouse_inventory_operations_total",
    "Total inventory ledger operations",
    ["operation", "status"] # Labels: operation='deduct'|'check'|'restock'
)

warehouse_gremlin_delays_total = Counter(
    "warehouse_gremlin_delays_total",
    "Requests delayed by the latency gremlin"
)

warehouse_chaos_events_total = Counter(
    "warehouse_chaos_events_total",
    "Simulated crashes after a committed ledger mutation"
)

warehouse_stock_level = Gauge(
    "warehouse_stock_level",
    "Current stock per product",
    ["product_id", "product_name"]
)
