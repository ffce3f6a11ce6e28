from .setup import setup_observability
from .metrics import (
    warehouse_orders_total,
    warehouse_inventory_call_duration_seconds,
    inventory_circuit_state,
    warehouse_recovered_orders_total,
    warehouse_inventory_operations_total,
    warehouse_gremlin_delays_total,
    warehouse_chaos_events_total,
    warehouse_stock_level
)
