"""Stock accounting API endpoints"""

from . import (
    items,
    warehouses,
    batches,
    movements,
    transfers,
    waste,
    purchase_orders,
    alerts,
    cycle_counts,
    requisitions,
)

__all__ = [
    "items",
    "warehouses",
    "batches",
    "movements",
    "transfers",
    "waste",
    "purchase_orders",
    "alerts",
    "cycle_counts",
    "requisitions",
]
