"""
Main API Router - Consolidates all module routes
"""

from fastapi import APIRouter
from pms_inventory.api.v1 import stock
from pms_inventory.schemas.common import ERROR_RESPONSES

api_router = APIRouter(responses=ERROR_RESPONSES)

# Master data
api_router.include_router(stock.items.router, prefix="/stock/items", tags=["stock-items"])
api_router.include_router(stock.warehouses.router, prefix="/stock/warehouses", tags=["warehouses"])

# Lot tracking and movements
api_router.include_router(stock.batches.router, prefix="/stock/batches", tags=["stock-batches"])
api_router.include_router(stock.movements.router, prefix="/stock/movements", tags=["stock-movements"])
api_router.include_router(stock.transfers.router, prefix="/stock/transfers", tags=["stock-transfers"])
api_router.include_router(stock.waste.router, prefix="/stock/waste", tags=["waste"])

# Purchasing
api_router.include_router(stock.purchase_orders.router, prefix="/purchase-orders", tags=["purchase-orders"])

# Alerts
api_router.include_router(stock.alerts.router, prefix="/stock/alerts", tags=["stock-alerts"])

# Counting and internal requests
api_router.include_router(stock.cycle_counts.router, prefix="/stock/cycle-counts", tags=["cycle-counts"])
api_router.include_router(stock.requisitions.router, prefix="/stock/requisitions", tags=["requisitions"])
