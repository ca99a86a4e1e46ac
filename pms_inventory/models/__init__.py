"""
PMS Inventory Database Models
"""
from .property import Property, Supplier
from .stock import (
    StockCategory, StockItem, Warehouse, StockLevel, StockParLevel,
    StockBatch, StockMovement, WasteRecord
)
from .purchasing import PurchaseOrder, PurchaseOrderItem, POReceipt, POReceiptItem
from .counting import CycleCount, CycleCountItem
from .requisition import Requisition, RequisitionItem
from .audit import AuditLog

__all__ = [
    "Property",
    "Supplier",
    "StockCategory",
    "StockItem",
    "Warehouse",
    "StockLevel",
    "StockParLevel",
    "StockBatch",
    "StockMovement",
    "WasteRecord",
    "PurchaseOrder",
    "PurchaseOrderItem",
    "POReceipt",
    "POReceiptItem",
    "CycleCount",
    "CycleCountItem",
    "Requisition",
    "RequisitionItem",
    "AuditLog",
]
