"""Stock Services - ledger, batches, movements and the orchestrators over them"""

from .stock_ledger import StockLedgerService
from .movement_log import MovementLogService
from .lot_tracking import LotTrackingService
from .stock_movements import StockMovementService
from .stock_transfer import StockTransferService
from .waste_tracking import WasteTrackingService
from .purchase_orders import PurchaseOrderService
from .stock_master import StockMasterService
from .menu_availability import MenuAvailabilityService
from .cycle_count import CycleCountService
from .requisitions import RequisitionService

__all__ = [
    "StockLedgerService",
    "MovementLogService",
    "LotTrackingService",
    "StockMovementService",
    "StockTransferService",
    "WasteTrackingService",
    "PurchaseOrderService",
    "StockMasterService",
    "MenuAvailabilityService",
    "CycleCountService",
    "RequisitionService",
]
