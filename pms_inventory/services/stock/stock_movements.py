"""
Stock Movement Service
Consumption, cycle-count adjustment and supplier returns
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pms_inventory.core.exceptions import NotFoundError, ValidationError
from pms_inventory.core.precision import ZERO, to_decimal, round_quantity, round_money
from pms_inventory.models.property import Supplier
from pms_inventory.models.stock import StockMovement
from pms_inventory.schemas.stock import MovementType, ReferenceType
from .base import InventoryService, ServiceResult, require_positive_quantity, require_reason
from .lot_tracking import LotTrackingService
from .movement_log import record_movement
from .stock_ledger import StockLedgerService

logger = logging.getLogger(__name__)


class StockMovementService(InventoryService):
    """
    Outflow and adjustment orchestrators

    Outflows pick their source the same way: a pinned batch, else FEFO
    when the pair holds live batches, else the ledger at average cost.
    """

    def __init__(self, db, actor_id: Optional[str] = None):
        super().__init__(db, actor_id)
        self.ledger = StockLedgerService(db, actor_id)
        self.lots = LotTrackingService(db, actor_id)

    def _draw(self, item_id: int, warehouse_id: int, quantity: Decimal,
              movement_type: MovementType, batch_id: Any = None,
              reference_type: Optional[str] = None, reference_id: Any = None,
              reason: Optional[str] = None) -> List[StockMovement]:
        if batch_id:
            batch = self._get_batch(batch_id, lock=True)
            if batch.stock_item_id != item_id or batch.warehouse_id != warehouse_id:
                raise ValidationError("Batch does not belong to this item and warehouse")
            return [self.lots.draw_from_batch(
                batch, quantity, movement_type,
                reference_type=reference_type, reference_id=reference_id, reason=reason
            )]

        if self.lots.has_available_batches(item_id, warehouse_id):
            _, movements = self.lots.draw_fefo(
                item_id, warehouse_id, quantity, movement_type,
                reference_type=reference_type, reference_id=reference_id, reason=reason
            )
            return movements

        self.lots.check_unexpired_ledger_quantity(item_id, warehouse_id, quantity)
        level = self.ledger.decrease_on_outflow(item_id, warehouse_id, quantity)
        return [record_movement(
            self.db, item_id, movement_type, quantity, level.average_cost, self.actor_id,
            source_warehouse_id=warehouse_id,
            reference_type=reference_type,
            reference_id=reference_id,
            reason=reason,
        )]

    @staticmethod
    def _summarise(item_id: int, warehouse_id: int, quantity: Decimal,
                   movements: List[StockMovement]) -> Dict:
        return {
            'stock_item_id': item_id,
            'warehouse_id': warehouse_id,
            'quantity': quantity,
            'total_cost': round_money(sum((to_decimal(m.total_cost) for m in movements), ZERO)),
            'movements': [{
                'id': m.id,
                'batch_id': m.batch_id,
                'quantity': to_decimal(m.quantity),
                'unit_cost': to_decimal(m.unit_cost),
                'total_cost': to_decimal(m.total_cost),
            } for m in movements],
        }

    def consume_stock(self, consume_data: Dict) -> ServiceResult:
        """
        Record consumption (kitchen usage, housekeeping issue, POS sale)
        Returns (success, consumption summary or error)
        """
        try:
            item = self._get_item(consume_data.get('stock_item_id'))
            warehouse = self._get_warehouse(consume_data.get('warehouse_id'))
            quantity = require_positive_quantity(consume_data.get('quantity'))

            movements = self._draw(
                item.id, warehouse.id, quantity, MovementType.CONSUMPTION,
                batch_id=consume_data.get('batch_id'),
                reference_type=consume_data.get('reference_type'),
                reference_id=consume_data.get('reference_id'),
                reason=consume_data.get('reason'),
            )
            result = self._summarise(item.id, warehouse.id, quantity, movements)
            self._audit("CONSUME_STOCK", "stock_movements", movements[0].id, {
                'stock_item_id': item.id,
                'warehouse_id': warehouse.id,
                'quantity': quantity,
                'total_cost': result['total_cost'],
            })

            self.db.commit()
            logger.info(f"Consumed {quantity} of item {item.id} from warehouse {warehouse.id}")
            return True, result

        except Exception as e:
            return self._handle_error("consume stock", e)

    def adjust_stock(self, adjust_data: Dict) -> ServiceResult:
        """
        Set the ledger quantity after a cycle count
        Returns (success, adjustment data or error)
        """
        try:
            reason = require_reason(adjust_data.get('reason'),
                                    "Reason is required for stock adjustments")
            item = self._get_item(adjust_data.get('stock_item_id'))
            warehouse = self._get_warehouse(adjust_data.get('warehouse_id'))
            if adjust_data.get('new_quantity') is None:
                raise ValidationError("New quantity is required")
            new_quantity = round_quantity(adjust_data['new_quantity'])
            if new_quantity < ZERO:
                raise ValidationError("Quantity cannot be negative")

            current = self.ledger.lock_level(item.id, warehouse.id)
            old_quantity = to_decimal(current.quantity) if current else ZERO
            average_cost = to_decimal(current.average_cost) if current else ZERO
            delta = round_quantity(new_quantity - old_quantity)
            if delta == ZERO:
                raise ValidationError("New quantity is the same as the current quantity")

            level = self.ledger.adjust_by(item.id, warehouse.id, delta)
            movement = record_movement(
                self.db, item.id, MovementType.ADJUSTMENT, abs(delta), average_cost, self.actor_id,
                source_warehouse_id=warehouse.id if delta < ZERO else None,
                destination_warehouse_id=warehouse.id if delta > ZERO else None,
                reason=reason,
            )
            self._audit("ADJUST_STOCK", "stock_levels", f"{item.id}-{warehouse.id}",
                        {'quantity': new_quantity, 'reason': reason},
                        old_values={'quantity': old_quantity})

            self.db.commit()
            logger.info(f"Adjusted item {item.id} in warehouse {warehouse.id}: "
                        f"{old_quantity} -> {new_quantity} ({reason})")
            return True, {
                'stock_item_id': item.id,
                'warehouse_id': warehouse.id,
                'previous_quantity': old_quantity,
                'new_quantity': to_decimal(level.quantity),
                'adjustment': delta,
                'average_cost': to_decimal(level.average_cost),
                'movement_id': movement.id,
            }

        except Exception as e:
            return self._handle_error("adjust stock", e)

    def return_to_supplier(self, return_data: Dict) -> ServiceResult:
        """
        Send stock back to the supplier
        Returns (success, return summary or error)
        """
        try:
            item = self._get_item(return_data.get('stock_item_id'))
            warehouse = self._get_warehouse(return_data.get('warehouse_id'))
            quantity = require_positive_quantity(return_data.get('quantity'))
            supplier_id = return_data.get('supplier_id') or item.supplier_id
            if not supplier_id:
                raise ValidationError("Supplier is required for a return")
            supplier = self.db.get(Supplier, supplier_id)
            if not supplier:
                raise NotFoundError(f"Supplier {supplier_id} not found")
            if item.is_consignment and item.supplier_id != supplier.id:
                raise ValidationError("Consignment stock can only be returned to its owning supplier")

            movements = self._draw(
                item.id, warehouse.id, quantity, MovementType.RETURN,
                batch_id=return_data.get('batch_id'),
                reference_type=ReferenceType.CONSIGNMENT_RETURN.value,
                reference_id=supplier.id,
                reason=return_data.get('reason') or f"Returned to {supplier.name}",
            )
            result = self._summarise(item.id, warehouse.id, quantity, movements)
            result['supplier_id'] = supplier.id
            self._audit("RETURN_TO_SUPPLIER", "stock_movements", movements[0].id, {
                'stock_item_id': item.id,
                'warehouse_id': warehouse.id,
                'supplier_id': supplier.id,
                'quantity': quantity,
            })

            self.db.commit()
            logger.info(f"Returned {quantity} of item {item.id} to supplier {supplier.id}")
            return True, result

        except Exception as e:
            return self._handle_error("return stock to supplier", e)
