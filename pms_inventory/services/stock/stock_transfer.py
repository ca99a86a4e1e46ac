"""
Stock Transfer Service
Moves stock between warehouses of a property
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from pms_inventory.core.exceptions import InsufficientStockError, InvalidStateError, ValidationError
from pms_inventory.core.precision import ZERO, to_decimal, round_quantity, line_total
from pms_inventory.models.stock import StockBatch, StockItem, Warehouse
from pms_inventory.schemas.stock import MovementType, ReferenceType
from .base import InventoryService, ServiceResult, require_positive_quantity
from .lot_tracking import LotTrackingService, is_batch_expired
from .movement_log import record_movement
from .stock_ledger import StockLedgerService

logger = logging.getLogger(__name__)


class StockTransferService(InventoryService):
    """
    Inter-warehouse transfers

    The destination receives at the source's average cost. Batch-tracked
    stock moves lot by lot (FEFO unless a batch is pinned) and each lot
    keeps its number, unit cost and expiry at the destination.
    """

    def __init__(self, db, actor_id: Optional[str] = None):
        super().__init__(db, actor_id)
        self.ledger = StockLedgerService(db, actor_id)
        self.lots = LotTrackingService(db, actor_id)

    def _lots_to_move(self, item_id: int, warehouse_id: int, quantity: Decimal,
                      batch_id=None) -> List[Tuple[StockBatch, Decimal]]:
        """Pick (batch, quantity) pairs at the source; empty for ledger-only stock"""
        if batch_id:
            batch = self._get_batch(batch_id, lock=True)
            if batch.stock_item_id != item_id or batch.warehouse_id != warehouse_id:
                raise ValidationError("Batch does not belong to this item and source warehouse")
            if is_batch_expired(batch):
                raise InvalidStateError(f"Batch {batch.batch_number} is expired and cannot be transferred")
            available = to_decimal(batch.quantity)
            if quantity > available:
                raise InsufficientStockError(
                    f"Insufficient batch quantity. Available: {available}, Requested: {quantity}",
                    available=available, requested=quantity
                )
            return [(batch, quantity)]

        batches = self.lots.get_available_batches(item_id, warehouse_id, lock=True)
        if not batches:
            return []

        available = sum((to_decimal(b.quantity) for b in batches), ZERO)
        if quantity > available:
            raise InsufficientStockError(
                f"Insufficient stock in non-expired batches. Available: {available}, "
                f"Requested: {quantity}",
                available=available, requested=quantity
            )

        picks = []
        remaining = quantity
        for batch in batches:
            if remaining <= ZERO:
                break
            take = min(remaining, to_decimal(batch.quantity))
            picks.append((batch, take))
            remaining -= take
        return picks

    def _receive_lot(self, source_batch: StockBatch, warehouse_id: int, quantity: Decimal) -> StockBatch:
        """Find or open the matching batch at the destination"""
        target = self.db.query(StockBatch).filter(
            StockBatch.stock_item_id == source_batch.stock_item_id,
            StockBatch.warehouse_id == warehouse_id,
            StockBatch.batch_number == source_batch.batch_number
        ).with_for_update().first()

        if target is None:
            return self.lots.insert_batch(
                source_batch.stock_item_id, warehouse_id, source_batch.batch_number,
                quantity, to_decimal(source_batch.unit_cost),
                expiration_date=source_batch.expiration_date,
                received_at=source_batch.received_at,
            )

        if target.is_expired:
            raise InvalidStateError(
                f"Batch {target.batch_number} is marked expired in the destination warehouse"
            )
        target.quantity = round_quantity(to_decimal(target.quantity) + quantity)
        return target

    def move_stock(self, item: StockItem, source: Warehouse, destination: Warehouse,
                   quantity: Decimal, reason: str, batch_id=None,
                   reference_type: Optional[str] = None, reference_id=None) -> Dict:
        """
        Move stock between two validated warehouses without committing

        Source batches are locked before the ledger row, like every other
        outflow. Returns the transfer summary.
        """
        picks = self._lots_to_move(item.id, source.id, quantity, batch_id)

        level = self.ledger.lock_level(item.id, source.id)
        ledger_available = to_decimal(level.quantity) if level else ZERO
        if quantity > ledger_available:
            raise InsufficientStockError(
                f"Insufficient stock in {source.name}. Available: {ledger_available}, "
                f"Requested: {quantity}",
                available=ledger_available, requested=quantity
            )
        if not picks:
            self.lots.check_unexpired_ledger_quantity(item.id, source.id, quantity)
        transfer_cost = to_decimal(level.average_cost)

        movements = []
        lots = []
        if picks:
            for batch, take in picks:
                batch.quantity = round_quantity(to_decimal(batch.quantity) - take)
                target = self._receive_lot(batch, destination.id, take)
                movements.extend(self._write_pair(
                    item.id, source.id, destination.id, take, transfer_cost, reason,
                    batch.id, target.id, reference_type, reference_id
                ))
                lots.append({
                    'batch_number': batch.batch_number,
                    'quantity': take,
                    'source_batch_id': batch.id,
                    'destination_batch_id': target.id,
                })
        else:
            movements.extend(self._write_pair(
                item.id, source.id, destination.id, quantity, transfer_cost, reason,
                reference_type=reference_type, reference_id=reference_id
            ))

        self.ledger.decrease_on_outflow(item.id, source.id, quantity)
        destination_level = self.ledger.increase_on_receipt(
            item.id, destination.id, quantity, transfer_cost
        )

        return {
            'stock_item_id': item.id,
            'source_warehouse_id': source.id,
            'destination_warehouse_id': destination.id,
            'quantity': quantity,
            'unit_cost': transfer_cost,
            'total_cost': line_total(quantity, transfer_cost),
            'destination_average_cost': to_decimal(destination_level.average_cost),
            'batches': lots,
            'movement_ids': [m.id for m in movements],
        }

    def transfer_stock(self, transfer_data: Dict) -> ServiceResult:
        """
        Transfer stock between two warehouses
        Returns (success, transfer data or error)
        """
        try:
            item = self._get_item(transfer_data.get('stock_item_id'))
            source_id = transfer_data.get('source_warehouse_id')
            destination_id = transfer_data.get('destination_warehouse_id')
            if source_id is not None and source_id == destination_id:
                raise ValidationError("Source and destination warehouses must be different")
            source = self._get_warehouse(source_id, label="Source warehouse")
            destination = self._get_warehouse(destination_id, label="Destination warehouse")
            if source.property_id != destination.property_id:
                raise ValidationError("Warehouses belong to different properties")
            quantity = require_positive_quantity(transfer_data.get('quantity'))
            reason = transfer_data.get('reason') or f"Transfer {source.name} -> {destination.name}"

            result = self.move_stock(item, source, destination, quantity, reason,
                                     batch_id=transfer_data.get('batch_id'))

            self._audit("TRANSFER_STOCK", "stock_movements", result['movement_ids'][0], {
                'stock_item_id': item.id,
                'source_warehouse_id': source.id,
                'destination_warehouse_id': destination.id,
                'quantity': quantity,
                'unit_cost': result['unit_cost'],
            })

            self.db.commit()
            logger.info(f"Transferred {quantity} of item {item.id} from {source.name} "
                        f"to {destination.name} at {result['unit_cost']}")
            return True, result

        except Exception as e:
            return self._handle_error("transfer stock", e)

    def _write_pair(self, item_id: int, source_id: int, destination_id: int,
                    quantity: Decimal, unit_cost: Decimal, reason: str,
                    source_batch_id=None, destination_batch_id=None,
                    reference_type: Optional[str] = None, reference_id=None):
        """TRANSFER_OUT at the source and TRANSFER_IN at the destination, IN pointing at OUT"""
        out_movement = record_movement(
            self.db, item_id, MovementType.TRANSFER_OUT, quantity, unit_cost, self.actor_id,
            source_warehouse_id=source_id,
            destination_warehouse_id=destination_id,
            batch_id=source_batch_id,
            reference_type=reference_type,
            reference_id=reference_id,
            reason=reason,
        )
        in_movement = record_movement(
            self.db, item_id, MovementType.TRANSFER_IN, quantity, unit_cost, self.actor_id,
            source_warehouse_id=source_id,
            destination_warehouse_id=destination_id,
            batch_id=destination_batch_id,
            reference_type=ReferenceType.TRANSFER.value,
            reference_id=out_movement.id,
            reason=reason,
        )
        return out_movement, in_movement
