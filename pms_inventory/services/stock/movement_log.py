"""
Movement Log
Append-only record of every ledger and batch quantity change
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import or_

from pms_inventory.core.config import settings
from pms_inventory.core.exceptions import ValidationError
from pms_inventory.core.precision import (
    ZERO, to_decimal, round_quantity, round_cost, round_money, line_total
)
from pms_inventory.core.scope import ScopeFilter, ALL_PROPERTIES
from pms_inventory.models.stock import StockMovement, StockItem
from pms_inventory.schemas.stock import MovementType
from .base import InventoryService
from .stock_ledger import apply_receipt, StockLedgerService

logger = logging.getLogger(__name__)

INFLOW_TYPES = (MovementType.RECEIPT.value, MovementType.TRANSFER_IN.value)
OUTFLOW_TYPES = (
    MovementType.CONSUMPTION.value,
    MovementType.WASTE.value,
    MovementType.TRANSFER_OUT.value,
    MovementType.RETURN.value,
)


def record_movement(
    db,
    item_id: int,
    movement_type: MovementType,
    quantity: Decimal,
    unit_cost: Decimal,
    actor_id: Optional[str],
    source_warehouse_id: Optional[int] = None,
    destination_warehouse_id: Optional[int] = None,
    batch_id: Optional[int] = None,
    reference_type: Optional[str] = None,
    reference_id: Any = None,
    reason: Optional[str] = None,
) -> StockMovement:
    """Append one movement row to the current transaction"""
    quantity = round_quantity(quantity)
    if quantity <= ZERO:
        raise ValidationError("Movement quantity must be greater than zero")
    if source_warehouse_id is None and destination_warehouse_id is None:
        raise ValidationError("Movement requires a source or destination warehouse")

    unit_cost = round_cost(unit_cost)
    movement = StockMovement(
        stock_item_id=item_id,
        source_warehouse_id=source_warehouse_id,
        destination_warehouse_id=destination_warehouse_id,
        batch_id=batch_id,
        type=MovementType(movement_type).value,
        quantity=quantity,
        unit_cost=unit_cost,
        total_cost=line_total(quantity, unit_cost),
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        reason=reason,
        created_by=actor_id,
    )
    db.add(movement)
    db.flush()
    return movement


def calculate_waste_percentage_pure(total_waste_cost, total_usage_cost) -> Decimal:
    """
    Waste as a share of total outflow cost

    The denominator is CONSUMPTION plus WASTE cost for the period, so waste
    is counted inside its own base. Returns 0 when there was no usage.
    """
    total_usage_cost = to_decimal(total_usage_cost)
    if total_usage_cost <= ZERO:
        return Decimal('0.00')
    return round_money(to_decimal(total_waste_cost) / total_usage_cost * 100)


def replay_movements(movements: Iterable[StockMovement], warehouse_id: int) -> Tuple[Decimal, Decimal, bool]:
    """
    Rebuild (quantity, average_cost) of one warehouse from its movements

    Movements must be in creation order. Returns a third flag telling
    whether any movement touched the warehouse at all.
    """
    quantity = ZERO
    average_cost = ZERO
    seen = False

    for movement in movements:
        qty = to_decimal(movement.quantity)
        inbound = movement.destination_warehouse_id == warehouse_id
        outbound = movement.source_warehouse_id == warehouse_id

        if movement.type in INFLOW_TYPES and inbound:
            quantity, average_cost = apply_receipt(quantity, average_cost, qty, movement.unit_cost)
            seen = True
        elif movement.type == MovementType.ADJUSTMENT.value and inbound:
            # adjustments never revalue; a ledger opened by one starts at zero cost
            quantity = round_quantity(quantity + qty)
            seen = True
        elif outbound and (movement.type in OUTFLOW_TYPES
                           or movement.type == MovementType.ADJUSTMENT.value):
            quantity = round_quantity(quantity - qty)
            seen = True

    return quantity, average_cost, seen


def movement_to_dict(movement: StockMovement) -> Dict:
    return {
        'id': movement.id,
        'stock_item_id': movement.stock_item_id,
        'source_warehouse_id': movement.source_warehouse_id,
        'destination_warehouse_id': movement.destination_warehouse_id,
        'batch_id': movement.batch_id,
        'type': movement.type,
        'quantity': to_decimal(movement.quantity),
        'unit_cost': to_decimal(movement.unit_cost),
        'total_cost': to_decimal(movement.total_cost),
        'reference_type': movement.reference_type,
        'reference_id': movement.reference_id,
        'reason': movement.reason,
        'created_by': movement.created_by,
        'created_at': movement.created_at,
    }


class MovementLogService(InventoryService):
    """Read side of the movement log: history, replay and period totals"""

    def get_movement(self, movement_id: int) -> Optional[StockMovement]:
        return self.db.get(StockMovement, movement_id)

    def get_movement_history(
        self,
        filters: Optional[Dict] = None,
        scope: ScopeFilter = ALL_PROPERTIES,
        skip: int = 0,
        limit: int = settings.DEFAULT_PAGE_SIZE
    ) -> Dict:
        """
        Filtered, newest-first movement listing

        Filters: stock_item_id, warehouse_id (source or destination),
        movement_type, start_date, end_date, reference_type, reference_id
        """
        filters = filters or {}
        query = self.db.query(StockMovement).join(
            StockItem, StockMovement.stock_item_id == StockItem.id
        )
        query = scope.apply(query, StockItem.property_id)

        if filters.get('stock_item_id'):
            query = query.filter(StockMovement.stock_item_id == filters['stock_item_id'])
        if filters.get('warehouse_id'):
            warehouse_id = filters['warehouse_id']
            query = query.filter(or_(
                StockMovement.source_warehouse_id == warehouse_id,
                StockMovement.destination_warehouse_id == warehouse_id
            ))
        if filters.get('movement_type'):
            query = query.filter(StockMovement.type == MovementType(filters['movement_type']).value)
        if filters.get('reference_type'):
            query = query.filter(StockMovement.reference_type == filters['reference_type'])
        if filters.get('reference_id'):
            query = query.filter(StockMovement.reference_id == str(filters['reference_id']))
        if filters.get('start_date'):
            query = query.filter(StockMovement.created_at >= filters['start_date'])
        if filters.get('end_date'):
            query = query.filter(StockMovement.created_at <= filters['end_date'])

        total = query.count()
        movements = query.order_by(
            StockMovement.created_at.desc(), StockMovement.id.desc()
        ).offset(skip).limit(limit).all()

        return {
            'movements': [movement_to_dict(m) for m in movements],
            'total': total,
            'skip': skip,
            'limit': limit,
        }

    def replay_stock_level(self, item_id: int, warehouse_id: int) -> Dict:
        """Reconstruct the ledger row for a pair from the log and compare"""
        movements = self.db.query(StockMovement).filter(
            StockMovement.stock_item_id == item_id,
            or_(
                StockMovement.source_warehouse_id == warehouse_id,
                StockMovement.destination_warehouse_id == warehouse_id
            )
        ).order_by(StockMovement.id).all()

        quantity, average_cost, _ = replay_movements(movements, warehouse_id)
        ledger = StockLedgerService(self.db).get_stock_level(item_id, warehouse_id)
        ledger_qty = ledger['quantity'] if ledger else ZERO
        ledger_cost = ledger['average_cost'] if ledger else ZERO

        return {
            'stock_item_id': item_id,
            'warehouse_id': warehouse_id,
            'movement_count': len(movements),
            'replayed_quantity': quantity,
            'replayed_average_cost': average_cost,
            'ledger_quantity': ledger_qty,
            'ledger_average_cost': ledger_cost,
            'matches_ledger': quantity == ledger_qty and average_cost == ledger_cost,
        }

    def sum_movement_cost(
        self,
        movement_types: List[str],
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        warehouse_id: Optional[int] = None,
        scope: ScopeFilter = ALL_PROPERTIES
    ) -> Decimal:
        """Total cost of outbound movements of the given types"""
        query = self.db.query(StockMovement.total_cost).join(
            StockItem, StockMovement.stock_item_id == StockItem.id
        ).filter(StockMovement.type.in_(movement_types))
        query = scope.apply(query, StockItem.property_id)
        if warehouse_id:
            query = query.filter(StockMovement.source_warehouse_id == warehouse_id)
        if start_date:
            query = query.filter(StockMovement.created_at >= start_date)
        if end_date:
            query = query.filter(StockMovement.created_at <= end_date)

        return round_money(sum((to_decimal(row[0]) for row in query.all()), ZERO))


__all__ = [
    'record_movement',
    'calculate_waste_percentage_pure',
    'replay_movements',
    'movement_to_dict',
    'MovementLogService',
]
