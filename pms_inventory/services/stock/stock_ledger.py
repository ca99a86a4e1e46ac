"""
Stock Ledger Service
Per (item, warehouse) quantity and weighted-average cost
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func

from pms_inventory.core.exceptions import InsufficientStockError, ValidationError
from pms_inventory.core.precision import (
    ZERO, to_decimal, round_quantity, round_cost, round_money, line_total
)
from pms_inventory.core.scope import ScopeFilter, ALL_PROPERTIES
from pms_inventory.models.stock import StockLevel, StockItem, StockCategory, Warehouse
from .base import InventoryService

logger = logging.getLogger(__name__)


def calculate_weighted_average(old_qty, old_avg_cost, qty, unit_cost) -> Decimal:
    """
    Blend a receipt into the running average

    (oldQty * oldAvg + qty * unitCost) / (oldQty + qty), rounded to cost precision
    """
    old_qty = to_decimal(old_qty)
    qty = to_decimal(qty)
    total_qty = old_qty + qty
    if total_qty <= ZERO:
        return round_cost(unit_cost)
    total_value = old_qty * to_decimal(old_avg_cost) + qty * to_decimal(unit_cost)
    return round_cost(total_value / total_qty)


def apply_receipt(old_qty, old_avg_cost, qty, unit_cost) -> Tuple[Decimal, Decimal]:
    """Returns (new_qty, new_avg_cost) after an inflow"""
    new_avg = calculate_weighted_average(old_qty, old_avg_cost, qty, unit_cost)
    return round_quantity(to_decimal(old_qty) + to_decimal(qty)), new_avg


def apply_outflow(old_qty, qty) -> Decimal:
    """Returns the new quantity after an outflow; the average cost is not touched"""
    old_qty = to_decimal(old_qty)
    qty = to_decimal(qty)
    if qty > old_qty:
        raise InsufficientStockError(
            f"Insufficient stock. Available: {old_qty}, Requested: {qty}",
            available=old_qty, requested=qty
        )
    return round_quantity(old_qty - qty)


def stock_level_to_dict(level: StockLevel) -> Dict:
    quantity = to_decimal(level.quantity)
    average_cost = to_decimal(level.average_cost)
    return {
        'id': level.id,
        'stock_item_id': level.stock_item_id,
        'warehouse_id': level.warehouse_id,
        'quantity': quantity,
        'average_cost': average_cost,
        'total_value': line_total(quantity, average_cost),
    }


class StockLedgerService(InventoryService):
    """
    Stock ledger operations

    The mutators here flush but never commit; they run inside the
    transaction of the orchestrator that calls them.
    """

    def lock_level(self, item_id: int, warehouse_id: int) -> Optional[StockLevel]:
        """Read the ledger row for update"""
        return self.db.query(StockLevel).filter(
            StockLevel.stock_item_id == item_id,
            StockLevel.warehouse_id == warehouse_id
        ).with_for_update().first()

    def available_quantity(self, item_id: int, warehouse_id: int) -> Decimal:
        level = self.lock_level(item_id, warehouse_id)
        return to_decimal(level.quantity) if level else ZERO

    def increase_on_receipt(self, item_id: int, warehouse_id: int,
                            quantity: Decimal, unit_cost: Decimal) -> StockLevel:
        """Apply an inflow using the weighted-average formula"""
        if quantity <= ZERO:
            raise ValidationError("Quantity must be greater than zero")
        if unit_cost < ZERO:
            raise ValidationError("Unit cost cannot be negative")

        level = self.lock_level(item_id, warehouse_id)
        if level is None:
            level = StockLevel(
                stock_item_id=item_id,
                warehouse_id=warehouse_id,
                quantity=round_quantity(quantity),
                average_cost=round_cost(unit_cost)
            )
            self.db.add(level)
        else:
            level.quantity, level.average_cost = apply_receipt(
                level.quantity, level.average_cost, quantity, unit_cost
            )

        self.db.flush()
        logger.debug(
            f"Ledger +{quantity} item={item_id} warehouse={warehouse_id} "
            f"qty={level.quantity} avg={level.average_cost}"
        )
        return level

    def decrease_on_outflow(self, item_id: int, warehouse_id: int, quantity: Decimal) -> StockLevel:
        """Apply an outflow; fails if the ledger holds less than requested"""
        if quantity <= ZERO:
            raise ValidationError("Quantity must be greater than zero")

        level = self.lock_level(item_id, warehouse_id)
        if level is None:
            raise InsufficientStockError(
                f"Insufficient stock. Available: 0, Requested: {quantity}",
                available=ZERO, requested=quantity
            )

        level.quantity = apply_outflow(level.quantity, quantity)
        self.db.flush()
        logger.debug(
            f"Ledger -{quantity} item={item_id} warehouse={warehouse_id} qty={level.quantity}"
        )
        return level

    def adjust_by(self, item_id: int, warehouse_id: int, delta: Decimal) -> StockLevel:
        """
        Move the ledger quantity by a signed delta without revaluing it

        An increase is blended at the current average cost, which leaves the
        average unchanged; a row created here starts at zero cost.
        """
        level = self.lock_level(item_id, warehouse_id)
        if delta < ZERO:
            if level is None:
                raise InsufficientStockError(
                    f"Insufficient stock. Available: 0, Requested: {-delta}",
                    available=ZERO, requested=-delta
                )
            level.quantity = apply_outflow(level.quantity, -delta)
        elif level is None:
            level = StockLevel(
                stock_item_id=item_id,
                warehouse_id=warehouse_id,
                quantity=round_quantity(delta),
                average_cost=ZERO
            )
            self.db.add(level)
        else:
            level.quantity, level.average_cost = apply_receipt(
                level.quantity, level.average_cost, delta, level.average_cost
            )

        self.db.flush()
        return level

    # Read operations

    def get_stock_level(self, item_id: int, warehouse_id: int) -> Optional[Dict]:
        level = self.db.query(StockLevel).filter(
            StockLevel.stock_item_id == item_id,
            StockLevel.warehouse_id == warehouse_id
        ).first()
        return stock_level_to_dict(level) if level else None

    def get_stock_levels_by_item(self, item_id: int) -> List[Dict]:
        levels = self.db.query(StockLevel).filter(
            StockLevel.stock_item_id == item_id
        ).order_by(StockLevel.warehouse_id).all()
        return [stock_level_to_dict(level) for level in levels]

    def get_stock_levels_by_warehouse(self, warehouse_id: int) -> List[Dict]:
        levels = self.db.query(StockLevel).filter(
            StockLevel.warehouse_id == warehouse_id
        ).order_by(StockLevel.stock_item_id).all()
        return [stock_level_to_dict(level) for level in levels]

    def get_total_stock_quantity(self, item_id: int, scope: ScopeFilter = ALL_PROPERTIES) -> Decimal:
        """Quantity of an item across every warehouse in scope"""
        query = self.db.query(func.coalesce(func.sum(StockLevel.quantity), 0)).join(
            Warehouse, StockLevel.warehouse_id == Warehouse.id
        ).filter(StockLevel.stock_item_id == item_id)
        query = scope.apply(query, Warehouse.property_id)
        return round_quantity(query.scalar())

    def get_weighted_average_cost(self, item_id: int, warehouse_id: int) -> Decimal:
        level = self.db.query(StockLevel).filter(
            StockLevel.stock_item_id == item_id,
            StockLevel.warehouse_id == warehouse_id
        ).first()
        return to_decimal(level.average_cost) if level else ZERO

    def get_warehouse_stock_summary(self, warehouse_id: int) -> Dict:
        """Item count and valuation of a warehouse, grouped by category"""
        rows = self.db.query(StockLevel, StockItem, StockCategory).join(
            StockItem, StockLevel.stock_item_id == StockItem.id
        ).join(
            StockCategory, StockItem.category_id == StockCategory.id
        ).filter(
            StockLevel.warehouse_id == warehouse_id,
            StockLevel.quantity > 0
        ).all()

        total_value = ZERO
        by_category: Dict[int, Dict] = {}
        for level, item, category in rows:
            value = line_total(level.quantity, level.average_cost)
            total_value += value
            bucket = by_category.setdefault(category.id, {
                'category_id': category.id,
                'category_name': category.name,
                'item_count': 0,
                'total_value': ZERO,
            })
            bucket['item_count'] += 1
            bucket['total_value'] += value

        categories = sorted(by_category.values(), key=lambda c: c['total_value'], reverse=True)
        return {
            'warehouse_id': warehouse_id,
            'item_count': len(rows),
            'total_value': round_money(total_value),
            'by_category': categories,
        }
