"""
Waste Tracking Service
Spoilage, breakage and other shrinkage, with period waste reporting
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pms_inventory.core.config import settings
from pms_inventory.core.exceptions import (
    InsufficientStockError, InvalidStateError, ValidationError
)
from pms_inventory.core.precision import ZERO, to_decimal, round_quantity, round_money, line_total
from pms_inventory.core.scope import ScopeFilter, ALL_PROPERTIES
from pms_inventory.models.stock import StockItem, StockBatch, WasteRecord, Warehouse
from pms_inventory.schemas.stock import MovementType, ReferenceType, WasteType, enum_values
from .base import InventoryService, ServiceResult, require_positive_quantity
from .lot_tracking import LotTrackingService, is_batch_expired
from .movement_log import MovementLogService, calculate_waste_percentage_pure, record_movement
from .stock_ledger import StockLedgerService

logger = logging.getLogger(__name__)


def validate_waste_type(value) -> WasteType:
    if value is None or value == '':
        raise ValidationError("Waste type is required")
    try:
        return WasteType(value)
    except ValueError:
        raise ValidationError(
            f"Invalid waste type '{value}'. Must be one of: {', '.join(enum_values(WasteType))}"
        )


def waste_record_to_dict(record: WasteRecord) -> Dict:
    return {
        'id': record.id,
        'stock_item_id': record.stock_item_id,
        'warehouse_id': record.warehouse_id,
        'batch_id': record.batch_id,
        'waste_type': record.waste_type,
        'quantity': to_decimal(record.quantity),
        'unit_cost': to_decimal(record.unit_cost),
        'total_cost': to_decimal(record.total_cost),
        'reason': record.reason,
        'recorded_by': record.recorded_by,
        'created_at': record.created_at,
    }


class WasteTrackingService(InventoryService):
    """Waste recording and reporting"""

    def __init__(self, db, actor_id: Optional[str] = None):
        super().__init__(db, actor_id)
        self.ledger = StockLedgerService(db, actor_id)
        self.lots = LotTrackingService(db, actor_id)

    def _write_off(self, item_id: int, warehouse_id: int, waste_type: WasteType,
                   quantity: Decimal, batch: Optional[StockBatch], reason: Optional[str]) -> Dict:
        """Check both sources, then decrement them and write the record pair"""
        level = self.ledger.lock_level(item_id, warehouse_id)
        ledger_qty = to_decimal(level.quantity) if level else ZERO

        if batch is not None:
            batch_qty = to_decimal(batch.quantity)
            if quantity > batch_qty:
                raise InsufficientStockError(
                    f"Insufficient batch quantity. Available: {batch_qty}, Requested: {quantity}",
                    available=batch_qty, requested=quantity
                )
        if quantity > ledger_qty:
            raise InsufficientStockError(
                f"Insufficient stock. Available: {ledger_qty}, Requested: {quantity}",
                available=ledger_qty, requested=quantity
            )
        if batch is None and waste_type != WasteType.EXPIRED:
            self.lots.check_unexpired_ledger_quantity(item_id, warehouse_id, quantity)

        unit_cost = to_decimal(batch.unit_cost) if batch is not None else to_decimal(level.average_cost)

        if batch is not None:
            batch.quantity = round_quantity(to_decimal(batch.quantity) - quantity)
        self.ledger.decrease_on_outflow(item_id, warehouse_id, quantity)

        record = WasteRecord(
            stock_item_id=item_id,
            warehouse_id=warehouse_id,
            batch_id=batch.id if batch is not None else None,
            waste_type=waste_type.value,
            quantity=quantity,
            unit_cost=unit_cost,
            total_cost=line_total(quantity, unit_cost),
            reason=reason,
            recorded_by=self.actor_id,
        )
        self.db.add(record)
        self.db.flush()

        movement = record_movement(
            self.db, item_id, MovementType.WASTE, quantity, unit_cost, self.actor_id,
            source_warehouse_id=warehouse_id,
            batch_id=record.batch_id,
            reference_type=ReferenceType.WASTE_RECORD.value,
            reference_id=record.id,
            reason=reason or waste_type.value,
        )
        self._audit("RECORD_WASTE", "waste_records", record.id, {
            'stock_item_id': item_id,
            'warehouse_id': warehouse_id,
            'waste_type': waste_type.value,
            'quantity': quantity,
            'total_cost': record.total_cost,
        })

        result = waste_record_to_dict(record)
        result['movement_id'] = movement.id
        return result

    def record_waste(self, waste_data: Dict) -> ServiceResult:
        """
        Record wasted stock
        Returns (success, waste record data or error)
        """
        try:
            waste_type = validate_waste_type(waste_data.get('waste_type'))
            item = self._get_item(waste_data.get('stock_item_id'))
            warehouse = self._get_warehouse(waste_data.get('warehouse_id'))
            quantity = require_positive_quantity(waste_data.get('quantity'))

            batch = None
            if waste_data.get('batch_id'):
                batch = self._get_batch(waste_data['batch_id'], lock=True)
                if batch.stock_item_id != item.id or batch.warehouse_id != warehouse.id:
                    raise ValidationError("Batch does not belong to this item and warehouse")
                if is_batch_expired(batch) and waste_type != WasteType.EXPIRED:
                    raise InvalidStateError(
                        f"Batch {batch.batch_number} is expired; record it as EXPIRED waste"
                    )

            result = self._write_off(item.id, warehouse.id, waste_type, quantity,
                                     batch, waste_data.get('reason'))

            self.db.commit()
            logger.info(f"Recorded {waste_type.value} waste of {quantity} item {item.id} "
                        f"in warehouse {warehouse.id} ({result['total_cost']})")
            return True, result

        except Exception as e:
            return self._handle_error("record waste", e)

    def write_off_expired_batch(self, batch_id: int, reason: Optional[str] = None) -> ServiceResult:
        """
        Write off what is left of an expired batch as EXPIRED waste
        Returns (success, waste record data or error)
        """
        try:
            batch = self._get_batch(batch_id, lock=True)
            if not is_batch_expired(batch):
                raise InvalidStateError(f"Batch {batch.batch_number} has not expired")
            quantity = to_decimal(batch.quantity)
            if quantity <= ZERO:
                raise ValidationError(f"Batch {batch.batch_number} has no remaining quantity")

            batch.is_expired = True
            result = self._write_off(
                batch.stock_item_id, batch.warehouse_id, WasteType.EXPIRED, quantity, batch,
                reason or f"Batch {batch.batch_number} expired"
            )

            self.db.commit()
            logger.info(f"Expired batch {batch.batch_number} written off ({quantity})")
            return True, result

        except Exception as e:
            return self._handle_error("write off expired batch", e)

    def get_waste_history(
        self,
        filters: Optional[Dict] = None,
        scope: ScopeFilter = ALL_PROPERTIES,
        skip: int = 0,
        limit: int = settings.DEFAULT_PAGE_SIZE
    ) -> Dict:
        """Waste records newest first; filters: stock_item_id, warehouse_id, waste_type, start_date, end_date"""
        filters = filters or {}
        query = self.db.query(WasteRecord).join(
            Warehouse, WasteRecord.warehouse_id == Warehouse.id
        )
        query = scope.apply(query, Warehouse.property_id)

        if filters.get('stock_item_id'):
            query = query.filter(WasteRecord.stock_item_id == filters['stock_item_id'])
        if filters.get('warehouse_id'):
            query = query.filter(WasteRecord.warehouse_id == filters['warehouse_id'])
        if filters.get('waste_type'):
            query = query.filter(WasteRecord.waste_type == validate_waste_type(filters['waste_type']).value)
        if filters.get('start_date'):
            query = query.filter(WasteRecord.created_at >= filters['start_date'])
        if filters.get('end_date'):
            query = query.filter(WasteRecord.created_at <= filters['end_date'])

        total = query.count()
        records = query.order_by(
            WasteRecord.created_at.desc(), WasteRecord.id.desc()
        ).offset(skip).limit(limit).all()
        return {
            'records': [waste_record_to_dict(r) for r in records],
            'total': total,
            'skip': skip,
            'limit': limit,
        }

    def calculate_waste_percentage(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        warehouse_id: Optional[int] = None,
        scope: ScopeFilter = ALL_PROPERTIES
    ) -> Decimal:
        """Waste cost over CONSUMPTION + WASTE movement cost for the period"""
        log = MovementLogService(self.db)
        waste_cost = log.sum_movement_cost(
            [MovementType.WASTE.value], start_date, end_date, warehouse_id, scope
        )
        usage_cost = log.sum_movement_cost(
            [MovementType.CONSUMPTION.value, MovementType.WASTE.value],
            start_date, end_date, warehouse_id, scope
        )
        return calculate_waste_percentage_pure(waste_cost, usage_cost)

    def generate_waste_report(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        warehouse_id: Optional[int] = None,
        scope: ScopeFilter = ALL_PROPERTIES
    ) -> Dict:
        """Period totals with breakdowns by waste type and by item"""
        query = self.db.query(WasteRecord, StockItem).join(
            StockItem, WasteRecord.stock_item_id == StockItem.id
        ).join(
            Warehouse, WasteRecord.warehouse_id == Warehouse.id
        )
        query = scope.apply(query, Warehouse.property_id)
        if warehouse_id:
            query = query.filter(WasteRecord.warehouse_id == warehouse_id)
        if start_date:
            query = query.filter(WasteRecord.created_at >= start_date)
        if end_date:
            query = query.filter(WasteRecord.created_at <= end_date)
        rows = query.all()

        total_cost = ZERO
        by_type: Dict[str, Dict] = {}
        by_item: Dict[int, Dict] = {}
        for record, item in rows:
            cost = to_decimal(record.total_cost)
            total_cost += cost

            type_bucket = by_type.setdefault(record.waste_type, {
                'waste_type': record.waste_type,
                'record_count': 0,
                'total_cost': ZERO,
            })
            type_bucket['record_count'] += 1
            type_bucket['total_cost'] += cost

            item_bucket = by_item.setdefault(item.id, {
                'stock_item_id': item.id,
                'item_code': item.item_code,
                'item_name': item.name,
                'total_quantity': ZERO,
                'total_cost': ZERO,
            })
            item_bucket['total_quantity'] += to_decimal(record.quantity)
            item_bucket['total_cost'] += cost

        return {
            'start_date': start_date,
            'end_date': end_date,
            'warehouse_id': warehouse_id,
            'record_count': len(rows),
            'total_waste_cost': round_money(total_cost),
            'waste_percentage': self.calculate_waste_percentage(
                start_date, end_date, warehouse_id, scope
            ),
            'by_type': self._sorted_by_cost(by_type.values()),
            'by_item': self._sorted_by_cost(by_item.values()),
        }

    @staticmethod
    def _sorted_by_cost(buckets) -> List[Dict]:
        rows = sorted(buckets, key=lambda b: b['total_cost'], reverse=True)
        for row in rows:
            row['total_cost'] = round_money(row['total_cost'])
        return rows
