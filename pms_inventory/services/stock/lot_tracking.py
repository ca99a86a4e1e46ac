"""
Lot/Batch Tracking Service
Batch store with FEFO selection and the expiration lifecycle
"""
import logging
import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, case, func, or_

from pms_inventory.core.config import settings
from pms_inventory.core.exceptions import (
    ConstraintViolationError, InsufficientStockError, InvalidStateError, ValidationError
)
from pms_inventory.core.precision import (
    ZERO, to_decimal, round_quantity, round_money, line_total, utcnow
)
from pms_inventory.core.scope import ScopeFilter, ALL_PROPERTIES
from pms_inventory.models.stock import StockBatch, Warehouse
from pms_inventory.schemas.stock import MovementType, ReferenceType
from .base import (
    InventoryService, ServiceResult, require_positive_quantity,
    require_non_negative_cost, require_reason
)
from .movement_log import record_movement
from .stock_ledger import StockLedgerService

logger = logging.getLogger(__name__)


def fefo_order():
    """Earliest expiry first, undated stock last, then oldest receipt"""
    return (
        case((StockBatch.expiration_date.is_(None), 1), else_=0),
        StockBatch.expiration_date.asc(),
        StockBatch.received_at.asc(),
        StockBatch.id.asc(),
    )


def available_batch_filter(now: datetime):
    """Batches that may be consumed: flagged live, in date and not empty"""
    return and_(
        StockBatch.is_expired.is_(False),
        StockBatch.quantity > 0,
        or_(StockBatch.expiration_date.is_(None), StockBatch.expiration_date >= now),
    )


def expired_batch_filter(now: datetime):
    """Batches still holding stock that may no longer be consumed"""
    return and_(
        StockBatch.quantity > 0,
        or_(
            StockBatch.is_expired.is_(True),
            and_(StockBatch.expiration_date.isnot(None), StockBatch.expiration_date < now),
        ),
    )


def is_batch_expired(batch: StockBatch, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return bool(batch.is_expired) or (
        batch.expiration_date is not None and batch.expiration_date < now
    )


def days_until(expiration_date: datetime, now: datetime) -> int:
    return math.ceil((expiration_date - now).total_seconds() / 86400)


def batch_to_dict(batch: StockBatch, now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    quantity = to_decimal(batch.quantity)
    unit_cost = to_decimal(batch.unit_cost)
    result = {
        'id': batch.id,
        'stock_item_id': batch.stock_item_id,
        'warehouse_id': batch.warehouse_id,
        'batch_number': batch.batch_number,
        'quantity': quantity,
        'unit_cost': unit_cost,
        'total_value': line_total(quantity, unit_cost),
        'expiration_date': batch.expiration_date,
        'is_expired': bool(batch.is_expired),
        'received_at': batch.received_at,
    }
    if batch.expiration_date is not None:
        result['days_until_expiration'] = days_until(batch.expiration_date, now)
    return result


class LotTrackingService(InventoryService):
    """
    Batch store

    Unexpired batch quantities for an (item, warehouse) pair add up to the
    ledger quantity, so every batch write here is paired with a ledger
    write and a movement in the same transaction.
    """

    def __init__(self, db, actor_id: Optional[str] = None):
        super().__init__(db, actor_id)
        self.ledger = StockLedgerService(db, actor_id)

    # Creation

    def insert_batch(self, item_id: int, warehouse_id: int, batch_number: str,
                     quantity: Decimal, unit_cost: Decimal,
                     expiration_date: Optional[datetime] = None,
                     received_at: Optional[datetime] = None) -> StockBatch:
        """Validate and add a batch row; the caller books ledger and movement"""
        batch_number = (batch_number or '').strip()
        if not batch_number:
            raise ValidationError("Batch number is required")

        existing = self.db.query(StockBatch.id).filter(
            StockBatch.stock_item_id == item_id,
            StockBatch.warehouse_id == warehouse_id,
            StockBatch.batch_number == batch_number
        ).first()
        if existing:
            raise ConstraintViolationError(
                f"Batch {batch_number} already exists for this item in this warehouse"
            )

        batch = StockBatch(
            stock_item_id=item_id,
            warehouse_id=warehouse_id,
            batch_number=batch_number,
            quantity=quantity,
            unit_cost=unit_cost,
            expiration_date=expiration_date,
            is_expired=False,
            received_at=received_at or utcnow(),
        )
        self.db.add(batch)
        self.db.flush()
        return batch

    def create_batch(self, batch_data: Dict) -> ServiceResult:
        """
        Receive stock as a new batch
        Returns (success, batch data or error)
        """
        try:
            item = self._get_item(batch_data.get('stock_item_id'))
            warehouse = self._get_warehouse(batch_data.get('warehouse_id'))
            quantity = require_positive_quantity(batch_data.get('quantity'))
            unit_cost = require_non_negative_cost(batch_data.get('unit_cost'))

            batch = self.insert_batch(
                item.id, warehouse.id, batch_data.get('batch_number'),
                quantity, unit_cost,
                expiration_date=batch_data.get('expiration_date'),
                received_at=batch_data.get('received_at'),
            )
            level = self.ledger.increase_on_receipt(item.id, warehouse.id, quantity, unit_cost)
            record_movement(
                self.db, item.id, MovementType.RECEIPT, quantity, unit_cost, self.actor_id,
                destination_warehouse_id=warehouse.id,
                batch_id=batch.id,
                reference_type=ReferenceType.STOCK_BATCH.value,
                reference_id=batch.id,
                reason=batch_data.get('reason') or f"Batch {batch.batch_number} received",
            )
            self._audit("CREATE_BATCH", "stock_batches", batch.id, {
                'stock_item_id': item.id,
                'warehouse_id': warehouse.id,
                'batch_number': batch.batch_number,
                'quantity': quantity,
                'unit_cost': unit_cost,
            })

            result = batch_to_dict(batch)
            result['ledger_quantity'] = to_decimal(level.quantity)
            result['ledger_average_cost'] = to_decimal(level.average_cost)

            self.db.commit()
            logger.info(f"Batch {batch.batch_number} created: {quantity} of item {item.id} "
                        f"in warehouse {warehouse.id}")
            return True, result

        except Exception as e:
            return self._handle_error("create batch", e)

    # Queries

    def get_batch(self, batch_id: int) -> Optional[StockBatch]:
        return self.db.get(StockBatch, batch_id)

    def get_batches_by_item(self, item_id: int, warehouse_id: Optional[int] = None,
                            include_empty: bool = False) -> List[StockBatch]:
        query = self.db.query(StockBatch).filter(StockBatch.stock_item_id == item_id)
        if warehouse_id:
            query = query.filter(StockBatch.warehouse_id == warehouse_id)
        if not include_empty:
            query = query.filter(StockBatch.quantity > 0)
        return query.order_by(*fefo_order()).all()

    def get_batches_by_warehouse(self, warehouse_id: int, include_empty: bool = False) -> List[StockBatch]:
        query = self.db.query(StockBatch).filter(StockBatch.warehouse_id == warehouse_id)
        if not include_empty:
            query = query.filter(StockBatch.quantity > 0)
        return query.order_by(StockBatch.stock_item_id, *fefo_order()).all()

    def get_available_batches(self, item_id: int, warehouse_id: int, lock: bool = False) -> List[StockBatch]:
        """Consumable batches in FEFO order"""
        query = self.db.query(StockBatch).filter(
            StockBatch.stock_item_id == item_id,
            StockBatch.warehouse_id == warehouse_id,
            available_batch_filter(utcnow())
        ).order_by(*fefo_order())
        if lock:
            query = query.with_for_update()
        return query.all()

    def get_next_batch_fefo(self, item_id: int, warehouse_id: int) -> Optional[StockBatch]:
        """The batch the next consumption of this pair draws from"""
        return self.db.query(StockBatch).filter(
            StockBatch.stock_item_id == item_id,
            StockBatch.warehouse_id == warehouse_id,
            available_batch_filter(utcnow())
        ).order_by(*fefo_order()).first()

    def has_available_batches(self, item_id: int, warehouse_id: int) -> bool:
        return self.get_next_batch_fefo(item_id, warehouse_id) is not None

    def get_available_batch_quantity(self, item_id: int, warehouse_id: int,
                                     include_expired: bool = False) -> Decimal:
        """Sum of batch quantities; expired batches only counted on request"""
        query = self.db.query(func.coalesce(func.sum(StockBatch.quantity), 0)).filter(
            StockBatch.stock_item_id == item_id,
            StockBatch.warehouse_id == warehouse_id,
        )
        if include_expired:
            query = query.filter(StockBatch.quantity > 0)
        else:
            query = query.filter(available_batch_filter(utcnow()))
        return round_quantity(query.scalar())

    def get_expired_batch_quantity(self, item_id: int, warehouse_id: int) -> Decimal:
        """Stock held in expired batches; still on the ledger until written off"""
        return round_quantity(self.db.query(func.coalesce(func.sum(StockBatch.quantity), 0)).filter(
            StockBatch.stock_item_id == item_id,
            StockBatch.warehouse_id == warehouse_id,
            expired_batch_filter(utcnow())
        ).scalar())

    def get_unexpired_ledger_quantity(self, item_id: int, warehouse_id: int) -> Decimal:
        """
        Ledger quantity an outflow without batches may draw

        Locks the ledger row. Quantity sitting in expired batches is held
        back so only a write-off can remove it.
        """
        expired = self.get_expired_batch_quantity(item_id, warehouse_id)
        ledger_quantity = self.ledger.available_quantity(item_id, warehouse_id)
        return max(round_quantity(ledger_quantity - expired), ZERO)

    def check_unexpired_ledger_quantity(self, item_id: int, warehouse_id: int, quantity: Decimal):
        """Raise InsufficientStockError when quantity reaches into expired lots"""
        available = self.get_unexpired_ledger_quantity(item_id, warehouse_id)
        if quantity > available:
            raise InsufficientStockError(
                f"Insufficient stock outside expired batches. Available: {available}, "
                f"Requested: {quantity}",
                available=available, requested=quantity
            )
        return available

    def get_expiring_batches(self, warehouse_id: int,
                             days_threshold: int = settings.DEFAULT_EXPIRY_ALERT_DAYS) -> List[Dict]:
        """Live batches expiring between now and now + days_threshold"""
        now = utcnow()
        batches = self.db.query(StockBatch).filter(
            StockBatch.warehouse_id == warehouse_id,
            StockBatch.is_expired.is_(False),
            StockBatch.quantity > 0,
            StockBatch.expiration_date.isnot(None),
            StockBatch.expiration_date >= now,
            StockBatch.expiration_date <= now + timedelta(days=days_threshold),
        ).order_by(StockBatch.expiration_date.asc(), StockBatch.id.asc()).all()
        return [batch_to_dict(batch, now) for batch in batches]

    def get_expiring_batches_by_property(self, scope: ScopeFilter = ALL_PROPERTIES,
                                         days_threshold: int = settings.DEFAULT_EXPIRY_ALERT_DAYS) -> List[Dict]:
        now = utcnow()
        query = self.db.query(StockBatch).join(
            Warehouse, StockBatch.warehouse_id == Warehouse.id
        ).filter(
            Warehouse.is_active.is_(True),
            StockBatch.is_expired.is_(False),
            StockBatch.quantity > 0,
            StockBatch.expiration_date.isnot(None),
            StockBatch.expiration_date >= now,
            StockBatch.expiration_date <= now + timedelta(days=days_threshold),
        )
        query = scope.apply(query, Warehouse.property_id)
        batches = query.order_by(StockBatch.expiration_date.asc(), StockBatch.id.asc()).all()
        return [batch_to_dict(batch, now) for batch in batches]

    def get_expired_batches(self, warehouse_id: Optional[int] = None) -> List[StockBatch]:
        """Batches past their date that the sweep has not flagged yet"""
        query = self.db.query(StockBatch).filter(
            StockBatch.is_expired.is_(False),
            StockBatch.expiration_date.isnot(None),
            StockBatch.expiration_date < utcnow(),
        )
        if warehouse_id:
            query = query.filter(StockBatch.warehouse_id == warehouse_id)
        return query.order_by(StockBatch.expiration_date.asc()).all()

    def generate_expiration_report(self, warehouse_id: int,
                                   days_ahead: int = settings.EXPIRATION_REPORT_DAYS) -> Dict:
        """Split stocked batches of a warehouse into expired / expiring / safe"""
        now = utcnow()
        horizon = now + timedelta(days=days_ahead)
        batches = self.get_batches_by_warehouse(warehouse_id)

        buckets = {'expired': [], 'expiring': [], 'safe': []}
        for batch in batches:
            if is_batch_expired(batch, now):
                buckets['expired'].append(batch)
            elif batch.expiration_date is not None and batch.expiration_date <= horizon:
                buckets['expiring'].append(batch)
            else:
                buckets['safe'].append(batch)

        report = {
            'warehouse_id': warehouse_id,
            'generated_at': now,
            'days_ahead': days_ahead,
        }
        for name, rows in buckets.items():
            report[name] = {
                'count': len(rows),
                'total_value': round_money(sum(
                    (line_total(b.quantity, b.unit_cost) for b in rows), ZERO
                )),
                'batches': [batch_to_dict(b, now) for b in rows],
            }
        return report

    # Consumption

    def draw_fefo(self, item_id: int, warehouse_id: int, quantity: Decimal,
                  movement_type: MovementType = MovementType.CONSUMPTION,
                  reference_type: Optional[str] = None, reference_id: Any = None,
                  reason: Optional[str] = None) -> Tuple[List[Dict], List]:
        """
        Take quantity from live batches in FEFO order

        Availability is checked against both the batches and the ledger
        before anything is written. Writes one movement per batch touched
        and one ledger decrement. Returns (allocations, movements).
        """
        batches = self.get_available_batches(item_id, warehouse_id, lock=True)
        available = sum((to_decimal(b.quantity) for b in batches), ZERO)
        if quantity > available:
            raise InsufficientStockError(
                f"Insufficient stock in non-expired batches. Available: {available}, "
                f"Requested: {quantity}",
                available=available, requested=quantity
            )
        ledger_available = self.ledger.available_quantity(item_id, warehouse_id)
        if quantity > ledger_available:
            raise InsufficientStockError(
                f"Insufficient stock. Available: {ledger_available}, Requested: {quantity}",
                available=ledger_available, requested=quantity
            )

        allocations = []
        movements = []
        remaining = quantity
        for batch in batches:
            if remaining <= ZERO:
                break
            take = min(remaining, to_decimal(batch.quantity))
            batch.quantity = round_quantity(to_decimal(batch.quantity) - take)
            remaining -= take

            movement = record_movement(
                self.db, item_id, movement_type, take, batch.unit_cost, self.actor_id,
                source_warehouse_id=warehouse_id,
                batch_id=batch.id,
                reference_type=reference_type,
                reference_id=reference_id,
                reason=reason,
            )
            movements.append(movement)
            allocations.append({
                'batch_id': batch.id,
                'batch_number': batch.batch_number,
                'quantity': take,
                'unit_cost': to_decimal(batch.unit_cost),
                'total_cost': to_decimal(movement.total_cost),
                'remaining_quantity': to_decimal(batch.quantity),
                'expiration_date': batch.expiration_date,
            })

        self.ledger.decrease_on_outflow(item_id, warehouse_id, quantity)
        return allocations, movements

    def draw_from_batch(self, batch: StockBatch, quantity: Decimal,
                        movement_type: MovementType = MovementType.CONSUMPTION,
                        reference_type: Optional[str] = None, reference_id: Any = None,
                        reason: Optional[str] = None,
                        allow_expired: bool = False):
        """Take quantity from one pinned batch plus the ledger"""
        if not allow_expired and is_batch_expired(batch):
            raise InvalidStateError(f"Batch {batch.batch_number} is expired")

        batch_qty = to_decimal(batch.quantity)
        if quantity > batch_qty:
            raise InsufficientStockError(
                f"Insufficient batch quantity. Available: {batch_qty}, Requested: {quantity}",
                available=batch_qty, requested=quantity
            )
        ledger_available = self.ledger.available_quantity(batch.stock_item_id, batch.warehouse_id)
        if quantity > ledger_available:
            raise InsufficientStockError(
                f"Insufficient stock. Available: {ledger_available}, Requested: {quantity}",
                available=ledger_available, requested=quantity
            )

        batch.quantity = round_quantity(batch_qty - quantity)
        movement = record_movement(
            self.db, batch.stock_item_id, movement_type, quantity, batch.unit_cost, self.actor_id,
            source_warehouse_id=batch.warehouse_id,
            batch_id=batch.id,
            reference_type=reference_type,
            reference_id=reference_id,
            reason=reason,
        )
        self.ledger.decrease_on_outflow(batch.stock_item_id, batch.warehouse_id, quantity)
        return movement

    def consume_stock_fefo(self, consume_data: Dict) -> ServiceResult:
        """
        Consume from batches earliest-expiry first
        Returns (success, consumption summary or error)
        """
        try:
            item = self._get_item(consume_data.get('stock_item_id'))
            warehouse = self._get_warehouse(consume_data.get('warehouse_id'))
            quantity = require_positive_quantity(consume_data.get('quantity'))

            allocations, movements = self.draw_fefo(
                item.id, warehouse.id, quantity,
                reference_type=consume_data.get('reference_type'),
                reference_id=consume_data.get('reference_id'),
                reason=consume_data.get('reason'),
            )
            total_cost = round_money(sum((a['total_cost'] for a in allocations), ZERO))
            self._audit("CONSUME_FEFO", "stock_movements", movements[0].id, {
                'stock_item_id': item.id,
                'warehouse_id': warehouse.id,
                'quantity': quantity,
                'batches': len(allocations),
            })

            self.db.commit()
            logger.info(f"FEFO consumption of {quantity} item {item.id} from warehouse "
                        f"{warehouse.id} across {len(allocations)} batch(es)")
            return True, {
                'stock_item_id': item.id,
                'warehouse_id': warehouse.id,
                'quantity': quantity,
                'total_cost': total_cost,
                'allocations': allocations,
                'movement_ids': [m.id for m in movements],
            }

        except Exception as e:
            return self._handle_error("consume stock", e)

    def consume_from_batch(self, batch_id: int, consume_data: Dict) -> ServiceResult:
        """
        Consume from a specific batch
        Returns (success, movement data or error)
        """
        try:
            batch = self._get_batch(batch_id, lock=True)
            quantity = require_positive_quantity(consume_data.get('quantity'))
            movement = self.draw_from_batch(
                batch, quantity,
                reference_type=consume_data.get('reference_type'),
                reference_id=consume_data.get('reference_id'),
                reason=consume_data.get('reason'),
            )
            self._audit("CONSUME_BATCH", "stock_batches", batch.id, {
                'batch_number': batch.batch_number,
                'quantity': quantity,
            })

            self.db.commit()
            logger.info(f"Consumed {quantity} from batch {batch.batch_number}")
            return True, {
                'batch_id': batch.id,
                'batch_number': batch.batch_number,
                'quantity': quantity,
                'unit_cost': to_decimal(batch.unit_cost),
                'total_cost': to_decimal(movement.total_cost),
                'remaining_quantity': to_decimal(batch.quantity),
                'movement_id': movement.id,
            }

        except Exception as e:
            return self._handle_error("consume from batch", e)

    # Expiration lifecycle

    def mark_all_expired_batches(self, warehouse_id: Optional[int] = None) -> ServiceResult:
        """
        Flag every batch past its expiration date; safe to re-run
        Returns (success, {'count': n} or error)
        """
        try:
            query = self.db.query(StockBatch).filter(
                StockBatch.is_expired.is_(False),
                StockBatch.expiration_date.isnot(None),
                StockBatch.expiration_date < utcnow(),
            )
            if warehouse_id:
                query = query.filter(StockBatch.warehouse_id == warehouse_id)

            count = query.update({StockBatch.is_expired: True}, synchronize_session=False)
            if count:
                self._audit("MARK_EXPIRED_SWEEP", "stock_batches", warehouse_id or 'ALL', {
                    'count': count,
                })
            self.db.commit()
            logger.info(f"Expiration sweep flagged {count} batch(es)"
                        + (f" in warehouse {warehouse_id}" if warehouse_id else ""))
            return True, {'count': count}

        except Exception as e:
            return self._handle_error("mark expired batches", e)

    def mark_expired(self, batch_id: int) -> ServiceResult:
        """Flag a single batch as expired"""
        try:
            batch = self._get_batch(batch_id, lock=True)
            if batch.is_expired:
                raise InvalidStateError(f"Batch {batch.batch_number} is already marked as expired")
            batch.is_expired = True
            self._audit("MARK_EXPIRED", "stock_batches", batch.id, {'is_expired': True})
            self.db.commit()
            return True, batch_to_dict(batch)

        except Exception as e:
            return self._handle_error("mark batch expired", e)

    def unmark_expired(self, batch_id: int) -> ServiceResult:
        """Clear the expired flag on a batch"""
        try:
            batch = self._get_batch(batch_id, lock=True)
            if not batch.is_expired:
                raise InvalidStateError(f"Batch {batch.batch_number} is not marked as expired")
            batch.is_expired = False
            self._audit("UNMARK_EXPIRED", "stock_batches", batch.id, {'is_expired': False})
            self.db.commit()
            return True, batch_to_dict(batch)

        except Exception as e:
            return self._handle_error("unmark batch expired", e)

    def update_batch_quantity(self, batch_id: int, new_quantity: Any, reason: Optional[str]) -> ServiceResult:
        """
        Correct a batch after a physical count

        The ledger moves by the same delta and an ADJUSTMENT movement is
        written at the batch's unit cost.
        """
        try:
            reason = require_reason(reason, "Reason is required for quantity adjustments")
            batch = self._get_batch(batch_id, lock=True)
            if new_quantity is None:
                raise ValidationError("New quantity is required")
            new_quantity = round_quantity(new_quantity)
            if new_quantity < ZERO:
                raise ValidationError("Quantity cannot be negative")

            old_quantity = to_decimal(batch.quantity)
            delta = round_quantity(new_quantity - old_quantity)
            if delta == ZERO:
                raise ValidationError("New quantity is the same as the current quantity")

            self.ledger.adjust_by(batch.stock_item_id, batch.warehouse_id, delta)
            batch.quantity = new_quantity
            movement = record_movement(
                self.db, batch.stock_item_id, MovementType.ADJUSTMENT, abs(delta),
                batch.unit_cost, self.actor_id,
                source_warehouse_id=batch.warehouse_id if delta < ZERO else None,
                destination_warehouse_id=batch.warehouse_id if delta > ZERO else None,
                batch_id=batch.id,
                reference_type=ReferenceType.STOCK_BATCH.value,
                reference_id=batch.id,
                reason=reason,
            )
            self._audit("ADJUST_BATCH", "stock_batches", batch.id,
                        {'quantity': new_quantity, 'reason': reason},
                        old_values={'quantity': old_quantity})

            self.db.commit()
            logger.info(f"Batch {batch.batch_number} adjusted {old_quantity} -> {new_quantity}")
            return True, {
                'batch_id': batch.id,
                'previous_quantity': old_quantity,
                'new_quantity': new_quantity,
                'adjustment': delta,
                'movement_id': movement.id,
            }

        except Exception as e:
            return self._handle_error("update batch quantity", e)

    def update_batch_expiration_date(self, batch_id: int, expiration_date: Optional[datetime]) -> ServiceResult:
        """Change a batch's expiry; the expired flag follows the new date"""
        try:
            batch = self._get_batch(batch_id, lock=True)
            old_date = batch.expiration_date
            batch.expiration_date = expiration_date
            batch.is_expired = expiration_date is not None and expiration_date < utcnow()
            self._audit("UPDATE_BATCH_EXPIRY", "stock_batches", batch.id,
                        {'expiration_date': expiration_date},
                        old_values={'expiration_date': old_date})
            self.db.commit()
            return True, batch_to_dict(batch)

        except Exception as e:
            return self._handle_error("update batch expiration date", e)


__all__ = [
    'LotTrackingService',
    'fefo_order',
    'available_batch_filter',
    'is_batch_expired',
    'batch_to_dict',
]
