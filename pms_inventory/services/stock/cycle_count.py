"""
Cycle Count Service
Count sessions, count sheets, variance calculation and approved adjustments
"""
import logging
import random
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func

from pms_inventory.core.config import settings
from pms_inventory.core.exceptions import (
    InsufficientStockError, InvalidStateError, NotFoundError, SequenceOverflowError, ValidationError
)
from pms_inventory.core.precision import (
    ZERO, to_decimal, round_quantity, round_money, line_total, utcnow
)
from pms_inventory.core.scope import ScopeFilter, ALL_PROPERTIES
from pms_inventory.models.counting import CycleCount, CycleCountItem
from pms_inventory.models.stock import StockBatch, StockCategory, StockItem, StockLevel, Warehouse
from pms_inventory.schemas.stock import (
    CycleCountStatus, CycleCountType, MovementType, ReferenceType, enum_values
)
from .base import InventoryService, ServiceResult, require_reason
from .movement_log import record_movement
from .stock_ledger import StockLedgerService

logger = logging.getLogger(__name__)

HUNDRED = Decimal('100')

ABC_TYPES = {
    CycleCountType.ABC_CLASS_A: 'A',
    CycleCountType.ABC_CLASS_B: 'B',
    CycleCountType.ABC_CLASS_C: 'C',
}


# Pure helpers

def generate_count_number_pure(existing_numbers: Iterable[str], year: Optional[int] = None) -> str:
    """Next CC-YYYY-NNNN number: the year's highest sequence plus one"""
    year = year or utcnow().year
    prefix = f"{settings.CYCLE_COUNT_PREFIX}-{year}-"

    sequences = [int(number[len(prefix):]) for number in existing_numbers
                 if number and number.startswith(prefix) and number[len(prefix):].isdigit()]
    sequence = max(sequences) + 1 if sequences else 1

    if sequence > settings.MAX_CYCLE_COUNT_SEQUENCE_PER_YEAR:
        raise SequenceOverflowError(
            f"Cycle count sequence overflow: cannot generate more than "
            f"{settings.MAX_CYCLE_COUNT_SEQUENCE_PER_YEAR} counts in {year}",
            {'year': year, 'sequence': sequence}
        )
    return f"{prefix}{sequence:04d}"


def classify_abc(values: Iterable[Tuple[int, Decimal]]) -> Dict[int, str]:
    """
    ABC class per item from its stock value

    Items are ranked by value; the first 80% of cumulative value is A,
    the next 15% B and the rest C. All items are C when the total is zero.
    """
    ranked = sorted(((item_id, to_decimal(value)) for item_id, value in values),
                    key=lambda pair: pair[1], reverse=True)
    total = sum((value for _, value in ranked), ZERO)
    if total <= ZERO:
        return {item_id: 'C' for item_id, _ in ranked}

    classes = {}
    cumulative = ZERO
    for item_id, value in ranked:
        cumulative += value
        share = cumulative / total * HUNDRED
        if share <= settings.ABC_CLASS_A_CUTOFF:
            classes[item_id] = 'A'
        elif share <= settings.ABC_CLASS_B_CUTOFF:
            classes[item_id] = 'B'
        else:
            classes[item_id] = 'C'
    return classes


def calculate_line_variance(system_quantity, counted_quantity,
                            unit_cost) -> Tuple[Decimal, Decimal, Decimal]:
    """
    (variance, variance_percent, variance_cost) of one count line

    Variance is counted minus system. Against a zero system quantity the
    percent is 100 for any difference and 0 otherwise.
    """
    system_quantity = to_decimal(system_quantity)
    variance = round_quantity(to_decimal(counted_quantity) - system_quantity)
    if system_quantity == ZERO:
        percent = HUNDRED if variance != ZERO else ZERO
    else:
        percent = variance / system_quantity * HUNDRED
    return variance, round_money(percent), line_total(variance, unit_cost)


def cycle_count_item_to_dict(line: CycleCountItem, hide_system: bool = False) -> Dict:
    result = {
        'id': line.id,
        'stock_item_id': line.stock_item_id,
        'item_code': line.stock_item.item_code if line.stock_item else None,
        'item_name': line.stock_item.name if line.stock_item else None,
        'batch_id': line.batch_id,
        'batch_number': line.batch.batch_number if line.batch else None,
        'system_quantity': to_decimal(line.system_quantity),
        'unit_cost': to_decimal(line.unit_cost),
        'counted_quantity': to_decimal(line.counted_quantity) if line.counted_quantity is not None else None,
        'variance': to_decimal(line.variance) if line.variance is not None else None,
        'variance_percent': to_decimal(line.variance_percent) if line.variance_percent is not None else None,
        'variance_cost': to_decimal(line.variance_cost) if line.variance_cost is not None else None,
        'counted_by': line.counted_by,
        'counted_at': line.counted_at,
        'notes': line.notes,
        'adjustment_made': bool(line.adjustment_made),
        'adjustment_movement_id': line.adjustment_movement_id,
    }
    if hide_system:
        for key in ('system_quantity', 'variance', 'variance_percent', 'variance_cost'):
            result[key] = None
    return result


def cycle_count_to_dict(count: CycleCount, include_items: bool = True) -> Dict:
    result = {
        'id': count.id,
        'count_number': count.count_number,
        'property_id': count.property_id,
        'warehouse_id': count.warehouse_id,
        'type': count.type,
        'status': count.status,
        'blind_count': bool(count.blind_count),
        'sample_percent': count.sample_percent,
        'scheduled_at': count.scheduled_at,
        'started_at': count.started_at,
        'completed_at': count.completed_at,
        'notes': count.notes,
        'created_by': count.created_by,
        'approved_by': count.approved_by,
        'total_items': count.total_items,
        'items_counted': count.items_counted,
        'items_with_variance': count.items_with_variance,
        'total_variance_cost': to_decimal(count.total_variance_cost),
        'accuracy_percent': to_decimal(count.accuracy_percent) if count.accuracy_percent is not None else None,
        'created_at': count.created_at,
    }
    if include_items:
        hide_system = bool(count.blind_count) and count.status == CycleCountStatus.IN_PROGRESS.value
        result['items'] = [cycle_count_item_to_dict(line, hide_system) for line in count.items]
    return result


class CycleCountService(InventoryService):
    """
    Physical count workflow

    DRAFT/SCHEDULED -> IN_PROGRESS -> PENDING_REVIEW -> COMPLETED, with
    rejection sending a count back to IN_PROGRESS. Starting a count
    snapshots system quantities; approval books each line's variance as an
    ADJUSTMENT against the batch it names, or the ledger when it names none.
    """

    def __init__(self, db, actor_id: Optional[str] = None):
        super().__init__(db, actor_id)
        self.ledger = StockLedgerService(db, actor_id)

    # Lookups

    def _get_count(self, count_id: int, lock: bool = False) -> CycleCount:
        query = self.db.query(CycleCount).filter(CycleCount.id == count_id)
        if lock:
            query = query.with_for_update()
        count = query.first()
        if not count:
            raise NotFoundError(f"Cycle count {count_id} not found")
        return count

    def _require_status(self, count: CycleCount, allowed, action: str):
        allowed_values = [status.value for status in allowed]
        if count.status not in allowed_values:
            raise InvalidStateError(
                f"Cannot {action} cycle count {count.count_number} in {count.status} status. "
                f"Allowed: {', '.join(allowed_values)}"
            )

    def _next_count_number(self) -> str:
        year = utcnow().year
        prefix = f"{settings.CYCLE_COUNT_PREFIX}-{year}-"
        existing = [row[0] for row in self.db.query(CycleCount.count_number).filter(
            CycleCount.count_number.like(f"{prefix}%")
        ).all()]
        return generate_count_number_pure(existing, year)

    # Count sheet building

    def _stocked_levels(self, warehouse_id: int, item_ids: Optional[List[int]] = None,
                        include_empty: bool = False) -> List[Tuple[StockItem, Optional[StockLevel]]]:
        """Active items with their ledger row; SPOT counts may include items with no stock"""
        if include_empty:
            items = self.db.query(StockItem).filter(
                StockItem.id.in_(item_ids or []), StockItem.is_active.is_(True)
            ).order_by(StockItem.id).all()
            levels = {level.stock_item_id: level for level in self.db.query(StockLevel).filter(
                StockLevel.warehouse_id == warehouse_id,
                StockLevel.stock_item_id.in_([item.id for item in items])
            ).all()}
            return [(item, levels.get(item.id)) for item in items]

        query = self.db.query(StockItem, StockLevel).join(
            StockLevel, StockLevel.stock_item_id == StockItem.id
        ).filter(
            StockLevel.warehouse_id == warehouse_id,
            StockLevel.quantity > 0,
            StockItem.is_active.is_(True),
        )
        if item_ids is not None:
            query = query.filter(StockItem.id.in_(item_ids))
        return query.order_by(StockItem.id).all()

    def _select_levels(self, count: CycleCount, item_ids: Optional[List[int]],
                       sample_percent: Optional[int]) -> List[Tuple[StockItem, Optional[StockLevel]]]:
        count_type = CycleCountType(count.type)

        if count_type == CycleCountType.SPOT:
            if not item_ids:
                raise ValidationError("SPOT counts require at least one item")
            return self._stocked_levels(count.warehouse_id, item_ids, include_empty=True)

        stocked = self._stocked_levels(count.warehouse_id)

        if count_type in ABC_TYPES:
            classes = classify_abc(
                (item.id, line_total(level.quantity, level.average_cost)) for item, level in stocked
            )
            target = ABC_TYPES[count_type]
            return [(item, level) for item, level in stocked if classes.get(item.id) == target]

        if count_type == CycleCountType.RANDOM:
            sample_percent = sample_percent or count.sample_percent
            if not sample_percent:
                raise ValidationError("RANDOM counts require a sample percentage")
            if not stocked:
                return []
            size = max(1, round(len(stocked) * sample_percent / 100))
            return sorted(random.sample(stocked, min(size, len(stocked))), key=lambda pair: pair[0].id)

        return stocked

    def _build_lines(self, warehouse_id: int, item: StockItem, level: Optional[StockLevel],
                     include_batches: bool) -> List[CycleCountItem]:
        """One line per batch holding stock, plus the unbatched remainder of the ledger"""
        ledger_quantity = to_decimal(level.quantity) if level else ZERO
        average_cost = to_decimal(level.average_cost) if level else ZERO
        batches = []
        if include_batches:
            batches = self.db.query(StockBatch).filter(
                StockBatch.stock_item_id == item.id,
                StockBatch.warehouse_id == warehouse_id,
                StockBatch.quantity > 0,
            ).order_by(StockBatch.id).all()

        lines = [CycleCountItem(
            stock_item_id=item.id,
            batch_id=batch.id,
            system_quantity=to_decimal(batch.quantity),
            unit_cost=to_decimal(batch.unit_cost),
        ) for batch in batches]

        remainder = round_quantity(ledger_quantity - sum((to_decimal(b.quantity) for b in batches), ZERO))
        if not batches or remainder > ZERO:
            lines.append(CycleCountItem(
                stock_item_id=item.id,
                system_quantity=max(remainder, ZERO),
                unit_cost=average_cost,
            ))
        return lines

    def _snapshot(self, count: CycleCount, line: CycleCountItem):
        """Refresh a line's system quantity and cost from the current stock"""
        if line.batch_id:
            batch = self.db.get(StockBatch, line.batch_id)
            line.system_quantity = to_decimal(batch.quantity) if batch else ZERO
            line.unit_cost = to_decimal(batch.unit_cost) if batch else ZERO
            return

        level = self.db.query(StockLevel).filter(
            StockLevel.stock_item_id == line.stock_item_id,
            StockLevel.warehouse_id == count.warehouse_id
        ).first()
        ledger_quantity = to_decimal(level.quantity) if level else ZERO
        batched = ZERO
        if any(other.batch_id for other in count.items if other.stock_item_id == line.stock_item_id):
            batched = to_decimal(self.db.query(func.coalesce(func.sum(StockBatch.quantity), 0)).filter(
                StockBatch.stock_item_id == line.stock_item_id,
                StockBatch.warehouse_id == count.warehouse_id,
            ).scalar())
        line.system_quantity = max(round_quantity(ledger_quantity - batched), ZERO)
        line.unit_cost = to_decimal(level.average_cost) if level else ZERO

    def _refresh_summary(self, count: CycleCount):
        lines = list(count.items)
        counted = [line for line in lines if line.counted_quantity is not None]
        with_variance = [line for line in counted
                         if line.variance is not None and to_decimal(line.variance) != ZERO]
        exact = [line for line in counted
                 if line.variance is not None and to_decimal(line.variance) == ZERO]

        count.total_items = len(lines)
        count.items_counted = len(counted)
        count.items_with_variance = len(with_variance)
        count.total_variance_cost = round_money(sum(
            (abs(to_decimal(line.variance_cost)) for line in lines if line.variance_cost is not None), ZERO
        ))
        count.accuracy_percent = (
            round_money(Decimal(len(exact)) / Decimal(len(counted)) * HUNDRED) if counted else ZERO
        )

    def _calculate(self, count: CycleCount) -> int:
        processed = 0
        for line in count.items:
            if line.counted_quantity is None:
                continue
            line.variance, line.variance_percent, line.variance_cost = calculate_line_variance(
                line.system_quantity, line.counted_quantity, line.unit_cost
            )
            processed += 1
        self._refresh_summary(count)
        return processed

    def _adjust_line(self, count: CycleCount, line: CycleCountItem, reason: str):
        """Book one line's variance; batch first, then the ledger"""
        delta = to_decimal(line.variance)
        batch = None
        unit_cost = to_decimal(line.unit_cost)
        if line.batch_id:
            batch = self._get_batch(line.batch_id, lock=True)
            new_quantity = round_quantity(to_decimal(batch.quantity) + delta)
            if new_quantity < ZERO:
                raise InsufficientStockError(
                    f"Batch {batch.batch_number} no longer holds the counted stock. "
                    f"Available: {to_decimal(batch.quantity)}, Requested: {-delta}",
                    available=to_decimal(batch.quantity), requested=-delta
                )
            batch.quantity = new_quantity
            unit_cost = to_decimal(batch.unit_cost)
        else:
            level = self.ledger.lock_level(line.stock_item_id, count.warehouse_id)
            if level is not None:
                unit_cost = to_decimal(level.average_cost)

        self.ledger.adjust_by(line.stock_item_id, count.warehouse_id, delta)
        movement = record_movement(
            self.db, line.stock_item_id, MovementType.ADJUSTMENT, abs(delta), unit_cost, self.actor_id,
            source_warehouse_id=count.warehouse_id if delta < ZERO else None,
            destination_warehouse_id=count.warehouse_id if delta > ZERO else None,
            batch_id=batch.id if batch is not None else None,
            reference_type=ReferenceType.CYCLE_COUNT.value,
            reference_id=line.id,
            reason=reason,
        )
        line.adjustment_made = True
        line.adjustment_movement_id = movement.id
        return movement

    def _apply_adjustments(self, count: CycleCount) -> List[Dict]:
        reason = f"Cycle Count Adjustment: {count.count_number}"
        adjustments = []
        for line in count.items:
            if line.adjustment_made or line.variance is None or to_decimal(line.variance) == ZERO:
                continue
            movement = self._adjust_line(count, line, reason)
            adjustments.append({
                'cycle_count_item_id': line.id,
                'stock_item_id': line.stock_item_id,
                'batch_id': line.batch_id,
                'variance': to_decimal(line.variance),
                'movement_id': movement.id,
            })
        return adjustments

    # Queries

    def get_cycle_count(self, count_id: int) -> Optional[Dict]:
        count = self.db.get(CycleCount, count_id)
        return cycle_count_to_dict(count) if count else None

    def get_count_sheet(self, count_id: int) -> Optional[List[Dict]]:
        """Count sheet lines; system figures are hidden on blind counts in progress"""
        count = self.db.get(CycleCount, count_id)
        return cycle_count_to_dict(count)["items"] if count else None

    def list_cycle_counts(self, scope: ScopeFilter = ALL_PROPERTIES,
                          warehouse_id: Optional[int] = None,
                          status: Optional[str] = None,
                          start_date: Optional[datetime] = None,
                          end_date: Optional[datetime] = None,
                          skip: int = 0,
                          limit: int = settings.DEFAULT_PAGE_SIZE) -> Dict:
        query = scope.apply(self.db.query(CycleCount), CycleCount.property_id)
        if warehouse_id:
            query = query.filter(CycleCount.warehouse_id == warehouse_id)
        if status:
            query = query.filter(CycleCount.status == CycleCountStatus(status).value)
        if start_date:
            query = query.filter(CycleCount.created_at >= start_date)
        if end_date:
            query = query.filter(CycleCount.created_at <= end_date)
        total = query.count()
        counts = query.order_by(CycleCount.created_at.desc(), CycleCount.id.desc()
                                ).offset(skip).limit(limit).all()
        return {
            'cycle_counts': [cycle_count_to_dict(c, include_items=False) for c in counts],
            'total': total,
            'skip': skip,
            'limit': limit,
        }

    def classify_items_abc(self, warehouse_id: int) -> List[Dict]:
        stocked = self._stocked_levels(warehouse_id)
        values = {item.id: line_total(level.quantity, level.average_cost) for item, level in stocked}
        classes = classify_abc(values.items())
        return sorted(({
            'stock_item_id': item_id,
            'total_value': values[item_id],
            'classification': classification,
        } for item_id, classification in classes.items()),
            key=lambda row: row['total_value'], reverse=True)

    # Workflow

    def create_cycle_count(self, count_data: Dict) -> ServiceResult:
        """
        Open a count session in DRAFT, or SCHEDULED when a date is given
        Returns (success, cycle count data or error)
        """
        try:
            warehouse = self._get_warehouse(count_data.get('warehouse_id'))
            raw_type = count_data.get('type')
            try:
                count_type = CycleCountType(raw_type)
            except ValueError:
                raise ValidationError(
                    f"Invalid cycle count type '{raw_type}'. Must be one of: {', '.join(enum_values(CycleCountType))}"
                )
            sample_percent = count_data.get('sample_percent')
            if count_type == CycleCountType.RANDOM:
                if sample_percent is None:
                    raise ValidationError("RANDOM counts require a sample percentage")
                if not 0 < int(sample_percent) <= 100:
                    raise ValidationError("Sample percentage must be between 1 and 100")

            scheduled_at = count_data.get('scheduled_at')
            count = CycleCount(
                count_number=self._next_count_number(),
                property_id=warehouse.property_id,
                warehouse_id=warehouse.id,
                type=count_type.value,
                status=(CycleCountStatus.SCHEDULED if scheduled_at else CycleCountStatus.DRAFT).value,
                blind_count=bool(count_data.get('blind_count')),
                sample_percent=int(sample_percent) if sample_percent is not None else None,
                scheduled_at=scheduled_at,
                notes=(count_data.get('notes') or '').strip() or None,
                created_by=self.actor_id,
            )
            self.db.add(count)
            self.db.flush()

            self._audit("CREATE_CYCLE_COUNT", "cycle_counts", count.count_number, {
                'warehouse_id': warehouse.id,
                'type': count.type,
                'status': count.status,
            })
            self.db.commit()
            logger.info(f"Cycle count {count.count_number} ({count.type}) opened for {warehouse.name}")
            return True, cycle_count_to_dict(count)

        except Exception as e:
            return self._handle_error("create cycle count", e)

    def populate_count_items(self, count_id: int, options: Optional[Dict] = None) -> ServiceResult:
        """
        Build the count sheet of a count not yet started, replacing any earlier lines
        options: item_ids (SPOT), sample_percent (RANDOM), include_batches
        """
        try:
            options = options or {}
            count = self._get_count(count_id, lock=True)
            self._require_status(count, (CycleCountStatus.DRAFT, CycleCountStatus.SCHEDULED), "populate")

            selected = self._select_levels(count, options.get('item_ids'), options.get('sample_percent'))
            include_batches = options.get('include_batches', True)

            count.items.clear()
            self.db.flush()
            for item, level in selected:
                count.items.extend(self._build_lines(count.warehouse_id, item, level, include_batches))
            count.total_items = len(count.items)
            self.db.flush()

            self._audit("POPULATE_CYCLE_COUNT", "cycle_counts", count.count_number,
                        {'lines': count.total_items})
            self.db.commit()
            logger.info(f"Cycle count {count.count_number} populated with {count.total_items} line(s)")
            return True, {'cycle_count_id': count.id, 'items_created': count.total_items}

        except Exception as e:
            return self._handle_error("populate cycle count", e)

    def start_cycle_count(self, count_id: int) -> ServiceResult:
        """Snapshot system quantities and move to IN_PROGRESS"""
        try:
            count = self._get_count(count_id, lock=True)
            self._require_status(count, (CycleCountStatus.DRAFT, CycleCountStatus.SCHEDULED), "start")
            if not count.items:
                raise ValidationError("Cannot start a cycle count with no items. Populate the count sheet first")

            for line in count.items:
                self._snapshot(count, line)
            old_status = count.status
            count.status = CycleCountStatus.IN_PROGRESS.value
            count.started_at = utcnow()

            self._audit("START_CYCLE_COUNT", "cycle_counts", count.count_number,
                        {'status': count.status}, old_values={'status': old_status})
            self.db.commit()
            logger.info(f"Cycle count {count.count_number} started")
            return True, cycle_count_to_dict(count)

        except Exception as e:
            return self._handle_error("start cycle count", e)

    def _record(self, line: CycleCountItem, counted_quantity, notes: Optional[str]):
        if counted_quantity is None:
            raise ValidationError("Counted quantity is required")
        counted_quantity = round_quantity(counted_quantity)
        if counted_quantity < ZERO:
            raise ValidationError("Counted quantity cannot be negative")
        line.counted_quantity = counted_quantity
        line.counted_by = self.actor_id
        line.counted_at = utcnow()
        line.notes = (notes or '').strip() or None

    def record_count(self, line_id: int, count_data: Dict) -> ServiceResult:
        """
        Enter the physical quantity for one count sheet line
        Returns (success, line data or error)
        """
        try:
            line = self.db.get(CycleCountItem, line_id)
            if not line:
                raise NotFoundError(f"Cycle count item {line_id} not found")
            count = self._get_count(line.cycle_count_id, lock=True)
            self._require_status(count, (CycleCountStatus.IN_PROGRESS,), "record counts on")
            self._record(line, count_data.get('counted_quantity'), count_data.get('notes'))

            self.db.commit()
            return True, cycle_count_item_to_dict(line, hide_system=bool(count.blind_count))

        except Exception as e:
            return self._handle_error("record count", e)

    def record_bulk_counts(self, count_id: int, counts: List[Dict]) -> ServiceResult:
        """Enter several lines at once; all or none are saved"""
        try:
            if not counts:
                raise ValidationError("At least one count is required")
            count = self._get_count(count_id, lock=True)
            self._require_status(count, (CycleCountStatus.IN_PROGRESS,), "record counts on")
            lines = {line.id: line for line in count.items}
            for entry in counts:
                line = lines.get(entry.get('cycle_count_item_id'))
                if line is None:
                    raise ValidationError(
                        f"Cycle count item {entry.get('cycle_count_item_id')} is not on {count.count_number}"
                    )
                self._record(line, entry.get('counted_quantity'), entry.get('notes'))

            self.db.commit()
            return True, {'cycle_count_id': count.id, 'items_recorded': len(counts)}

        except Exception as e:
            return self._handle_error("record counts", e)

    def calculate_variances(self, count_id: int) -> ServiceResult:
        """Recompute variance for every counted line and the count summary"""
        try:
            count = self._get_count(count_id, lock=True)
            processed = self._calculate(count)
            self.db.commit()
            return True, {'cycle_count_id': count.id, 'items_processed': processed}

        except Exception as e:
            return self._handle_error("calculate variances", e)

    def get_count_progress(self, count_id: int) -> Optional[Dict]:
        count = self.db.get(CycleCount, count_id)
        if not count:
            return None
        total = len(count.items)
        counted = sum(1 for line in count.items if line.counted_quantity is not None)
        return {
            'cycle_count_id': count.id,
            'status': count.status,
            'total_items': total,
            'items_counted': counted,
            'items_remaining': total - counted,
            'progress_percent': round_money(Decimal(counted) / Decimal(total) * HUNDRED) if total else ZERO,
        }

    def submit_for_review(self, count_id: int) -> ServiceResult:
        """Every line must be counted; variances are calculated on the way"""
        try:
            count = self._get_count(count_id, lock=True)
            self._require_status(count, (CycleCountStatus.IN_PROGRESS,), "submit")
            uncounted = [line.id for line in count.items if line.counted_quantity is None]
            if uncounted:
                raise ValidationError(
                    f"{len(uncounted)} item(s) have not been counted",
                    {'uncounted_item_ids': uncounted}
                )
            self._calculate(count)
            count.status = CycleCountStatus.PENDING_REVIEW.value

            self._audit("SUBMIT_CYCLE_COUNT", "cycle_counts", count.count_number, {
                'status': count.status,
                'items_with_variance': count.items_with_variance,
                'total_variance_cost': count.total_variance_cost,
            }, old_values={'status': CycleCountStatus.IN_PROGRESS.value})
            self.db.commit()
            logger.info(f"Cycle count {count.count_number} submitted with "
                        f"{count.items_with_variance} variance line(s)")
            return True, cycle_count_to_dict(count)

        except Exception as e:
            return self._handle_error("submit cycle count", e)

    def approve_cycle_count(self, count_id: int) -> ServiceResult:
        """
        Complete a reviewed count and book its variances
        Returns (success, cycle count data with the adjustments or error)
        """
        try:
            count = self._get_count(count_id, lock=True)
            self._require_status(count, (CycleCountStatus.PENDING_REVIEW,), "approve")

            count.status = CycleCountStatus.COMPLETED.value
            count.approved_by = self.actor_id
            count.completed_at = utcnow()
            adjustments = self._apply_adjustments(count)

            self._audit("APPROVE_CYCLE_COUNT", "cycle_counts", count.count_number, {
                'status': count.status,
                'adjustments': len(adjustments),
            }, old_values={'status': CycleCountStatus.PENDING_REVIEW.value})
            self.db.commit()
            logger.info(f"Cycle count {count.count_number} approved by {self.actor_id}, "
                        f"{len(adjustments)} adjustment(s) booked")
            result = cycle_count_to_dict(count)
            result['adjustments'] = adjustments
            return True, result

        except Exception as e:
            return self._handle_error("approve cycle count", e)

    def create_adjustments(self, count_id: int) -> ServiceResult:
        """Book variances of lines not yet adjusted; safe to repeat"""
        try:
            count = self._get_count(count_id, lock=True)
            self._require_status(count, (CycleCountStatus.PENDING_REVIEW, CycleCountStatus.COMPLETED),
                                 "create adjustments for")
            adjustments = self._apply_adjustments(count)
            if adjustments:
                self._audit("CYCLE_COUNT_ADJUSTMENTS", "cycle_counts", count.count_number,
                            {'adjustments': len(adjustments)})
            self.db.commit()
            return True, {'adjustments_created': len(adjustments), 'adjustments': adjustments}

        except Exception as e:
            return self._handle_error("create cycle count adjustments", e)

    def reject_cycle_count(self, count_id: int, reason: Optional[str],
                           clear_counts: bool = False) -> ServiceResult:
        """Send a reviewed count back for recounting"""
        try:
            reason = require_reason(reason, "Rejection reason is required")
            count = self._get_count(count_id, lock=True)
            self._require_status(count, (CycleCountStatus.PENDING_REVIEW,), "reject")

            if clear_counts:
                for line in count.items:
                    line.counted_quantity = None
                    line.counted_by = None
                    line.counted_at = None
                    line.variance = None
                    line.variance_percent = None
                    line.variance_cost = None
                    line.notes = None
                self._refresh_summary(count)
            note = f"[REJECTED {utcnow().isoformat(timespec='seconds')}] {reason}"
            count.notes = f"{count.notes}\n{note}" if count.notes else note
            count.status = CycleCountStatus.IN_PROGRESS.value

            self._audit("REJECT_CYCLE_COUNT", "cycle_counts", count.count_number,
                        {'status': count.status, 'reason': reason, 'clear_counts': clear_counts},
                        old_values={'status': CycleCountStatus.PENDING_REVIEW.value})
            self.db.commit()
            logger.info(f"Cycle count {count.count_number} rejected: {reason}")
            return True, cycle_count_to_dict(count)

        except Exception as e:
            return self._handle_error("reject cycle count", e)

    def cancel_cycle_count(self, count_id: int, reason: Optional[str] = None) -> ServiceResult:
        try:
            count = self._get_count(count_id, lock=True)
            if count.status in (CycleCountStatus.COMPLETED.value, CycleCountStatus.CANCELLED.value):
                raise InvalidStateError(f"Cycle count {count.count_number} is already {count.status}")
            old_status = count.status
            count.status = CycleCountStatus.CANCELLED.value
            if reason and reason.strip():
                note = f"[CANCELLED] {reason.strip()}"
                count.notes = f"{count.notes}\n{note}" if count.notes else note

            self._audit("CANCEL_CYCLE_COUNT", "cycle_counts", count.count_number,
                        {'status': count.status, 'reason': reason}, old_values={'status': old_status})
            self.db.commit()
            return True, cycle_count_to_dict(count)

        except Exception as e:
            return self._handle_error("cancel cycle count", e)

    # Reporting

    def get_variance_analysis(self, scope: ScopeFilter = ALL_PROPERTIES,
                              warehouse_id: Optional[int] = None,
                              start_date: Optional[datetime] = None,
                              end_date: Optional[datetime] = None,
                              limit: int = 10) -> Dict:
        """
        Variance patterns across completed counts

        Items ranked by how often and how expensively they miscount, plus
        per-category accuracy (lines counted exactly over lines counted).
        """
        query = self.db.query(CycleCountItem, StockItem, StockCategory).join(
            CycleCount, CycleCountItem.cycle_count_id == CycleCount.id
        ).join(
            StockItem, CycleCountItem.stock_item_id == StockItem.id
        ).outerjoin(
            StockCategory, StockItem.category_id == StockCategory.id
        ).join(
            Warehouse, CycleCount.warehouse_id == Warehouse.id
        ).filter(
            CycleCount.status == CycleCountStatus.COMPLETED.value,
            CycleCountItem.variance.isnot(None),
        )
        query = scope.apply(query, Warehouse.property_id)
        if warehouse_id:
            query = query.filter(CycleCount.warehouse_id == warehouse_id)
        if start_date:
            query = query.filter(CycleCount.completed_at >= start_date)
        if end_date:
            query = query.filter(CycleCount.completed_at <= end_date)
        rows = query.all()

        by_item: Dict[int, Dict] = {}
        by_category: Dict[Optional[int], Dict] = {}
        total_cost = ZERO
        occurrences = 0
        for line, item, category in rows:
            variance = to_decimal(line.variance)
            cost = abs(to_decimal(line.variance_cost))
            category_id = category.id if category else None
            category_bucket = by_category.setdefault(category_id, {
                'category_id': category_id,
                'category_name': category.name if category else None,
                'lines_counted': 0,
                'variance_count': 0,
                'total_variance_cost': ZERO,
                'item_ids': set(),
            })
            category_bucket['lines_counted'] += 1
            if variance == ZERO:
                continue

            occurrences += 1
            total_cost += cost
            category_bucket['variance_count'] += 1
            category_bucket['total_variance_cost'] += cost
            category_bucket['item_ids'].add(item.id)

            item_bucket = by_item.setdefault(item.id, {
                'stock_item_id': item.id,
                'item_code': item.item_code,
                'item_name': item.name,
                'category_id': category_id,
                'variance_count': 0,
                'total_variance_cost': ZERO,
                'percents': [],
            })
            item_bucket['variance_count'] += 1
            item_bucket['total_variance_cost'] += cost
            item_bucket['percents'].append(abs(to_decimal(line.variance_percent)))

        items = []
        for bucket in by_item.values():
            percents = bucket.pop('percents')
            bucket['total_variance_cost'] = round_money(bucket['total_variance_cost'])
            bucket['average_variance_percent'] = round_money(sum(percents, ZERO) / len(percents))
            items.append(bucket)

        categories = []
        for bucket in by_category.values():
            exact = bucket['lines_counted'] - bucket['variance_count']
            bucket['items_with_variance'] = len(bucket.pop('item_ids'))
            bucket['total_variance_cost'] = round_money(bucket['total_variance_cost'])
            bucket['accuracy_percent'] = round_money(Decimal(exact) / Decimal(bucket['lines_counted']) * HUNDRED)
            categories.append(bucket)
        categories.sort(key=lambda c: c['total_variance_cost'], reverse=True)

        worst = next((c for c in categories if c['variance_count'] > 0), None)
        return {
            'top_items_by_frequency': sorted(items, key=lambda i: i['variance_count'], reverse=True)[:limit],
            'top_items_by_cost': sorted(items, key=lambda i: i['total_variance_cost'], reverse=True)[:limit],
            'variance_by_category': categories,
            'summary': {
                'total_variance_occurrences': occurrences,
                'unique_items_with_variance': len(items),
                'total_variance_cost': round_money(total_cost),
                'most_problematic_category': worst['category_name'] if worst else None,
                'start_date': start_date,
                'end_date': end_date,
            },
        }
