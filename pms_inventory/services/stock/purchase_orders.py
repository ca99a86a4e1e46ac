"""
Purchase Order Service
PO workflow, numbering and goods receiving
"""
import logging
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Union

from pms_inventory.core.config import settings
from pms_inventory.core.exceptions import (
    InvalidStateError, NotFoundError, SequenceOverflowError, ValidationError
)
from pms_inventory.core.precision import (
    ZERO, to_decimal, round_quantity, round_money, line_total, utcnow
)
from pms_inventory.core.scope import ScopeFilter, ALL_PROPERTIES
from pms_inventory.models.property import Supplier
from pms_inventory.models.purchasing import (
    PurchaseOrder, PurchaseOrderItem, POReceipt, POReceiptItem
)
from pms_inventory.models.stock import StockItem, StockLevel, StockParLevel
from pms_inventory.schemas.stock import MovementType, POStatus, ReferenceType
from .base import (
    InventoryService, ServiceResult, require_positive_quantity,
    require_non_negative_cost, require_reason
)
from .lot_tracking import LotTrackingService
from .movement_log import record_movement
from .stock_ledger import StockLedgerService

logger = logging.getLogger(__name__)

VALID_PO_TRANSITIONS = {
    POStatus.DRAFT: {POStatus.PENDING_APPROVAL, POStatus.CANCELLED},
    POStatus.PENDING_APPROVAL: {POStatus.APPROVED, POStatus.DRAFT, POStatus.CANCELLED},
    POStatus.APPROVED: {POStatus.SENT, POStatus.CANCELLED},
    POStatus.SENT: {POStatus.PARTIALLY_RECEIVED, POStatus.RECEIVED, POStatus.CANCELLED},
    POStatus.PARTIALLY_RECEIVED: {POStatus.PARTIALLY_RECEIVED, POStatus.RECEIVED},
    POStatus.RECEIVED: {POStatus.CLOSED},
    POStatus.CLOSED: set(),
    POStatus.CANCELLED: set(),
}

RECEIVABLE_STATUSES = (POStatus.SENT, POStatus.PARTIALLY_RECEIVED)

PO_NUMBER_PATTERN = re.compile(r"^PO-\d{8}-\d{4}$")


# Pure helpers

def is_valid_status_transition(current: Union[str, POStatus], new: Union[str, POStatus]) -> bool:
    try:
        return POStatus(new) in VALID_PO_TRANSITIONS[POStatus(current)]
    except ValueError:
        return False


def validate_status_transition(current: Union[str, POStatus], new: Union[str, POStatus]):
    """Raise InvalidStateError for a move outside the PO workflow graph"""
    if not is_valid_status_transition(current, new):
        current_value = getattr(current, 'value', current)
        new_value = getattr(new, 'value', new)
        raise InvalidStateError(f"Cannot change purchase order status from {current_value} to {new_value}")


def generate_po_number_pure(existing_numbers: Iterable[str],
                            for_date: Optional[Union[date, datetime]] = None) -> str:
    """
    Next PO-YYYYMMDD-NNNN number for a day

    The sequence is the day's highest existing sequence plus one. Raises
    SequenceOverflowError past the daily maximum instead of wrapping.
    """
    for_date = for_date or utcnow()
    prefix = f"{settings.PO_NUMBER_PREFIX}-{for_date.strftime(settings.PO_DATE_FORMAT)}-"

    sequences = []
    for number in existing_numbers:
        if number and number.startswith(prefix):
            tail = number[len(prefix):]
            if tail.isdigit():
                sequences.append(int(tail))
    sequence = max(sequences) + 1 if sequences else 1

    if sequence > settings.MAX_PO_SEQUENCE_PER_DAY:
        raise SequenceOverflowError(
            f"PO sequence overflow: cannot generate more than {settings.MAX_PO_SEQUENCE_PER_DAY} "
            f"purchase orders per day (next sequence would be {sequence})",
            {'date': prefix.rstrip('-'), 'sequence': sequence}
        )
    return f"{prefix}{sequence:04d}"


def calculate_po_status(lines: Iterable) -> Optional[POStatus]:
    """
    Status implied by received quantities

    RECEIVED when every line is complete, PARTIALLY_RECEIVED when any
    line has stock in, otherwise None (leave the status alone).
    """
    lines = list(lines)
    if not lines:
        return None
    if all(to_decimal(line.received_qty) >= to_decimal(line.quantity) for line in lines):
        return POStatus.RECEIVED
    if any(to_decimal(line.received_qty) > ZERO for line in lines):
        return POStatus.PARTIALLY_RECEIVED
    return None


def validate_receiving_quantity(ordered, already_received, receiving) -> bool:
    """True when already_received + receiving stays within the ordered quantity"""
    return to_decimal(already_received) + to_decimal(receiving) <= to_decimal(ordered)


def calculate_po_totals(lines: Iterable) -> Dict[str, Decimal]:
    subtotal = round_money(sum((line_total(line.quantity, line.unit_cost) for line in lines), ZERO))
    return {'subtotal': subtotal, 'total': subtotal}


def po_item_to_dict(line: PurchaseOrderItem) -> Dict:
    quantity = to_decimal(line.quantity)
    received = to_decimal(line.received_qty)
    return {
        'id': line.id,
        'stock_item_id': line.stock_item_id,
        'quantity': quantity,
        'unit_cost': to_decimal(line.unit_cost),
        'line_total': line_total(quantity, line.unit_cost),
        'received_qty': received,
        'outstanding_qty': round_quantity(quantity - received),
    }


def purchase_order_to_dict(po: PurchaseOrder) -> Dict:
    return {
        'id': po.id,
        'po_number': po.po_number,
        'property_id': po.property_id,
        'supplier_id': po.supplier_id,
        'warehouse_id': po.warehouse_id,
        'status': po.status,
        'expected_date': po.expected_date,
        'notes': po.notes,
        'subtotal': to_decimal(po.subtotal),
        'total': to_decimal(po.total),
        'created_by': po.created_by,
        'approved_by': po.approved_by,
        'approved_at': po.approved_at,
        'sent_at': po.sent_at,
        'created_at': po.created_at,
        'items': [po_item_to_dict(line) for line in po.items],
    }


class PurchaseOrderService(InventoryService):
    """
    Purchase order workflow

    DRAFT orders are editable. Receiving is allowed once the order is
    SENT and books stock through the ledger, batches and movement log.
    """

    def __init__(self, db, actor_id: Optional[str] = None):
        super().__init__(db, actor_id)
        self.ledger = StockLedgerService(db, actor_id)
        self.lots = LotTrackingService(db, actor_id)

    # Lookups

    def _get_po(self, po_id: int, lock: bool = False) -> PurchaseOrder:
        query = self.db.query(PurchaseOrder).filter(PurchaseOrder.id == po_id)
        if lock:
            query = query.with_for_update()
        po = query.first()
        if not po:
            raise NotFoundError(f"Purchase order {po_id} not found")
        return po

    def _require_draft(self, po: PurchaseOrder):
        if po.status != POStatus.DRAFT.value:
            raise InvalidStateError(
                f"Purchase order {po.po_number} can only be edited in DRAFT status (currently {po.status})"
            )

    def _get_supplier(self, supplier_id, property_id: int) -> Supplier:
        if supplier_id is None:
            raise ValidationError("Supplier is required")
        supplier = self.db.get(Supplier, supplier_id)
        if not supplier:
            raise NotFoundError(f"Supplier {supplier_id} not found")
        if not supplier.is_active:
            raise ValidationError(f"Supplier {supplier.name} is inactive")
        if supplier.property_id != property_id:
            raise ValidationError("Supplier belongs to a different property")
        return supplier

    def _build_line(self, po: PurchaseOrder, item_data: Dict) -> PurchaseOrderItem:
        item = self._get_item(item_data.get('stock_item_id'))
        if not item.is_active:
            raise ValidationError(f"Stock item {item.item_code} is inactive")
        if item.property_id != po.property_id:
            raise ValidationError(f"Stock item {item.item_code} belongs to a different property")
        if any(line.stock_item_id == item.id for line in po.items):
            raise ValidationError(f"Stock item {item.item_code} is already on this purchase order")
        return PurchaseOrderItem(
            stock_item_id=item.id,
            quantity=require_positive_quantity(item_data.get('quantity')),
            unit_cost=require_non_negative_cost(item_data.get('unit_cost')),
            received_qty=ZERO,
        )

    def _recalculate_totals(self, po: PurchaseOrder):
        totals = calculate_po_totals(po.items)
        po.subtotal = totals['subtotal']
        po.total = totals['total']

    def _next_po_number(self, for_date=None) -> str:
        for_date = for_date or utcnow()
        prefix = f"{settings.PO_NUMBER_PREFIX}-{for_date.strftime(settings.PO_DATE_FORMAT)}-"
        existing = [row[0] for row in self.db.query(PurchaseOrder.po_number).filter(
            PurchaseOrder.po_number.like(f"{prefix}%")
        ).all()]
        return generate_po_number_pure(existing, for_date)

    # Numbering

    def generate_po_number(self, for_date: Optional[datetime] = None) -> ServiceResult:
        """
        Next free PO number for the (UTC) day
        Returns (success, po_number or error)
        """
        try:
            return True, self._next_po_number(for_date)
        except Exception as e:
            return self._handle_error("generate PO number", e)

    # Queries

    def get_purchase_order(self, po_id: int) -> Optional[Dict]:
        po = self.db.get(PurchaseOrder, po_id)
        return purchase_order_to_dict(po) if po else None

    def list_purchase_orders(self, scope: ScopeFilter = ALL_PROPERTIES,
                             status: Optional[str] = None,
                             supplier_id: Optional[int] = None,
                             skip: int = 0,
                             limit: int = settings.DEFAULT_PAGE_SIZE) -> Dict:
        query = scope.apply(self.db.query(PurchaseOrder), PurchaseOrder.property_id)
        if status:
            query = query.filter(PurchaseOrder.status == POStatus(status).value)
        if supplier_id:
            query = query.filter(PurchaseOrder.supplier_id == supplier_id)
        total = query.count()
        orders = query.order_by(PurchaseOrder.created_at.desc(), PurchaseOrder.id.desc()
                                ).offset(skip).limit(limit).all()
        return {
            'purchase_orders': [purchase_order_to_dict(po) for po in orders],
            'total': total,
            'skip': skip,
            'limit': limit,
        }

    def get_po_receipts(self, po_id: int) -> List[Dict]:
        receipts = self.db.query(POReceipt).filter(
            POReceipt.purchase_order_id == po_id
        ).order_by(POReceipt.id).all()
        return [{
            'id': receipt.id,
            'received_by': receipt.received_by,
            'received_at': receipt.received_at,
            'notes': receipt.notes,
            'items': [{
                'po_item_id': line.po_item_id,
                'quantity': to_decimal(line.quantity),
                'batch_number': line.batch_number,
                'expiration_date': line.expiration_date,
            } for line in receipt.items],
        } for receipt in receipts]

    def get_suggested_po_items(self, warehouse_id: int) -> List[Dict]:
        """Items below par in a warehouse with the quantity needed to reach par"""
        rows = self.db.query(StockParLevel, StockItem, StockLevel).join(
            StockItem, StockParLevel.stock_item_id == StockItem.id
        ).outerjoin(
            StockLevel,
            (StockLevel.stock_item_id == StockParLevel.stock_item_id)
            & (StockLevel.warehouse_id == StockParLevel.warehouse_id)
        ).filter(
            StockParLevel.warehouse_id == warehouse_id,
            StockItem.is_active.is_(True),
        ).all()

        suggestions = []
        for par, item, level in rows:
            current = to_decimal(level.quantity) if level else ZERO
            par_level = to_decimal(par.par_level)
            if current >= par_level:
                continue
            suggestions.append({
                'stock_item_id': item.id,
                'item_code': item.item_code,
                'item_name': item.name,
                'current_quantity': current,
                'par_level': par_level,
                'suggested_quantity': round_quantity(par_level - current),
                'unit_cost': to_decimal(level.average_cost) if level else ZERO,
            })
        return sorted(suggestions, key=lambda s: s['suggested_quantity'], reverse=True)

    # Draft editing

    def create_purchase_order(self, po_data: Dict) -> ServiceResult:
        """
        Create a DRAFT purchase order
        Returns (success, purchase order data or error)
        """
        try:
            warehouse = self._get_warehouse(po_data.get('warehouse_id'))
            supplier = self._get_supplier(po_data.get('supplier_id'), warehouse.property_id)

            po = PurchaseOrder(
                po_number=self._next_po_number(),
                property_id=warehouse.property_id,
                supplier_id=supplier.id,
                warehouse_id=warehouse.id,
                status=POStatus.DRAFT.value,
                expected_date=po_data.get('expected_date'),
                notes=po_data.get('notes'),
                created_by=self.actor_id,
            )
            self.db.add(po)
            for item_data in po_data.get('items') or []:
                po.items.append(self._build_line(po, item_data))
            self._recalculate_totals(po)
            self.db.flush()

            self._audit("CREATE_PO", "purchase_orders", po.po_number, {
                'supplier_id': supplier.id,
                'warehouse_id': warehouse.id,
                'lines': len(po.items),
                'total': po.total,
            })
            self.db.commit()
            logger.info(f"Purchase order {po.po_number} created for supplier {supplier.id}")
            return True, purchase_order_to_dict(po)

        except Exception as e:
            return self._handle_error("create purchase order", e)

    def update_purchase_order(self, po_id: int, po_data: Dict) -> ServiceResult:
        """Update header fields of a DRAFT order"""
        try:
            po = self._get_po(po_id, lock=True)
            self._require_draft(po)

            if 'warehouse_id' in po_data:
                warehouse = self._get_warehouse(po_data['warehouse_id'])
                if warehouse.property_id != po.property_id:
                    raise ValidationError("Warehouse belongs to a different property")
                po.warehouse_id = warehouse.id
            if 'supplier_id' in po_data:
                po.supplier_id = self._get_supplier(po_data['supplier_id'], po.property_id).id
            if 'expected_date' in po_data:
                po.expected_date = po_data['expected_date']
            if 'notes' in po_data:
                po.notes = po_data['notes']

            self._audit("UPDATE_PO", "purchase_orders", po.po_number, po_data)
            self.db.commit()
            return True, purchase_order_to_dict(po)

        except Exception as e:
            return self._handle_error("update purchase order", e)

    def add_po_item(self, po_id: int, item_data: Dict) -> ServiceResult:
        try:
            po = self._get_po(po_id, lock=True)
            self._require_draft(po)
            line = self._build_line(po, item_data)
            po.items.append(line)
            self._recalculate_totals(po)
            self.db.flush()

            self._audit("ADD_PO_ITEM", "purchase_order_items", line.id, {
                'po_number': po.po_number,
                'stock_item_id': line.stock_item_id,
                'quantity': line.quantity,
                'unit_cost': line.unit_cost,
            })
            self.db.commit()
            return True, purchase_order_to_dict(po)

        except Exception as e:
            return self._handle_error("add purchase order item", e)

    def update_po_item(self, po_id: int, po_item_id: int, item_data: Dict) -> ServiceResult:
        try:
            po = self._get_po(po_id, lock=True)
            self._require_draft(po)
            line = next((item for item in po.items if item.id == po_item_id), None)
            if line is None:
                raise NotFoundError(f"Purchase order item {po_item_id} not found on {po.po_number}")

            if 'quantity' in item_data:
                line.quantity = require_positive_quantity(item_data['quantity'])
            if 'unit_cost' in item_data:
                line.unit_cost = require_non_negative_cost(item_data['unit_cost'])
            self._recalculate_totals(po)

            self._audit("UPDATE_PO_ITEM", "purchase_order_items", line.id, item_data)
            self.db.commit()
            return True, purchase_order_to_dict(po)

        except Exception as e:
            return self._handle_error("update purchase order item", e)

    def remove_po_item(self, po_id: int, po_item_id: int) -> ServiceResult:
        try:
            po = self._get_po(po_id, lock=True)
            self._require_draft(po)
            line = next((item for item in po.items if item.id == po_item_id), None)
            if line is None:
                raise NotFoundError(f"Purchase order item {po_item_id} not found on {po.po_number}")

            po.items.remove(line)
            self._recalculate_totals(po)

            self._audit("REMOVE_PO_ITEM", "purchase_order_items", po_item_id, {
                'po_number': po.po_number,
            })
            self.db.commit()
            return True, purchase_order_to_dict(po)

        except Exception as e:
            return self._handle_error("remove purchase order item", e)

    # Workflow

    def _change_status(self, po_id: int, new_status: POStatus, operation: str, apply=None) -> ServiceResult:
        try:
            po = self._get_po(po_id, lock=True)
            old_status = po.status
            validate_status_transition(old_status, new_status)
            if apply:
                apply(po)
            po.status = new_status.value

            self._audit(f"PO_{new_status.value}", "purchase_orders", po.po_number,
                        {'status': new_status.value}, old_values={'status': old_status})
            self.db.commit()
            logger.info(f"Purchase order {po.po_number}: {old_status} -> {new_status.value}")
            return True, purchase_order_to_dict(po)

        except Exception as e:
            return self._handle_error(operation, e)

    def submit_for_approval(self, po_id: int) -> ServiceResult:
        def check_lines(po):
            if not po.items:
                raise ValidationError("Cannot submit a purchase order without items")
        return self._change_status(po_id, POStatus.PENDING_APPROVAL, "submit purchase order", check_lines)

    def approve(self, po_id: int) -> ServiceResult:
        def stamp(po):
            po.approved_by = self.actor_id
            po.approved_at = utcnow()
        return self._change_status(po_id, POStatus.APPROVED, "approve purchase order", stamp)

    def reject(self, po_id: int, reason: Optional[str]) -> ServiceResult:
        """Send a pending order back to DRAFT with the reason noted"""
        def note(po):
            text = require_reason(reason, "Reason is required to reject a purchase order")
            po.notes = f"{po.notes}\n\nRejected: {text}" if po.notes else f"Rejected: {text}"
        return self._change_status(po_id, POStatus.DRAFT, "reject purchase order", note)

    def send_to_supplier(self, po_id: int) -> ServiceResult:
        def stamp(po):
            po.sent_at = utcnow()
        return self._change_status(po_id, POStatus.SENT, "send purchase order", stamp)

    def cancel(self, po_id: int, reason: Optional[str] = None) -> ServiceResult:
        def note(po):
            if reason:
                po.notes = f"{po.notes}\n\nCancelled: {reason}" if po.notes else f"Cancelled: {reason}"
        return self._change_status(po_id, POStatus.CANCELLED, "cancel purchase order", note)

    def close(self, po_id: int) -> ServiceResult:
        return self._change_status(po_id, POStatus.CLOSED, "close purchase order")

    # Receiving

    def receive_purchase_order(self, po_id: int, receive_data: Dict) -> ServiceResult:
        """
        Receive goods against a sent purchase order

        Every line is validated against its outstanding quantity before
        any stock is booked. Lines with a batch number or expiration date
        become batches; the rest go straight to the ledger.
        Returns (success, receipt data or error)
        """
        try:
            po = self._get_po(po_id, lock=True)
            if POStatus(po.status) not in RECEIVABLE_STATUSES:
                raise InvalidStateError(
                    f"Purchase order {po.po_number} cannot be received in {po.status} status"
                )
            warehouse = self._get_warehouse(po.warehouse_id)

            requested = receive_data.get('items') or []
            if not requested:
                raise ValidationError("At least one item must be received")

            lines_by_id = {line.id: line for line in po.items}
            receiving_totals: Dict[int, Decimal] = {}
            plan = []
            for entry in requested:
                line = lines_by_id.get(entry.get('po_item_id'))
                if line is None:
                    raise NotFoundError(
                        f"Purchase order item {entry.get('po_item_id')} not found on {po.po_number}"
                    )
                quantity = require_positive_quantity(entry.get('quantity'))
                receiving_totals[line.id] = receiving_totals.get(line.id, ZERO) + quantity
                if not validate_receiving_quantity(line.quantity, line.received_qty, receiving_totals[line.id]):
                    raise InvalidStateError(
                        f"Cannot receive {receiving_totals[line.id]} of item {line.stock_item_id}: "
                        f"ordered {to_decimal(line.quantity)}, already received "
                        f"{to_decimal(line.received_qty)}",
                        {'po_item_id': line.id}
                    )
                plan.append((line, quantity, entry))

            receipt = POReceipt(
                purchase_order_id=po.id,
                received_by=self.actor_id,
                notes=receive_data.get('notes'),
                received_at=utcnow(),
            )
            self.db.add(receipt)
            self.db.flush()

            received_lines = []
            for index, (line, quantity, entry) in enumerate(plan, start=1):
                unit_cost = to_decimal(line.unit_cost)
                expiration_date = entry.get('expiration_date')
                batch_number = (entry.get('batch_number') or '').strip() or None
                if batch_number is None and expiration_date is not None:
                    batch_number = f"{po.po_number}-{receipt.id}-{index}"

                batch = None
                if batch_number:
                    batch = self.lots.insert_batch(
                        line.stock_item_id, warehouse.id, batch_number, quantity, unit_cost,
                        expiration_date=expiration_date, received_at=receipt.received_at,
                    )
                self.ledger.increase_on_receipt(line.stock_item_id, warehouse.id, quantity, unit_cost)
                movement = record_movement(
                    self.db, line.stock_item_id, MovementType.RECEIPT, quantity, unit_cost, self.actor_id,
                    destination_warehouse_id=warehouse.id,
                    batch_id=batch.id if batch else None,
                    reference_type=ReferenceType.PURCHASE_ORDER.value,
                    reference_id=po.id,
                    reason=f"Received against {po.po_number}",
                )
                line.received_qty = round_quantity(to_decimal(line.received_qty) + quantity)
                self.db.add(POReceiptItem(
                    receipt_id=receipt.id,
                    po_item_id=line.id,
                    quantity=quantity,
                    batch_number=batch_number,
                    expiration_date=expiration_date,
                ))
                received_lines.append({
                    'po_item_id': line.id,
                    'stock_item_id': line.stock_item_id,
                    'quantity': quantity,
                    'unit_cost': unit_cost,
                    'batch_id': batch.id if batch else None,
                    'batch_number': batch_number,
                    'movement_id': movement.id,
                })

            old_status = po.status
            new_status = calculate_po_status(po.items)
            if new_status is not None:
                validate_status_transition(old_status, new_status)
                po.status = new_status.value

            self._audit("RECEIVE_PO", "purchase_orders", po.po_number, {
                'receipt_id': receipt.id,
                'lines': len(received_lines),
                'status': po.status,
            }, old_values={'status': old_status})

            self.db.commit()
            logger.info(f"Received {len(received_lines)} line(s) against {po.po_number}; "
                        f"status {old_status} -> {po.status}")
            return True, {
                'receipt_id': receipt.id,
                'purchase_order_id': po.id,
                'po_number': po.po_number,
                'status': po.status,
                'items': received_lines,
            }

        except Exception as e:
            return self._handle_error("receive purchase order", e)
