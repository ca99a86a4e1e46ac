"""
Requisition Service
Internal stock requests, approved by the source and fulfilled as transfers
"""
import logging
from typing import Dict, Iterable, List, Optional

from pms_inventory.core.config import settings
from pms_inventory.core.exceptions import (
    InsufficientStockError, InvalidStateError, NotFoundError, ValidationError
)
from pms_inventory.core.precision import ZERO, to_decimal, round_quantity, utcnow
from pms_inventory.core.scope import ScopeFilter, ALL_PROPERTIES
from pms_inventory.models.requisition import Requisition, RequisitionItem
from pms_inventory.models.stock import StockLevel
from pms_inventory.schemas.stock import ReferenceType, RequisitionStatus
from .base import InventoryService, ServiceResult, require_positive_quantity, require_reason
from .stock_transfer import StockTransferService

logger = logging.getLogger(__name__)

FULFILLABLE_STATUSES = (RequisitionStatus.APPROVED, RequisitionStatus.PARTIALLY_FULFILLED)


def calculate_requisition_status(lines: Iterable) -> Optional[RequisitionStatus]:
    """
    Status implied by fulfilled quantities

    FULFILLED when every line is complete, PARTIALLY_FULFILLED when any
    line has moved, otherwise None (leave the status alone).
    """
    lines = list(lines)
    if not lines:
        return None
    if all(to_decimal(line.fulfilled_quantity) >= to_decimal(line.requested_quantity) for line in lines):
        return RequisitionStatus.FULFILLED
    if any(to_decimal(line.fulfilled_quantity) > ZERO for line in lines):
        return RequisitionStatus.PARTIALLY_FULFILLED
    return None


def requisition_to_dict(requisition: Requisition) -> Dict:
    return {
        'id': requisition.id,
        'property_id': requisition.property_id,
        'requesting_warehouse_id': requisition.requesting_warehouse_id,
        'source_warehouse_id': requisition.source_warehouse_id,
        'status': requisition.status,
        'notes': requisition.notes,
        'rejection_reason': requisition.rejection_reason,
        'requested_by': requisition.requested_by,
        'approved_by': requisition.approved_by,
        'approved_at': requisition.approved_at,
        'created_at': requisition.created_at,
        'items': [{
            'id': line.id,
            'stock_item_id': line.stock_item_id,
            'requested_quantity': to_decimal(line.requested_quantity),
            'fulfilled_quantity': to_decimal(line.fulfilled_quantity),
            'remaining_quantity': round_quantity(
                to_decimal(line.requested_quantity) - to_decimal(line.fulfilled_quantity)
            ),
        } for line in requisition.items],
    }


class RequisitionService(InventoryService):
    """
    Requisition workflow

    PENDING requests are approved or rejected at the source warehouse.
    Fulfilment may run in several rounds; each round moves stock through
    the transfer path so batches, costs and movements follow its rules.
    """

    def __init__(self, db, actor_id: Optional[str] = None):
        super().__init__(db, actor_id)
        self.transfers = StockTransferService(db, actor_id)

    def _get_requisition(self, requisition_id: int, lock: bool = False) -> Requisition:
        query = self.db.query(Requisition).filter(Requisition.id == requisition_id)
        if lock:
            query = query.with_for_update()
        requisition = query.first()
        if not requisition:
            raise NotFoundError(f"Requisition {requisition_id} not found")
        return requisition

    def _require_status(self, requisition: Requisition, allowed, action: str):
        allowed_values = [status.value for status in allowed]
        if requisition.status not in allowed_values:
            raise InvalidStateError(
                f"Cannot {action} requisition {requisition.id} in {requisition.status} status. "
                f"Allowed: {', '.join(allowed_values)}"
            )

    # Queries

    def get_requisition(self, requisition_id: int) -> Optional[Dict]:
        requisition = self.db.get(Requisition, requisition_id)
        return requisition_to_dict(requisition) if requisition else None

    def list_requisitions(self, scope: ScopeFilter = ALL_PROPERTIES,
                          status: Optional[str] = None,
                          requesting_warehouse_id: Optional[int] = None,
                          source_warehouse_id: Optional[int] = None,
                          skip: int = 0,
                          limit: int = settings.DEFAULT_PAGE_SIZE) -> Dict:
        query = scope.apply(self.db.query(Requisition), Requisition.property_id)
        if status:
            query = query.filter(Requisition.status == RequisitionStatus(status).value)
        if requesting_warehouse_id:
            query = query.filter(Requisition.requesting_warehouse_id == requesting_warehouse_id)
        if source_warehouse_id:
            query = query.filter(Requisition.source_warehouse_id == source_warehouse_id)
        total = query.count()
        requisitions = query.order_by(Requisition.created_at.desc(), Requisition.id.desc()
                                      ).offset(skip).limit(limit).all()
        return {
            'requisitions': [requisition_to_dict(r) for r in requisitions],
            'total': total,
            'skip': skip,
            'limit': limit,
        }

    def check_stock_availability(self, requisition_id: int) -> Optional[List[Dict]]:
        """Per line: what is left to fulfil against the source ledger"""
        requisition = self.db.get(Requisition, requisition_id)
        if not requisition:
            return None
        result = []
        for line in requisition.items:
            level = self.db.query(StockLevel).filter(
                StockLevel.stock_item_id == line.stock_item_id,
                StockLevel.warehouse_id == requisition.source_warehouse_id
            ).first()
            available = to_decimal(level.quantity) if level else ZERO
            remaining = round_quantity(to_decimal(line.requested_quantity) - to_decimal(line.fulfilled_quantity))
            result.append({
                'stock_item_id': line.stock_item_id,
                'requested_quantity': to_decimal(line.requested_quantity),
                'fulfilled_quantity': to_decimal(line.fulfilled_quantity),
                'remaining_quantity': remaining,
                'available_quantity': available,
                'can_fulfill': available >= remaining,
                'max_fulfillable': min(available, remaining),
            })
        return result

    # Workflow

    def create_requisition(self, requisition_data: Dict) -> ServiceResult:
        """
        Raise a PENDING request for stock from another warehouse
        Returns (success, requisition data or error)
        """
        try:
            requesting_id = requisition_data.get('requesting_warehouse_id')
            source_id = requisition_data.get('source_warehouse_id')
            if requesting_id is not None and requesting_id == source_id:
                raise ValidationError("Requesting and source warehouses must be different")
            requesting = self._get_warehouse(requesting_id, label="Requesting warehouse")
            source = self._get_warehouse(source_id, label="Source warehouse")
            if requesting.property_id != source.property_id:
                raise ValidationError("Warehouses belong to different properties")

            lines = requisition_data.get('items') or []
            if not lines:
                raise ValidationError("At least one item is required")

            requisition = Requisition(
                property_id=source.property_id,
                requesting_warehouse_id=requesting.id,
                source_warehouse_id=source.id,
                status=RequisitionStatus.PENDING.value,
                notes=requisition_data.get('notes'),
                requested_by=self.actor_id,
            )
            seen = set()
            for position, line_data in enumerate(lines, start=1):
                item = self._get_item(line_data.get('stock_item_id'))
                if not item.is_active:
                    raise ValidationError(f"Item {position}: stock item {item.item_code} is inactive")
                if item.property_id != source.property_id:
                    raise ValidationError(f"Item {position}: stock item {item.item_code} belongs to a different property")
                if item.id in seen:
                    raise ValidationError(f"Item {position}: stock item {item.item_code} is listed twice")
                seen.add(item.id)
                requisition.items.append(RequisitionItem(
                    stock_item_id=item.id,
                    requested_quantity=require_positive_quantity(
                        line_data.get('quantity'), field=f"Item {position}: requested quantity"
                    ),
                    fulfilled_quantity=ZERO,
                ))
            self.db.add(requisition)
            self.db.flush()

            self._audit("CREATE_REQUISITION", "requisitions", requisition.id, {
                'requesting_warehouse_id': requesting.id,
                'source_warehouse_id': source.id,
                'lines': len(requisition.items),
            })
            self.db.commit()
            logger.info(f"Requisition {requisition.id} raised by {requesting.name} on {source.name}")
            return True, requisition_to_dict(requisition)

        except Exception as e:
            return self._handle_error("create requisition", e)

    def approve_requisition(self, requisition_id: int) -> ServiceResult:
        try:
            requisition = self._get_requisition(requisition_id, lock=True)
            self._require_status(requisition, (RequisitionStatus.PENDING,), "approve")
            requisition.status = RequisitionStatus.APPROVED.value
            requisition.approved_by = self.actor_id
            requisition.approved_at = utcnow()

            self._audit("APPROVE_REQUISITION", "requisitions", requisition.id,
                        {'status': requisition.status}, old_values={'status': RequisitionStatus.PENDING.value})
            self.db.commit()
            logger.info(f"Requisition {requisition.id} approved by {self.actor_id}")
            return True, requisition_to_dict(requisition)

        except Exception as e:
            return self._handle_error("approve requisition", e)

    def reject_requisition(self, requisition_id: int, reason: Optional[str]) -> ServiceResult:
        try:
            reason = require_reason(reason, "Rejection reason is required")
            requisition = self._get_requisition(requisition_id, lock=True)
            self._require_status(requisition, (RequisitionStatus.PENDING,), "reject")
            requisition.status = RequisitionStatus.REJECTED.value
            requisition.rejection_reason = reason
            requisition.approved_by = self.actor_id
            requisition.approved_at = utcnow()

            self._audit("REJECT_REQUISITION", "requisitions", requisition.id,
                        {'status': requisition.status, 'reason': reason},
                        old_values={'status': RequisitionStatus.PENDING.value})
            self.db.commit()
            logger.info(f"Requisition {requisition.id} rejected: {reason}")
            return True, requisition_to_dict(requisition)

        except Exception as e:
            return self._handle_error("reject requisition", e)

    def fulfill_requisition(self, requisition_id: int, fulfillment: List[Dict]) -> ServiceResult:
        """
        Move the given quantities from the source to the requesting warehouse

        Every line is checked against what is left to fulfil and against the
        source ledger before anything moves; shortages are reported together.
        Zero quantities are skipped.
        Returns (success, requisition data with the transfers or error)
        """
        try:
            if not fulfillment:
                raise ValidationError("At least one fulfillment item is required")
            requisition = self._get_requisition(requisition_id, lock=True)
            self._require_status(requisition, FULFILLABLE_STATUSES, "fulfill")
            source = self._get_warehouse(requisition.source_warehouse_id, label="Source warehouse")
            destination = self._get_warehouse(requisition.requesting_warehouse_id,
                                              label="Requesting warehouse")

            lines = {line.stock_item_id: line for line in requisition.items}
            planned = []
            shortages = []
            for entry in fulfillment:
                item_id = entry.get('stock_item_id')
                line = lines.get(item_id)
                if line is None:
                    raise ValidationError(f"Stock item {item_id} is not part of this requisition")
                if entry.get('quantity') is None:
                    raise ValidationError("Fulfilled quantity is required")
                quantity = round_quantity(entry['quantity'])
                if quantity < ZERO:
                    raise ValidationError("Fulfilled quantity cannot be negative")
                if quantity == ZERO:
                    continue

                remaining = round_quantity(to_decimal(line.requested_quantity) - to_decimal(line.fulfilled_quantity))
                if quantity > remaining:
                    raise ValidationError(
                        f"Cannot fulfill {quantity} of stock item {item_id}. Only {remaining} remaining to fulfill"
                    )
                level = self.db.query(StockLevel).filter(
                    StockLevel.stock_item_id == item_id,
                    StockLevel.warehouse_id == source.id
                ).first()
                available = to_decimal(level.quantity) if level else ZERO
                if available < quantity:
                    shortages.append({
                        'stock_item_id': item_id,
                        'requested': str(quantity),
                        'available': str(available),
                    })
                planned.append((line, quantity))

            if shortages:
                raise InsufficientStockError(
                    "Insufficient stock for some items",
                    available=sum((to_decimal(s['available']) for s in shortages), ZERO),
                    requested=sum((to_decimal(s['requested']) for s in shortages), ZERO),
                    details={'items': shortages},
                )
            if not planned:
                raise ValidationError("Nothing to fulfill")

            reason = f"Requisition {requisition.id}: {source.name} -> {destination.name}"
            transfers = []
            for line, quantity in planned:
                transfers.append(self.transfers.move_stock(
                    line.stock_item, source, destination, quantity, reason,
                    reference_type=ReferenceType.REQUISITION.value,
                    reference_id=requisition.id,
                ))
                line.fulfilled_quantity = round_quantity(to_decimal(line.fulfilled_quantity) + quantity)

            old_status = requisition.status
            new_status = calculate_requisition_status(requisition.items)
            if new_status is not None:
                requisition.status = new_status.value

            self._audit("FULFILL_REQUISITION", "requisitions", requisition.id, {
                'status': requisition.status,
                'lines': [{'stock_item_id': line.stock_item_id, 'quantity': quantity}
                          for line, quantity in planned],
            }, old_values={'status': old_status})
            self.db.commit()
            logger.info(f"Requisition {requisition.id} fulfilled {len(planned)} line(s), now {requisition.status}")

            result = requisition_to_dict(requisition)
            result['transfers'] = transfers
            return True, result

        except Exception as e:
            return self._handle_error("fulfill requisition", e)
