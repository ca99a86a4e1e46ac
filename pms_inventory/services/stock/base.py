"""
Shared plumbing for the stock services
Session handling, error mapping and common lookups
"""
import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pms_inventory.core.audit import log_inventory_action
from pms_inventory.core.exceptions import (
    InventoryError, NotFoundError, ValidationError, ConstraintViolationError
)
from pms_inventory.core.precision import round_quantity, round_cost, ZERO
from pms_inventory.models.stock import StockItem, Warehouse, StockBatch

logger = logging.getLogger(__name__)

ServiceResult = Tuple[bool, Any]


class InventoryService:
    """
    Base class for stock services

    One instance wraps one session. Public mutating methods commit on
    success and roll back on any failure, returning (success, payload)
    where payload is the result dict or the InventoryError.
    """

    def __init__(self, db: Session, actor_id: Optional[str] = None):
        self.db = db
        self.actor_id = actor_id or 'SYSTEM'

    def _handle_error(self, operation: str, error: Exception) -> Tuple[bool, InventoryError]:
        """Roll back and convert any failure to an InventoryError result"""
        self.db.rollback()

        if isinstance(error, InventoryError):
            logger.warning(f"{operation} rejected: [{error.code}] {error.message}")
            return False, error

        if isinstance(error, IntegrityError):
            logger.warning(f"{operation} hit a database constraint: {error.orig}")
            return False, ConstraintViolationError(
                f"Failed to {operation}: a record with the same unique key already exists",
                {'error': str(error.orig)}
            )

        logger.exception(f"Unexpected error during {operation}")
        return False, InventoryError(f"Failed to {operation}", {'error': str(error)})

    def _audit(self, action: str, table: str, key: Any, new_values: Optional[Dict] = None,
               old_values: Optional[Dict] = None):
        log_inventory_action(
            db=self.db,
            actor_id=self.actor_id,
            action=action,
            table=table,
            key=str(key),
            old_values=old_values,
            new_values=new_values,
        )

    # Lookups used by every orchestrator

    def _get_item(self, item_id: Any) -> StockItem:
        if item_id is None:
            raise ValidationError("Stock item is required")
        item = self.db.get(StockItem, item_id)
        if not item:
            raise NotFoundError(f"Stock item {item_id} not found")
        return item

    def _get_warehouse(self, warehouse_id: Any, require_active: bool = True,
                       label: str = "Warehouse") -> Warehouse:
        if warehouse_id is None:
            raise ValidationError(f"{label} is required")
        warehouse = self.db.get(Warehouse, warehouse_id)
        if not warehouse:
            raise NotFoundError(f"{label} {warehouse_id} not found")
        if require_active and not warehouse.is_active:
            raise ValidationError(f"{label} {warehouse.name} is inactive")
        return warehouse

    def _get_batch(self, batch_id: Any, lock: bool = False) -> StockBatch:
        query = self.db.query(StockBatch).filter(StockBatch.id == batch_id)
        if lock:
            query = query.with_for_update()
        batch = query.first()
        if not batch:
            raise NotFoundError(f"Batch {batch_id} not found")
        return batch


def require_positive_quantity(value: Any, field: str = "Quantity"):
    """Parse and round a strictly positive quantity"""
    if value is None or value == '':
        raise ValidationError(f"{field} is required")
    try:
        quantity = round_quantity(value)
    except (ArithmeticError, ValueError, TypeError):
        raise ValidationError(f"{field} must be a number")
    if quantity <= ZERO:
        raise ValidationError(f"{field} must be greater than zero")
    return quantity


def require_non_negative_cost(value: Any, field: str = "Unit cost"):
    if value is None or value == '':
        raise ValidationError(f"{field} is required")
    try:
        cost = round_cost(value)
    except (ArithmeticError, ValueError, TypeError):
        raise ValidationError(f"{field} must be a number")
    if cost < ZERO:
        raise ValidationError(f"{field} cannot be negative")
    return cost


def require_reason(value: Optional[str], message: str = "Reason is required") -> str:
    reason = (value or '').strip()
    if not reason:
        raise ValidationError(message)
    return reason
