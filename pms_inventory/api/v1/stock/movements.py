"""Stock Movement API endpoints"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import Optional
from datetime import datetime

from pms_inventory.api import deps
from pms_inventory.core.scope import ScopeFilter
from pms_inventory.schemas.stock import (
    MovementType, MovementResponse, ConsumeRequest, AdjustRequest, ReturnRequest, to_service_dict
)
from pms_inventory.services.stock import MovementLogService, StockMovementService

router = APIRouter()


@router.get("")
def list_movements(
    stock_item_id: Optional[int] = Query(None, description="Filter by item"),
    warehouse_id: Optional[int] = Query(None, description="Filter by source or destination warehouse"),
    movement_type: Optional[MovementType] = Query(None, description="Filter by type"),
    reference_type: Optional[str] = Query(None, description="Filter by reference type"),
    reference_id: Optional[str] = Query(None, description="Filter by reference"),
    start_date: Optional[datetime] = Query(None, description="Start date"),
    end_date: Optional[datetime] = Query(None, description="End date"),
    pagination: dict = Depends(deps.get_pagination_params),
    scope: ScopeFilter = Depends(deps.get_scope),
    db: Session = Depends(deps.get_db),
):
    """
    List stock movements with optional filters.

    Newest first.
    """
    filters = {
        'stock_item_id': stock_item_id,
        'warehouse_id': warehouse_id,
        'movement_type': movement_type,
        'reference_type': reference_type,
        'reference_id': reference_id,
        'start_date': start_date,
        'end_date': end_date,
    }
    return MovementLogService(db).get_movement_history(filters, scope, **pagination)


@router.get("/{movement_id}", response_model=MovementResponse)
def get_movement(movement_id: int, db: Session = Depends(deps.get_db)):
    """Get specific movement by ID."""
    movement = MovementLogService(db).get_movement(movement_id)
    if not movement:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Movement {movement_id} not found"
        )
    return movement


@router.post("/consume")
def consume_stock(
    consume_in: ConsumeRequest,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """
    Record stock consumption.

    Draws from the given batch, FEFO across live batches, or the ledger
    at average cost when the item is not batch tracked here.
    """
    service = StockMovementService(db, actor_id)
    return deps.unwrap(service.consume_stock(to_service_dict(consume_in)))


@router.post("/adjustment")
def adjust_stock(
    adjust_in: AdjustRequest,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """
    Set the on-hand quantity after a count.

    A reason is mandatory.
    """
    service = StockMovementService(db, actor_id)
    return deps.unwrap(service.adjust_stock(to_service_dict(adjust_in)))


@router.post("/return")
def return_to_supplier(
    return_in: ReturnRequest,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """Return stock to its supplier."""
    service = StockMovementService(db, actor_id)
    return deps.unwrap(service.return_to_supplier(to_service_dict(return_in)))
