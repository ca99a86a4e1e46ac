"""Stock Batch (lot tracking) API endpoints"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from pms_inventory.api import deps
from pms_inventory.core.config import settings
from pms_inventory.schemas.stock import (
    BatchCreate, BatchResponse, BatchQuantityUpdate, BatchExpirationUpdate,
    ConsumeRequest, BatchConsumeRequest, to_service_dict
)
from pms_inventory.services.stock import LotTrackingService

router = APIRouter()


@router.get("", response_model=List[BatchResponse])
def list_batches(
    stock_item_id: Optional[int] = None,
    warehouse_id: Optional[int] = None,
    include_empty: bool = False,
    db: Session = Depends(deps.get_db),
):
    """
    List batches in FEFO order.

    Either an item or a warehouse filter is required.
    """
    service = LotTrackingService(db)
    if stock_item_id:
        return service.get_batches_by_item(stock_item_id, warehouse_id, include_empty=include_empty)
    if warehouse_id:
        return service.get_batches_by_warehouse(warehouse_id, include_empty=include_empty)
    raise HTTPException(status_code=400, detail="stock_item_id or warehouse_id is required")


@router.post("", status_code=status.HTTP_201_CREATED)
def create_batch(
    batch_in: BatchCreate,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """Receive stock as a new batch."""
    service = LotTrackingService(db, actor_id)
    return deps.unwrap(service.create_batch(to_service_dict(batch_in)))


@router.post("/consume")
def consume_fefo(
    consume_in: ConsumeRequest,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """
    Consume stock first-expired-first-out.

    The whole request fails when the live batches cannot cover it.
    """
    service = LotTrackingService(db, actor_id)
    return deps.unwrap(service.consume_stock_fefo(to_service_dict(consume_in)))


@router.post("/mark-expired")
def mark_expired_batches(
    warehouse_id: Optional[int] = None,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """Flag every batch past its expiration date."""
    service = LotTrackingService(db, actor_id)
    return deps.unwrap(service.mark_all_expired_batches(warehouse_id))


@router.get("/expired", response_model=List[BatchResponse])
def get_unflagged_expired_batches(
    warehouse_id: Optional[int] = None,
    db: Session = Depends(deps.get_db),
):
    """Batches past their expiration date that have not been flagged yet."""
    return LotTrackingService(db).get_expired_batches(warehouse_id)


@router.get("/expiring")
def get_expiring_batches(
    warehouse_id: int,
    days: int = Query(settings.DEFAULT_EXPIRY_ALERT_DAYS, ge=0),
    db: Session = Depends(deps.get_db),
):
    return LotTrackingService(db).get_expiring_batches(warehouse_id, days)


@router.get("/expiration-report")
def get_expiration_report(
    warehouse_id: int,
    days_ahead: int = Query(settings.EXPIRATION_REPORT_DAYS, ge=0),
    db: Session = Depends(deps.get_db),
):
    return LotTrackingService(db).generate_expiration_report(warehouse_id, days_ahead)


@router.get("/{batch_id}", response_model=BatchResponse)
def get_batch(batch_id: int, db: Session = Depends(deps.get_db)):
    batch = LotTrackingService(db).get_batch(batch_id)
    if not batch:
        raise HTTPException(status_code=404, detail=f"Batch {batch_id} not found")
    return batch


@router.post("/{batch_id}/consume")
def consume_from_batch(
    batch_id: int,
    consume_in: BatchConsumeRequest,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = LotTrackingService(db, actor_id)
    return deps.unwrap(service.consume_from_batch(batch_id, to_service_dict(consume_in)))


@router.put("/{batch_id}/quantity")
def update_batch_quantity(
    batch_id: int,
    update_in: BatchQuantityUpdate,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """Correct a batch quantity after a physical count."""
    service = LotTrackingService(db, actor_id)
    return deps.unwrap(service.update_batch_quantity(batch_id, update_in.new_quantity, update_in.reason))


@router.put("/{batch_id}/expiration")
def update_batch_expiration(
    batch_id: int,
    update_in: BatchExpirationUpdate,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = LotTrackingService(db, actor_id)
    return deps.unwrap(service.update_batch_expiration_date(batch_id, update_in.expiration_date))


@router.post("/{batch_id}/expire")
def mark_batch_expired(
    batch_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = LotTrackingService(db, actor_id)
    return deps.unwrap(service.mark_expired(batch_id))


@router.post("/{batch_id}/unexpire")
def unmark_batch_expired(
    batch_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = LotTrackingService(db, actor_id)
    return deps.unwrap(service.unmark_expired(batch_id))
