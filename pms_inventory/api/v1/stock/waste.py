"""Waste Tracking API endpoints"""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import Optional
from datetime import datetime

from pms_inventory.api import deps
from pms_inventory.core.scope import ScopeFilter
from pms_inventory.schemas.stock import WasteCreate, WasteType, WriteOffRequest, to_service_dict
from pms_inventory.services.stock import WasteTrackingService

router = APIRouter()


@router.get("")
def list_waste(
    stock_item_id: Optional[int] = None,
    warehouse_id: Optional[int] = None,
    waste_type: Optional[WasteType] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    pagination: dict = Depends(deps.get_pagination_params),
    scope: ScopeFilter = Depends(deps.get_scope),
    db: Session = Depends(deps.get_db),
):
    filters = {
        'stock_item_id': stock_item_id,
        'warehouse_id': warehouse_id,
        'waste_type': waste_type,
        'start_date': start_date,
        'end_date': end_date,
    }
    return WasteTrackingService(db).get_waste_history(filters, scope, **pagination)


@router.post("", status_code=status.HTTP_201_CREATED)
def record_waste(
    waste_in: WasteCreate,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """
    Record wasted stock.

    Expired batches can only be written off as EXPIRED waste.
    """
    service = WasteTrackingService(db, actor_id)
    return deps.unwrap(service.record_waste(to_service_dict(waste_in)))


@router.post("/batches/{batch_id}/write-off", status_code=status.HTTP_201_CREATED)
def write_off_expired_batch(
    batch_id: int,
    write_off_in: Optional[WriteOffRequest] = None,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = WasteTrackingService(db, actor_id)
    reason = write_off_in.reason if write_off_in else None
    return deps.unwrap(service.write_off_expired_batch(batch_id, reason))


@router.get("/report")
def get_waste_report(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    warehouse_id: Optional[int] = None,
    scope: ScopeFilter = Depends(deps.get_scope),
    db: Session = Depends(deps.get_db),
):
    """
    Waste cost for a period.

    Includes the waste percentage against consumption plus waste.
    """
    return WasteTrackingService(db).generate_waste_report(start_date, end_date, warehouse_id, scope)


@router.get("/percentage")
def get_waste_percentage(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    warehouse_id: Optional[int] = Query(None),
    scope: ScopeFilter = Depends(deps.get_scope),
    db: Session = Depends(deps.get_db),
):
    percentage = WasteTrackingService(db).calculate_waste_percentage(start_date, end_date, warehouse_id, scope)
    return {"waste_percentage": percentage}
