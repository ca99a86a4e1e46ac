"""Requisition API endpoints"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import Optional

from pms_inventory.api import deps
from pms_inventory.core.scope import ScopeFilter
from pms_inventory.schemas.stock import (
    RequisitionCreate, FulfillmentRequest, ReasonRequest, RequisitionStatus, to_service_dict
)
from pms_inventory.services.stock import RequisitionService

router = APIRouter()


@router.get("")
def list_requisitions(
    requisition_status: Optional[RequisitionStatus] = Query(None, alias="status"),
    requesting_warehouse_id: Optional[int] = None,
    source_warehouse_id: Optional[int] = None,
    pagination: dict = Depends(deps.get_pagination_params),
    scope: ScopeFilter = Depends(deps.get_scope),
    db: Session = Depends(deps.get_db),
):
    return RequisitionService(db).list_requisitions(
        scope, status=requisition_status, requesting_warehouse_id=requesting_warehouse_id,
        source_warehouse_id=source_warehouse_id, **pagination
    )


@router.post("", status_code=status.HTTP_201_CREATED)
def create_requisition(
    requisition_in: RequisitionCreate,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """
    Request stock from another warehouse of the same property.
    """
    service = RequisitionService(db, actor_id)
    return deps.unwrap(service.create_requisition(to_service_dict(requisition_in)))


@router.get("/{requisition_id}")
def get_requisition(requisition_id: int, db: Session = Depends(deps.get_db)):
    requisition = RequisitionService(db).get_requisition(requisition_id)
    if not requisition:
        raise HTTPException(status_code=404, detail="Requisition not found")
    return requisition


@router.get("/{requisition_id}/availability")
def check_stock_availability(requisition_id: int, db: Session = Depends(deps.get_db)):
    availability = RequisitionService(db).check_stock_availability(requisition_id)
    if availability is None:
        raise HTTPException(status_code=404, detail="Requisition not found")
    return availability


@router.post("/{requisition_id}/approve")
def approve_requisition(
    requisition_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = RequisitionService(db, actor_id)
    return deps.unwrap(service.approve_requisition(requisition_id))


@router.post("/{requisition_id}/reject")
def reject_requisition(
    requisition_id: int,
    reject_in: ReasonRequest,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = RequisitionService(db, actor_id)
    return deps.unwrap(service.reject_requisition(requisition_id, reject_in.reason))


@router.post("/{requisition_id}/fulfill")
def fulfill_requisition(
    requisition_id: int,
    fulfill_in: FulfillmentRequest,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """
    Move stock from the source to the requesting warehouse.

    Each line runs through the transfer path, so batches keep their
    identity. Shortages across lines are reported together.
    """
    service = RequisitionService(db, actor_id)
    return deps.unwrap(service.fulfill_requisition(requisition_id, to_service_dict(fulfill_in)['items']))
