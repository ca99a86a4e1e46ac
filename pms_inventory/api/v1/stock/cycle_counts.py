"""Cycle Count API endpoints"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import Optional
from datetime import datetime

from pms_inventory.api import deps
from pms_inventory.core.scope import ScopeFilter
from pms_inventory.schemas.stock import (
    CycleCountCreate, CountPopulateRequest, CountRecord, BulkCountRequest, CountRejectRequest,
    ReasonRequest, CycleCountStatus, to_service_dict
)
from pms_inventory.services.stock import CycleCountService

router = APIRouter()


@router.get("")
def list_cycle_counts(
    warehouse_id: Optional[int] = None,
    count_status: Optional[CycleCountStatus] = Query(None, alias="status"),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    pagination: dict = Depends(deps.get_pagination_params),
    scope: ScopeFilter = Depends(deps.get_scope),
    db: Session = Depends(deps.get_db),
):
    return CycleCountService(db).list_cycle_counts(
        scope, warehouse_id=warehouse_id, status=count_status,
        start_date=start_date, end_date=end_date, **pagination
    )


@router.post("", status_code=status.HTTP_201_CREATED)
def create_cycle_count(
    count_in: CycleCountCreate,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """
    Open a count session in DRAFT, or SCHEDULED when a date is given.
    """
    service = CycleCountService(db, actor_id)
    return deps.unwrap(service.create_cycle_count(to_service_dict(count_in)))


@router.get("/variance-analysis")
def get_variance_analysis(
    warehouse_id: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(10, ge=1, le=100),
    scope: ScopeFilter = Depends(deps.get_scope),
    db: Session = Depends(deps.get_db),
):
    """Items and categories that miscount most often, over completed counts."""
    return CycleCountService(db).get_variance_analysis(
        scope, warehouse_id=warehouse_id, start_date=start_date, end_date=end_date, limit=limit
    )


@router.get("/abc-classification/{warehouse_id}")
def get_abc_classification(warehouse_id: int, db: Session = Depends(deps.get_db)):
    return CycleCountService(db).classify_items_abc(warehouse_id)


@router.get("/{count_id}")
def get_cycle_count(count_id: int, db: Session = Depends(deps.get_db)):
    count = CycleCountService(db).get_cycle_count(count_id)
    if not count:
        raise HTTPException(status_code=404, detail="Cycle count not found")
    return count


@router.get("/{count_id}/sheet")
def get_count_sheet(count_id: int, db: Session = Depends(deps.get_db)):
    """Count sheet lines. Blind counts hide system quantities while in progress."""
    sheet = CycleCountService(db).get_count_sheet(count_id)
    if sheet is None:
        raise HTTPException(status_code=404, detail="Cycle count not found")
    return sheet


@router.get("/{count_id}/progress")
def get_count_progress(count_id: int, db: Session = Depends(deps.get_db)):
    progress = CycleCountService(db).get_count_progress(count_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="Cycle count not found")
    return progress


# Workflow

@router.post("/{count_id}/populate")
def populate_count_items(
    count_id: int,
    populate_in: Optional[CountPopulateRequest] = None,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """
    Build the count sheet of a DRAFT count from the warehouse's stock.

    SPOT counts take an explicit item list; RANDOM counts sample the
    stocked items; ABC counts select one value class.
    """
    service = CycleCountService(db, actor_id)
    options = to_service_dict(populate_in) if populate_in else {}
    return deps.unwrap(service.populate_count_items(count_id, options))


@router.post("/{count_id}/start")
def start_cycle_count(
    count_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = CycleCountService(db, actor_id)
    return deps.unwrap(service.start_cycle_count(count_id))


@router.put("/items/{line_id}")
def record_count(
    line_id: int,
    count_in: CountRecord,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = CycleCountService(db, actor_id)
    return deps.unwrap(service.record_count(line_id, to_service_dict(count_in)))


@router.post("/{count_id}/counts")
def record_bulk_counts(
    count_id: int,
    counts_in: BulkCountRequest,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = CycleCountService(db, actor_id)
    return deps.unwrap(service.record_bulk_counts(count_id, to_service_dict(counts_in)['counts']))


@router.post("/{count_id}/calculate")
def calculate_variances(
    count_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = CycleCountService(db, actor_id)
    return deps.unwrap(service.calculate_variances(count_id))


@router.post("/{count_id}/submit")
def submit_cycle_count(
    count_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """Send a fully counted sheet for review."""
    service = CycleCountService(db, actor_id)
    return deps.unwrap(service.submit_for_review(count_id))


@router.post("/{count_id}/approve")
def approve_cycle_count(
    count_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """
    Complete a reviewed count.

    Every line with a variance is booked as an ADJUSTMENT movement.
    """
    service = CycleCountService(db, actor_id)
    return deps.unwrap(service.approve_cycle_count(count_id))


@router.post("/{count_id}/adjustments")
def create_adjustments(
    count_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = CycleCountService(db, actor_id)
    return deps.unwrap(service.create_adjustments(count_id))


@router.post("/{count_id}/reject")
def reject_cycle_count(
    count_id: int,
    reject_in: CountRejectRequest,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """Send a reviewed count back for recounting. A reason is required."""
    service = CycleCountService(db, actor_id)
    return deps.unwrap(service.reject_cycle_count(count_id, reject_in.reason, reject_in.clear_counts))


@router.post("/{count_id}/cancel")
def cancel_cycle_count(
    count_id: int,
    cancel_in: Optional[ReasonRequest] = None,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = CycleCountService(db, actor_id)
    reason = cancel_in.reason if cancel_in else None
    return deps.unwrap(service.cancel_cycle_count(count_id, reason))
