"""Purchase Order API endpoints"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import Optional

from pms_inventory.api import deps
from pms_inventory.core.scope import ScopeFilter
from pms_inventory.schemas.stock import (
    POCreate, POUpdate, POItemCreate, POItemUpdate, POReceiveRequest, POReasonRequest,
    POStatus, to_service_dict
)
from pms_inventory.services.stock import PurchaseOrderService

router = APIRouter()


@router.get("")
def list_purchase_orders(
    po_status: Optional[POStatus] = Query(None, alias="status"),
    supplier_id: Optional[int] = None,
    pagination: dict = Depends(deps.get_pagination_params),
    scope: ScopeFilter = Depends(deps.get_scope),
    db: Session = Depends(deps.get_db),
):
    """
    List purchase orders, newest first.
    """
    service = PurchaseOrderService(db)
    return service.list_purchase_orders(scope, status=po_status, supplier_id=supplier_id, **pagination)


@router.post("", status_code=status.HTTP_201_CREATED)
def create_purchase_order(
    po_in: POCreate,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """
    Create a purchase order in DRAFT.

    The PO number is assigned from today's sequence.
    """
    service = PurchaseOrderService(db, actor_id)
    return deps.unwrap(service.create_purchase_order(to_service_dict(po_in)))


@router.get("/suggestions/{warehouse_id}")
def get_suggested_items(warehouse_id: int, db: Session = Depends(deps.get_db)):
    """Items below par with the quantity needed to bring them back to par."""
    return PurchaseOrderService(db).get_suggested_po_items(warehouse_id)


@router.get("/{po_id}")
def get_purchase_order(po_id: int, db: Session = Depends(deps.get_db)):
    po = PurchaseOrderService(db).get_purchase_order(po_id)
    if not po:
        raise HTTPException(status_code=404, detail="Purchase order not found")
    return po


@router.put("/{po_id}")
def update_purchase_order(
    po_id: int,
    po_in: POUpdate,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = PurchaseOrderService(db, actor_id)
    return deps.unwrap(service.update_purchase_order(po_id, to_service_dict(po_in)))


@router.post("/{po_id}/items", status_code=status.HTTP_201_CREATED)
def add_po_item(
    po_id: int,
    item_in: POItemCreate,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = PurchaseOrderService(db, actor_id)
    return deps.unwrap(service.add_po_item(po_id, to_service_dict(item_in)))


@router.put("/{po_id}/items/{po_item_id}")
def update_po_item(
    po_id: int,
    po_item_id: int,
    item_in: POItemUpdate,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = PurchaseOrderService(db, actor_id)
    return deps.unwrap(service.update_po_item(po_id, po_item_id, to_service_dict(item_in)))


@router.delete("/{po_id}/items/{po_item_id}")
def remove_po_item(
    po_id: int,
    po_item_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = PurchaseOrderService(db, actor_id)
    return deps.unwrap(service.remove_po_item(po_id, po_item_id))


# Workflow

@router.post("/{po_id}/submit")
def submit_purchase_order(
    po_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = PurchaseOrderService(db, actor_id)
    return deps.unwrap(service.submit_for_approval(po_id))


@router.post("/{po_id}/approve")
def approve_purchase_order(
    po_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = PurchaseOrderService(db, actor_id)
    return deps.unwrap(service.approve(po_id))


@router.post("/{po_id}/reject")
def reject_purchase_order(
    po_id: int,
    reject_in: POReasonRequest,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """Send a pending order back to DRAFT. A reason is required."""
    service = PurchaseOrderService(db, actor_id)
    return deps.unwrap(service.reject(po_id, reject_in.reason))


@router.post("/{po_id}/send")
def send_purchase_order(
    po_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = PurchaseOrderService(db, actor_id)
    return deps.unwrap(service.send_to_supplier(po_id))


@router.post("/{po_id}/cancel")
def cancel_purchase_order(
    po_id: int,
    cancel_in: Optional[POReasonRequest] = None,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = PurchaseOrderService(db, actor_id)
    reason = cancel_in.reason if cancel_in else None
    return deps.unwrap(service.cancel(po_id, reason))


@router.post("/{po_id}/close")
def close_purchase_order(
    po_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = PurchaseOrderService(db, actor_id)
    return deps.unwrap(service.close(po_id))


# Receiving

@router.post("/{po_id}/receive")
def receive_purchase_order(
    po_id: int,
    receive_in: POReceiveRequest,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """
    Receive goods against a sent or partially received order.

    Lines with a batch number or expiration date create batches; the
    ledger and movement log are updated for every line.
    """
    service = PurchaseOrderService(db, actor_id)
    return deps.unwrap(service.receive_purchase_order(po_id, to_service_dict(receive_in)))


@router.get("/{po_id}/receipts")
def get_po_receipts(po_id: int, db: Session = Depends(deps.get_db)):
    return PurchaseOrderService(db).get_po_receipts(po_id)
