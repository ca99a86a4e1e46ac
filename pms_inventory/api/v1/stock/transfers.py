"""Stock Transfer API endpoints"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import Optional

from pms_inventory.api import deps
from pms_inventory.schemas.stock import TransferRequest, to_service_dict
from pms_inventory.services.stock import StockTransferService

router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_transfer(
    transfer_in: TransferRequest,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """
    Move stock between two warehouses of the same property.

    Batch-tracked stock keeps its batch identity, cost and expiry at the
    destination. The source average cost values both movements.
    """
    service = StockTransferService(db, actor_id)
    return deps.unwrap(service.transfer_stock(to_service_dict(transfer_in)))
