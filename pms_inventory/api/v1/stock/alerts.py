"""Stock Alert API endpoints"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional

from pms_inventory.api import deps
from pms_inventory.core.config import settings
from pms_inventory.core.scope import ScopeFilter
from pms_inventory.services.stock import StockMasterService, LotTrackingService

router = APIRouter()


@router.get("/low-stock")
def get_low_stock_alerts(
    warehouse_id: Optional[int] = None,
    scope: ScopeFilter = Depends(deps.get_scope),
    db: Session = Depends(deps.get_db),
):
    """
    Items below their par level, largest shortfall first.
    """
    return StockMasterService(db).get_low_stock_alerts(scope, warehouse_id)


@router.get("/expiring")
def get_expiring_alerts(
    days: int = Query(settings.DEFAULT_EXPIRY_ALERT_DAYS, ge=0),
    scope: ScopeFilter = Depends(deps.get_scope),
    db: Session = Depends(deps.get_db),
):
    """Live batches expiring within the given number of days."""
    return LotTrackingService(db).get_expiring_batches_by_property(scope, days)
