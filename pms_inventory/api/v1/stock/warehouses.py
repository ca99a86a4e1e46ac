"""Warehouse and Stock Level API endpoints"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional

from pms_inventory.api import deps
from pms_inventory.core.scope import ScopeFilter
from pms_inventory.schemas.stock import (
    WarehouseCreate, WarehouseUpdate, WarehouseResponse, ServingsRequest, to_service_dict
)
from pms_inventory.services.stock import (
    StockMasterService, StockLedgerService, MenuAvailabilityService, MovementLogService
)

router = APIRouter()


@router.get("", response_model=List[WarehouseResponse])
def list_warehouses(
    include_inactive: bool = False,
    scope: ScopeFilter = Depends(deps.get_scope),
    db: Session = Depends(deps.get_db),
):
    return StockMasterService(db).list_warehouses(scope, include_inactive=include_inactive)


@router.post("", status_code=status.HTTP_201_CREATED)
def create_warehouse(
    warehouse_in: WarehouseCreate,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = StockMasterService(db, actor_id)
    return deps.unwrap(service.create_warehouse(to_service_dict(warehouse_in)))


@router.put("/{warehouse_id}")
def update_warehouse(
    warehouse_id: int,
    warehouse_in: WarehouseUpdate,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = StockMasterService(db, actor_id)
    return deps.unwrap(service.update_warehouse(warehouse_id, to_service_dict(warehouse_in)))


@router.post("/{warehouse_id}/deactivate")
def deactivate_warehouse(
    warehouse_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = StockMasterService(db, actor_id)
    return deps.unwrap(service.deactivate_warehouse(warehouse_id))


@router.post("/{warehouse_id}/reactivate")
def reactivate_warehouse(
    warehouse_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = StockMasterService(db, actor_id)
    return deps.unwrap(service.reactivate_warehouse(warehouse_id))


@router.get("/{warehouse_id}/stock")
def get_warehouse_stock(warehouse_id: int, db: Session = Depends(deps.get_db)):
    """
    Stock summary for a warehouse.

    Lists every ledger row with its quantity, average cost and value.
    """
    return StockLedgerService(db).get_warehouse_stock_summary(warehouse_id)


@router.get("/{warehouse_id}/stock/{item_id}")
def get_stock_level(warehouse_id: int, item_id: int, db: Session = Depends(deps.get_db)):
    level = StockLedgerService(db).get_stock_level(item_id, warehouse_id)
    if not level:
        raise HTTPException(status_code=404, detail="Stock level not found")
    return level


@router.get("/{warehouse_id}/stock/{item_id}/replay")
def replay_stock_level(warehouse_id: int, item_id: int, db: Session = Depends(deps.get_db)):
    """Rebuild the ledger row from the movement log and report whether it matches."""
    return MovementLogService(db).replay_stock_level(item_id, warehouse_id)


@router.post("/servings")
def calculate_servings(
    servings_in: ServingsRequest,
    db: Session = Depends(deps.get_db),
):
    """
    Servings a recipe can still produce from one warehouse.
    """
    service = MenuAvailabilityService(db)
    return deps.unwrap(service.calculate_available_servings(
        servings_in.warehouse_id,
        [ingredient.model_dump() for ingredient in servings_in.ingredients],
        recipe_yield=servings_in.recipe_yield,
        threshold=servings_in.threshold,
    ))
