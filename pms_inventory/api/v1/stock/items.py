"""Stock Item, Category and Par Level API endpoints"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional

from pms_inventory.api import deps
from pms_inventory.core.scope import ScopeFilter
from pms_inventory.schemas.stock import (
    StockItemCreate, StockItemUpdate, StockItemResponse,
    CategoryCreate, CategoryUpdate, ParLevelSet, to_service_dict
)
from pms_inventory.services.stock import StockMasterService, StockLedgerService
from pms_inventory.services.stock.stock_master import item_to_dict

router = APIRouter()


# Categories

@router.post("/categories", status_code=status.HTTP_201_CREATED)
def create_category(
    category_in: CategoryCreate,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = StockMasterService(db, actor_id)
    return deps.unwrap(service.create_category(to_service_dict(category_in)))


@router.put("/categories/{category_id}")
def update_category(
    category_id: int,
    category_in: CategoryUpdate,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = StockMasterService(db, actor_id)
    return deps.unwrap(service.update_category(category_id, to_service_dict(category_in)))


@router.post("/categories/{category_id}/deactivate")
def deactivate_category(
    category_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = StockMasterService(db, actor_id)
    return deps.unwrap(service.deactivate_category(category_id))


@router.delete("/categories/{category_id}")
def delete_category(
    category_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = StockMasterService(db, actor_id)
    deps.unwrap(service.delete_category(category_id))
    return {"message": "Category deleted successfully"}


# Par levels

@router.put("/par-levels")
def set_par_level(
    par_in: ParLevelSet,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = StockMasterService(db, actor_id)
    return deps.unwrap(service.set_par_level(par_in.stock_item_id, par_in.warehouse_id, par_in.par_level))


@router.delete("/{item_id}/par-levels/{warehouse_id}")
def delete_par_level(
    item_id: int,
    warehouse_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = StockMasterService(db, actor_id)
    return deps.unwrap(service.delete_par_level(item_id, warehouse_id))


# Items

@router.get("", response_model=List[StockItemResponse])
def list_items(
    category_id: Optional[int] = None,
    include_inactive: bool = False,
    scope: ScopeFilter = Depends(deps.get_scope),
    db: Session = Depends(deps.get_db),
):
    """
    List stock items, optionally filtered by category.
    """
    service = StockMasterService(db)
    return service.list_stock_items(scope, category_id=category_id, include_inactive=include_inactive)


@router.post("", status_code=status.HTTP_201_CREATED)
def create_item(
    item_in: StockItemCreate,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """
    Create a new stock item.

    The next free item code is assigned automatically.
    """
    service = StockMasterService(db, actor_id)
    return deps.unwrap(service.create_stock_item(to_service_dict(item_in)))


@router.get("/{item_id}")
def get_item(item_id: int, db: Session = Depends(deps.get_db)):
    """Get a stock item with its levels in every warehouse."""
    service = StockMasterService(db)
    item = service.get_stock_item(item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Stock item not found")

    result = item_to_dict(item)
    result['stock_levels'] = StockLedgerService(db).get_stock_levels_by_item(item_id)
    return result


@router.put("/{item_id}")
def update_item(
    item_id: int,
    item_in: StockItemUpdate,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = StockMasterService(db, actor_id)
    return deps.unwrap(service.update_stock_item(item_id, to_service_dict(item_in)))


@router.post("/{item_id}/deactivate")
def deactivate_item(
    item_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = StockMasterService(db, actor_id)
    return deps.unwrap(service.deactivate_stock_item(item_id))


@router.post("/{item_id}/reactivate")
def reactivate_item(
    item_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    service = StockMasterService(db, actor_id)
    return deps.unwrap(service.reactivate_stock_item(item_id))


@router.delete("/{item_id}")
def delete_item(
    item_id: int,
    db: Session = Depends(deps.get_db),
    actor_id: Optional[str] = Depends(deps.get_actor_id),
):
    """
    Delete a stock item.

    Refused once the item has any inventory history; deactivate it instead.
    """
    service = StockMasterService(db, actor_id)
    deps.unwrap(service.delete_stock_item(item_id))
    return {"message": "Stock item deleted successfully"}
