"""
Stock Master Service
Items, categories, warehouses and par levels
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy import func

from pms_inventory.core.config import settings
from pms_inventory.core.exceptions import (
    ConstraintViolationError, InvalidStateError, NotFoundError, ValidationError
)
from pms_inventory.core.precision import ZERO, to_decimal, round_quantity
from pms_inventory.core.scope import ScopeFilter, ALL_PROPERTIES
from pms_inventory.models.property import Property, Supplier
from pms_inventory.models.stock import (
    StockBatch, StockCategory, StockItem, StockLevel, StockMovement,
    StockParLevel, Warehouse, WasteRecord
)
from pms_inventory.schemas.stock import WarehouseType
from .base import InventoryService, ServiceResult

logger = logging.getLogger(__name__)


def item_to_dict(item: StockItem) -> Dict:
    return {
        'id': item.id,
        'property_id': item.property_id,
        'item_code': item.item_code,
        'name': item.name,
        'sku': item.sku,
        'category_id': item.category_id,
        'primary_unit': item.primary_unit,
        'is_consignment': item.is_consignment,
        'supplier_id': item.supplier_id,
        'is_active': item.is_active,
    }


def category_to_dict(category: StockCategory) -> Dict:
    return {
        'id': category.id,
        'property_id': category.property_id,
        'name': category.name,
        'description': category.description,
        'is_system': category.is_system,
        'is_active': category.is_active,
    }


def warehouse_to_dict(warehouse: Warehouse) -> Dict:
    return {
        'id': warehouse.id,
        'property_id': warehouse.property_id,
        'name': warehouse.name,
        'type': warehouse.type,
        'is_active': warehouse.is_active,
    }


def generate_item_code(existing_codes: List[str], prefix: str = settings.ITEM_CODE_PREFIX) -> str:
    """Next ITM-NNNN code after the highest existing one"""
    highest = 0
    for code in existing_codes:
        if code and code.startswith(f"{prefix}-"):
            tail = code[len(prefix) + 1:]
            if tail.isdigit():
                highest = max(highest, int(tail))
    return f"{prefix}-{highest + 1:04d}"


class StockMasterService(InventoryService):
    """Master data for the stock core"""

    # Items

    def _get_property(self, property_id) -> Property:
        if property_id is None:
            raise ValidationError("Property is required")
        prop = self.db.get(Property, property_id)
        if not prop:
            raise NotFoundError(f"Property {property_id} not found")
        return prop

    def _get_category(self, category_id) -> StockCategory:
        if category_id is None:
            raise ValidationError("Category is required")
        category = self.db.get(StockCategory, category_id)
        if not category:
            raise NotFoundError(f"Category {category_id} not found")
        return category

    def _check_consignment(self, is_consignment: bool, supplier_id, property_id: int):
        if not is_consignment:
            return
        if not supplier_id:
            raise ValidationError("Consignment items require a supplier")
        supplier = self.db.get(Supplier, supplier_id)
        if not supplier:
            raise NotFoundError(f"Supplier {supplier_id} not found")
        if supplier.property_id != property_id:
            raise ValidationError("Supplier belongs to a different property")

    def _check_sku(self, property_id: int, sku: Optional[str], exclude_id: Optional[int] = None):
        if not sku:
            return
        query = self.db.query(StockItem.id).filter(
            StockItem.property_id == property_id, StockItem.sku == sku
        )
        if exclude_id:
            query = query.filter(StockItem.id != exclude_id)
        if query.first():
            raise ConstraintViolationError(f"An item with SKU {sku} already exists")

    def get_stock_item(self, item_id: int) -> Optional[StockItem]:
        return self.db.get(StockItem, item_id)

    def create_stock_item(self, item_data: Dict) -> ServiceResult:
        """
        Create a stock item with the next item code
        Returns (success, item data or error)
        """
        try:
            prop = self._get_property(item_data.get('property_id'))
            name = (item_data.get('name') or '').strip()
            if not name:
                raise ValidationError("Item name is required")
            category = self._get_category(item_data.get('category_id'))
            if category.property_id != prop.id:
                raise ValidationError("Category belongs to a different property")
            if not category.is_active:
                raise ValidationError(f"Category {category.name} is inactive")
            sku = (item_data.get('sku') or '').strip() or None
            self._check_sku(prop.id, sku)
            is_consignment = bool(item_data.get('is_consignment', False))
            self._check_consignment(is_consignment, item_data.get('supplier_id'), prop.id)

            existing_codes = [row[0] for row in self.db.query(StockItem.item_code).all()]
            item = StockItem(
                property_id=prop.id,
                item_code=generate_item_code(existing_codes),
                name=name,
                sku=sku,
                category_id=category.id,
                primary_unit=item_data.get('primary_unit') or 'EA',
                is_consignment=is_consignment,
                supplier_id=item_data.get('supplier_id'),
                is_active=True,
            )
            self.db.add(item)
            self.db.flush()

            self._audit("CREATE_ITEM", "stock_items", item.item_code, item_to_dict(item))
            self.db.commit()
            logger.info(f"Stock item {item.item_code} created: {item.name}")
            return True, item_to_dict(item)

        except Exception as e:
            return self._handle_error("create stock item", e)

    def update_stock_item(self, item_id: int, item_data: Dict) -> ServiceResult:
        try:
            item = self._get_item(item_id)
            old_values = item_to_dict(item)

            if 'name' in item_data:
                name = (item_data['name'] or '').strip()
                if not name:
                    raise ValidationError("Item name is required")
                item.name = name
            if 'sku' in item_data:
                sku = (item_data['sku'] or '').strip() or None
                self._check_sku(item.property_id, sku, exclude_id=item.id)
                item.sku = sku
            if 'category_id' in item_data:
                category = self._get_category(item_data['category_id'])
                if category.property_id != item.property_id:
                    raise ValidationError("Category belongs to a different property")
                item.category_id = category.id
            if 'primary_unit' in item_data:
                item.primary_unit = item_data['primary_unit']
            if 'is_consignment' in item_data or 'supplier_id' in item_data:
                is_consignment = bool(item_data.get('is_consignment', item.is_consignment))
                supplier_id = item_data.get('supplier_id', item.supplier_id)
                self._check_consignment(is_consignment, supplier_id, item.property_id)
                item.is_consignment = is_consignment
                item.supplier_id = supplier_id

            self._audit("UPDATE_ITEM", "stock_items", item.item_code, item_to_dict(item),
                        old_values=old_values)
            self.db.commit()
            return True, item_to_dict(item)

        except Exception as e:
            return self._handle_error("update stock item", e)

    def _set_item_active(self, item_id: int, active: bool, operation: str) -> ServiceResult:
        try:
            item = self._get_item(item_id)
            if item.is_active == active:
                state = "active" if active else "inactive"
                raise InvalidStateError(f"Stock item {item.item_code} is already {state}")
            item.is_active = active
            self._audit("ACTIVATE_ITEM" if active else "DEACTIVATE_ITEM", "stock_items",
                        item.item_code, {'is_active': active})
            self.db.commit()
            return True, item_to_dict(item)

        except Exception as e:
            return self._handle_error(operation, e)

    def deactivate_stock_item(self, item_id: int) -> ServiceResult:
        return self._set_item_active(item_id, False, "deactivate stock item")

    def reactivate_stock_item(self, item_id: int) -> ServiceResult:
        return self._set_item_active(item_id, True, "reactivate stock item")

    def item_has_history(self, item_id: int) -> bool:
        for model in (StockLevel, StockBatch, StockMovement, WasteRecord):
            if self.db.query(model.id).filter(model.stock_item_id == item_id).first():
                return True
        return False

    def delete_stock_item(self, item_id: int) -> ServiceResult:
        """
        Hard-delete an item that never held stock
        Returns (success, {'deleted': id} or error)
        """
        try:
            item = self._get_item(item_id)
            if self.item_has_history(item.id):
                raise ConstraintViolationError(
                    "Cannot delete stock item with existing inventory records. Deactivate instead."
                )
            code = item.item_code
            self.db.delete(item)
            self._audit("DELETE_ITEM", "stock_items", code, {'deleted': True})
            self.db.commit()
            logger.info(f"Stock item {code} deleted")
            return True, {'deleted': item_id}

        except Exception as e:
            return self._handle_error("delete stock item", e)

    def list_stock_items(self, scope: ScopeFilter = ALL_PROPERTIES, category_id: Optional[int] = None,
                         include_inactive: bool = False) -> List[StockItem]:
        query = scope.apply(self.db.query(StockItem), StockItem.property_id)
        if category_id:
            query = query.filter(StockItem.category_id == category_id)
        if not include_inactive:
            query = query.filter(StockItem.is_active.is_(True))
        return query.order_by(StockItem.item_code).all()

    # Categories

    def create_category(self, category_data: Dict) -> ServiceResult:
        try:
            prop = self._get_property(category_data.get('property_id'))
            name = (category_data.get('name') or '').strip()
            if not name:
                raise ValidationError("Category name is required")
            duplicate = self.db.query(StockCategory.id).filter(
                StockCategory.property_id == prop.id,
                func.lower(StockCategory.name) == name.lower()
            ).first()
            if duplicate:
                raise ConstraintViolationError(f"Category {name} already exists")

            category = StockCategory(
                property_id=prop.id,
                name=name,
                description=category_data.get('description'),
                is_system=bool(category_data.get('is_system', False)),
                is_active=True,
            )
            self.db.add(category)
            self.db.flush()
            self._audit("CREATE_CATEGORY", "stock_categories", category.id, category_to_dict(category))
            self.db.commit()
            return True, category_to_dict(category)

        except Exception as e:
            return self._handle_error("create category", e)

    def update_category(self, category_id: int, category_data: Dict) -> ServiceResult:
        try:
            category = self._get_category(category_id)
            if 'name' in category_data:
                if category.is_system:
                    raise InvalidStateError("System categories cannot be renamed")
                name = (category_data['name'] or '').strip()
                if not name:
                    raise ValidationError("Category name is required")
                category.name = name
            if 'description' in category_data:
                category.description = category_data['description']
            self._audit("UPDATE_CATEGORY", "stock_categories", category.id, category_data)
            self.db.commit()
            return True, category_to_dict(category)

        except Exception as e:
            return self._handle_error("update category", e)

    def deactivate_category(self, category_id: int) -> ServiceResult:
        try:
            category = self._get_category(category_id)
            if category.is_system:
                raise InvalidStateError("System categories cannot be deactivated")
            category.is_active = False
            self._audit("DEACTIVATE_CATEGORY", "stock_categories", category.id, {'is_active': False})
            self.db.commit()
            return True, category_to_dict(category)

        except Exception as e:
            return self._handle_error("deactivate category", e)

    def delete_category(self, category_id: int) -> ServiceResult:
        """Delete a category that no item references"""
        try:
            category = self._get_category(category_id)
            if category.is_system:
                raise ConstraintViolationError("System categories cannot be deleted")
            item_count = self.db.query(func.count(StockItem.id)).filter(
                StockItem.category_id == category.id
            ).scalar()
            if item_count:
                raise ConstraintViolationError(
                    f"Cannot delete category with {item_count} stock item(s). Deactivate instead."
                )
            self.db.delete(category)
            self._audit("DELETE_CATEGORY", "stock_categories", category_id, {'deleted': True})
            self.db.commit()
            return True, {'deleted': category_id}

        except Exception as e:
            return self._handle_error("delete category", e)

    # Warehouses

    def create_warehouse(self, warehouse_data: Dict) -> ServiceResult:
        try:
            prop = self._get_property(warehouse_data.get('property_id'))
            name = (warehouse_data.get('name') or '').strip()
            if not name:
                raise ValidationError("Warehouse name is required")
            try:
                warehouse_type = WarehouseType(warehouse_data.get('type') or WarehouseType.MAIN_STOCKROOM)
            except ValueError:
                raise ValidationError(f"Invalid warehouse type '{warehouse_data.get('type')}'")
            duplicate = self.db.query(Warehouse.id).filter(
                Warehouse.property_id == prop.id, Warehouse.name == name
            ).first()
            if duplicate:
                raise ConstraintViolationError(f"Warehouse {name} already exists")

            warehouse = Warehouse(property_id=prop.id, name=name, type=warehouse_type.value, is_active=True)
            self.db.add(warehouse)
            self.db.flush()
            self._audit("CREATE_WAREHOUSE", "warehouses", warehouse.id, warehouse_to_dict(warehouse))
            self.db.commit()
            return True, warehouse_to_dict(warehouse)

        except Exception as e:
            return self._handle_error("create warehouse", e)

    def update_warehouse(self, warehouse_id: int, warehouse_data: Dict) -> ServiceResult:
        try:
            warehouse = self._get_warehouse(warehouse_id, require_active=False)
            if 'name' in warehouse_data:
                name = (warehouse_data['name'] or '').strip()
                if not name:
                    raise ValidationError("Warehouse name is required")
                warehouse.name = name
            if 'type' in warehouse_data:
                try:
                    warehouse.type = WarehouseType(warehouse_data['type']).value
                except ValueError:
                    raise ValidationError(f"Invalid warehouse type '{warehouse_data['type']}'")
            self._audit("UPDATE_WAREHOUSE", "warehouses", warehouse.id, warehouse_data)
            self.db.commit()
            return True, warehouse_to_dict(warehouse)

        except Exception as e:
            return self._handle_error("update warehouse", e)

    def _set_warehouse_active(self, warehouse_id: int, active: bool, operation: str) -> ServiceResult:
        try:
            warehouse = self._get_warehouse(warehouse_id, require_active=False)
            if warehouse.is_active == active:
                state = "active" if active else "inactive"
                raise InvalidStateError(f"Warehouse {warehouse.name} is already {state}")
            warehouse.is_active = active
            self._audit("ACTIVATE_WAREHOUSE" if active else "DEACTIVATE_WAREHOUSE",
                        "warehouses", warehouse.id, {'is_active': active})
            self.db.commit()
            return True, warehouse_to_dict(warehouse)

        except Exception as e:
            return self._handle_error(operation, e)

    def deactivate_warehouse(self, warehouse_id: int) -> ServiceResult:
        return self._set_warehouse_active(warehouse_id, False, "deactivate warehouse")

    def reactivate_warehouse(self, warehouse_id: int) -> ServiceResult:
        return self._set_warehouse_active(warehouse_id, True, "reactivate warehouse")

    def list_warehouses(self, scope: ScopeFilter = ALL_PROPERTIES,
                        include_inactive: bool = False) -> List[Warehouse]:
        query = scope.apply(self.db.query(Warehouse), Warehouse.property_id)
        if not include_inactive:
            query = query.filter(Warehouse.is_active.is_(True))
        return query.order_by(Warehouse.name).all()

    # Par levels and alerts

    def set_par_level(self, item_id: int, warehouse_id: int, par_level) -> ServiceResult:
        try:
            item = self._get_item(item_id)
            warehouse = self._get_warehouse(warehouse_id, require_active=False)
            if par_level is None:
                raise ValidationError("Par level is required")
            par_level = round_quantity(par_level)
            if par_level < ZERO:
                raise ValidationError("Par level cannot be negative")

            par = self.db.query(StockParLevel).filter(
                StockParLevel.stock_item_id == item.id,
                StockParLevel.warehouse_id == warehouse.id
            ).first()
            if par is None:
                par = StockParLevel(stock_item_id=item.id, warehouse_id=warehouse.id, par_level=par_level)
                self.db.add(par)
            else:
                par.par_level = par_level

            self._audit("SET_PAR_LEVEL", "stock_par_levels", f"{item.id}-{warehouse.id}",
                        {'par_level': par_level})
            self.db.commit()
            return True, {'stock_item_id': item.id, 'warehouse_id': warehouse.id, 'par_level': par_level}

        except Exception as e:
            return self._handle_error("set par level", e)

    def get_par_level(self, item_id: int, warehouse_id: int) -> Optional[StockParLevel]:
        return self.db.query(StockParLevel).filter(
            StockParLevel.stock_item_id == item_id,
            StockParLevel.warehouse_id == warehouse_id
        ).first()

    def delete_par_level(self, item_id: int, warehouse_id: int) -> ServiceResult:
        try:
            par = self.get_par_level(item_id, warehouse_id)
            if not par:
                raise NotFoundError("Par level not found")
            self.db.delete(par)
            self._audit("DELETE_PAR_LEVEL", "stock_par_levels", f"{item_id}-{warehouse_id}", {'deleted': True})
            self.db.commit()
            return True, {'deleted': True}

        except Exception as e:
            return self._handle_error("delete par level", e)

    def get_low_stock_alerts(self, scope: ScopeFilter = ALL_PROPERTIES,
                             warehouse_id: Optional[int] = None) -> List[Dict]:
        """
        Items below par, largest shortfall first

        A pair with a par level but no ledger row counts as zero on hand.
        """
        query = self.db.query(StockParLevel, StockItem, Warehouse, StockLevel).join(
            StockItem, StockParLevel.stock_item_id == StockItem.id
        ).join(
            Warehouse, StockParLevel.warehouse_id == Warehouse.id
        ).outerjoin(
            StockLevel,
            (StockLevel.stock_item_id == StockParLevel.stock_item_id)
            & (StockLevel.warehouse_id == StockParLevel.warehouse_id)
        ).filter(
            StockItem.is_active.is_(True),
            Warehouse.is_active.is_(True),
        )
        query = scope.apply(query, Warehouse.property_id)
        if warehouse_id:
            query = query.filter(StockParLevel.warehouse_id == warehouse_id)

        alerts = []
        for par, item, warehouse, level in query.all():
            current = to_decimal(level.quantity) if level else ZERO
            par_level = to_decimal(par.par_level)
            if current >= par_level:
                continue
            alerts.append({
                'stock_item_id': item.id,
                'item_code': item.item_code,
                'item_name': item.name,
                'warehouse_id': warehouse.id,
                'warehouse_name': warehouse.name,
                'current_quantity': current,
                'par_level': par_level,
                'deficit': round_quantity(par_level - current),
            })
        return sorted(alerts, key=lambda a: a['deficit'], reverse=True)

    def get_low_stock_alerts_by_warehouse(self, warehouse_id: int) -> List[Dict]:
        return self.get_low_stock_alerts(warehouse_id=warehouse_id)
