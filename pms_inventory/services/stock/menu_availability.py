"""
Menu Availability
Read-only servings calculation over kitchen stock levels
"""
import logging
from decimal import ROUND_FLOOR
from typing import Dict, List, Optional

from pms_inventory.core.exceptions import NotFoundError, ValidationError
from pms_inventory.core.precision import ZERO, to_decimal
from pms_inventory.models.stock import StockItem, StockLevel
from .base import InventoryService, ServiceResult

logger = logging.getLogger(__name__)

# Reported when a recipe has no ingredients to limit it
UNLIMITED_SERVINGS = 999


def possible_servings(available_qty, required_per_serving) -> int:
    """floor(available / required); zero when nothing is on hand"""
    available_qty = to_decimal(available_qty)
    required_per_serving = to_decimal(required_per_serving)
    if available_qty <= ZERO:
        return 0
    return int((available_qty / required_per_serving).to_integral_value(rounding=ROUND_FLOOR))


class MenuAvailabilityService(InventoryService):
    """Servings a recipe can still produce from one warehouse"""

    def calculate_available_servings(self, warehouse_id: int, ingredients: List[Dict],
                                     recipe_yield=1, threshold: int = 0) -> ServiceResult:
        """
        ingredients: [{'stock_item_id': ..., 'quantity': per-recipe quantity}]
        Returns (success, availability data or error)
        """
        try:
            warehouse = self._get_warehouse(warehouse_id, require_active=False)
            recipe_yield = to_decimal(recipe_yield)
            if recipe_yield <= ZERO:
                raise ValidationError("Recipe yield must be greater than zero")

            if not ingredients:
                return True, {
                    'warehouse_id': warehouse.id,
                    'available_servings': UNLIMITED_SERVINGS,
                    'is_available': True,
                    'ingredients': [],
                    'missing_ingredients': [],
                    'limiting_ingredient': None,
                }

            item_ids = [i.get('stock_item_id') for i in ingredients]
            levels = {
                level.stock_item_id: to_decimal(level.quantity)
                for level in self.db.query(StockLevel).filter(
                    StockLevel.warehouse_id == warehouse.id,
                    StockLevel.stock_item_id.in_(item_ids)
                ).all()
            }
            names = {
                item.id: item.name
                for item in self.db.query(StockItem).filter(StockItem.id.in_(item_ids)).all()
            }

            rows = []
            missing = []
            minimum: Optional[int] = None
            limiting = None
            for ingredient in ingredients:
                item_id = ingredient.get('stock_item_id')
                if item_id not in names:
                    raise NotFoundError(f"Stock item {item_id} not found")
                required = to_decimal(ingredient.get('quantity'))
                if required <= ZERO:
                    raise ValidationError(f"Ingredient quantity for {names[item_id]} must be greater than zero")
                per_serving = required / recipe_yield
                available = levels.get(item_id, ZERO)
                servings = possible_servings(available, per_serving)

                rows.append({
                    'stock_item_id': item_id,
                    'stock_item_name': names[item_id],
                    'required_per_serving': per_serving,
                    'available_quantity': available,
                    'possible_servings': servings,
                })
                if servings == 0:
                    missing.append(names[item_id])
                if minimum is None or servings < minimum:
                    minimum = servings
                    limiting = names[item_id]

            is_available = minimum >= threshold
            return True, {
                'warehouse_id': warehouse.id,
                'available_servings': minimum,
                'is_available': is_available,
                'ingredients': rows,
                'missing_ingredients': missing,
                'limiting_ingredient': limiting,
            }

        except Exception as e:
            return self._handle_error("calculate available servings", e)
