"""
Tests for Stock Master Data
Items, categories, warehouses, par levels, low-stock alerts and menu availability
"""

import pytest
from decimal import Decimal
from sqlalchemy.orm import Session

from pms_inventory.core.scope import ScopeFilter
from pms_inventory.models import StockCategory, StockItem
from pms_inventory.services.stock import MenuAvailabilityService, StockMasterService
from pms_inventory.services.stock.menu_availability import possible_servings
from pms_inventory.services.stock.stock_master import generate_item_code


class TestStockItems:
    """Item creation and lifecycle"""

    def test_item_codes_are_sequential(self):
        assert generate_item_code([]) == "ITM-0001"
        assert generate_item_code(["ITM-0003", "ITM-0010", "OLD-9999", "ITM-ABCD"]) == "ITM-0011"

    def test_create_item_assigns_next_code(self, db_session: Session, hotel, food_category, milk, flour):
        success, item = StockMasterService(db_session, "manager").create_stock_item({
            'property_id': hotel.id,
            'name': '  Butter  ',
            'category_id': food_category.id,
            'primary_unit': 'KG',
            'sku': 'BUT-250',
        })

        assert success, item
        assert item['item_code'] == "ITM-0003"
        assert item['name'] == "Butter"
        assert item['is_active'] is True

    def test_duplicate_sku_is_rejected(self, db_session: Session, hotel, food_category):
        service = StockMasterService(db_session)
        data = {'property_id': hotel.id, 'name': 'Eggs', 'category_id': food_category.id, 'sku': 'EGG-12'}
        assert service.create_stock_item(data)[0]

        success, error = service.create_stock_item(dict(data, name='More eggs'))

        assert not success
        assert error.code == "CONSTRAINT_VIOLATION"

    def test_consignment_item_requires_supplier(self, db_session: Session, hotel, food_category, supplier):
        service = StockMasterService(db_session)
        data = {'property_id': hotel.id, 'name': 'Wine', 'category_id': food_category.id,
                'is_consignment': True}

        success, error = service.create_stock_item(data)
        assert not success and error.code == "VALIDATION_ERROR"

        success, item = service.create_stock_item(dict(data, supplier_id=supplier.id))
        assert success, item
        assert item['is_consignment'] is True

    def test_category_from_other_property_is_rejected(self, db_session: Session, other_hotel, food_category):
        success, error = StockMasterService(db_session).create_stock_item({
            'property_id': other_hotel.id, 'name': 'Rice', 'category_id': food_category.id,
        })
        assert not success
        assert error.code == "VALIDATION_ERROR"

    def test_deactivate_and_reactivate(self, db_session: Session, milk):
        service = StockMasterService(db_session)

        success, item = service.deactivate_stock_item(milk.id)
        assert success and item['is_active'] is False

        success, error = service.deactivate_stock_item(milk.id)
        assert not success and error.code == "INVALID_STATE"

        success, item = service.reactivate_stock_item(milk.id)
        assert success and item['is_active'] is True

    def test_item_with_history_cannot_be_deleted(self, db_session: Session, stock, milk, flour, main_store):
        stock.receive_ledger_only(milk, main_store, 1, 1)
        service = StockMasterService(db_session)

        success, error = service.delete_stock_item(milk.id)
        assert not success
        assert error.code == "CONSTRAINT_VIOLATION"

        success, result = service.delete_stock_item(flour.id)
        assert success, result
        assert db_session.get(StockItem, flour.id) is None

    def test_list_items_is_scoped(self, db_session: Session, other_hotel, milk, flour):
        service = StockMasterService(db_session)
        assert [i.item_code for i in service.list_stock_items()] == ["ITM-0001", "ITM-0002"]
        assert service.list_stock_items(ScopeFilter(other_hotel.id)) == []


class TestCategoriesAndWarehouses:
    """Category and warehouse master data"""

    def test_category_names_are_unique_per_property(self, db_session: Session, hotel, food_category):
        success, error = StockMasterService(db_session).create_category({
            'property_id': hotel.id, 'name': 'FOOD',
        })
        assert not success
        assert error.code == "CONSTRAINT_VIOLATION"

    def test_category_in_use_cannot_be_deleted(self, db_session: Session, hotel, food_category, milk):
        service = StockMasterService(db_session)

        success, error = service.delete_category(food_category.id)
        assert not success and error.code == "CONSTRAINT_VIOLATION"

        success, empty = service.create_category({'property_id': hotel.id, 'name': 'Linen'})
        assert success, empty
        success, _ = service.delete_category(empty['id'])
        assert success
        assert db_session.get(StockCategory, empty['id']) is None

    def test_system_category_is_protected(self, db_session: Session, hotel):
        service = StockMasterService(db_session)
        success, category = service.create_category({
            'property_id': hotel.id, 'name': 'Beverages', 'is_system': True,
        })
        assert success, category

        success, error = service.update_category(category['id'], {'name': 'Drinks'})
        assert not success and error.code == "INVALID_STATE"

        success, error = service.delete_category(category['id'])
        assert not success and error.code == "CONSTRAINT_VIOLATION"

        success, error = service.deactivate_category(category['id'])
        assert not success and error.code == "INVALID_STATE"

    def test_deactivate_category(self, db_session: Session, food_category):
        success, category = StockMasterService(db_session).deactivate_category(food_category.id)
        assert success, category
        assert category['is_active'] is False

    def test_create_warehouse_validates_type(self, db_session: Session, hotel):
        service = StockMasterService(db_session)

        success, warehouse = service.create_warehouse({'property_id': hotel.id, 'name': 'Rooftop Bar', 'type': 'BAR'})
        assert success, warehouse
        assert warehouse['type'] == "BAR"

        success, error = service.create_warehouse({'property_id': hotel.id, 'name': 'Garage', 'type': 'GARAGE'})
        assert not success and error.code == "VALIDATION_ERROR"

    def test_inactive_warehouses_are_hidden(self, db_session: Session, main_store, kitchen):
        service = StockMasterService(db_session)
        assert service.deactivate_warehouse(kitchen.id)[0]

        assert [w.name for w in service.list_warehouses()] == ["Main Stockroom"]
        assert len(service.list_warehouses(include_inactive=True)) == 2


class TestLowStockAlerts:
    """Par levels and alerts"""

    def test_alerts_sorted_by_deficit(self, db_session: Session, stock, milk, flour, main_store, kitchen):
        service = StockMasterService(db_session)
        assert service.set_par_level(milk.id, main_store.id, Decimal("10"))[0]
        assert service.set_par_level(flour.id, main_store.id, Decimal("50"))[0]
        assert service.set_par_level(milk.id, kitchen.id, Decimal("2"))[0]
        stock.receive_ledger_only(milk, main_store, 7, 1)
        stock.receive_ledger_only(flour, main_store, 20, 1)
        stock.receive_ledger_only(milk, kitchen, 5, 1)

        alerts = service.get_low_stock_alerts()

        assert [(a['item_code'], a['deficit']) for a in alerts] == [
            ("ITM-0002", Decimal("30")), ("ITM-0001", Decimal("3"))
        ]

    def test_missing_ledger_row_counts_as_zero(self, db_session: Session, milk, kitchen):
        service = StockMasterService(db_session)
        assert service.set_par_level(milk.id, kitchen.id, Decimal("4"))[0]

        alerts = service.get_low_stock_alerts_by_warehouse(kitchen.id)

        assert len(alerts) == 1
        assert alerts[0]['current_quantity'] == Decimal("0")

    def test_alerts_respect_scope(self, db_session: Session, milk, main_store, hotel, other_hotel):
        service = StockMasterService(db_session)
        assert service.set_par_level(milk.id, main_store.id, Decimal("4"))[0]

        assert len(service.get_low_stock_alerts(ScopeFilter(hotel.id))) == 1
        assert service.get_low_stock_alerts(ScopeFilter(other_hotel.id)) == []

    def test_par_level_updates_and_deletes(self, db_session: Session, milk, main_store):
        service = StockMasterService(db_session)
        assert service.set_par_level(milk.id, main_store.id, Decimal("4"))[0]
        success, result = service.set_par_level(milk.id, main_store.id, Decimal("6"))
        assert success and result['par_level'] == Decimal("6")

        success, error = service.set_par_level(milk.id, main_store.id, Decimal("-1"))
        assert not success and error.code == "VALIDATION_ERROR"

        assert service.delete_par_level(milk.id, main_store.id)[0]
        success, error = service.delete_par_level(milk.id, main_store.id)
        assert not success and error.code == "NOT_FOUND"


class TestMenuAvailability:
    """Servings from kitchen stock"""

    @pytest.mark.parametrize("available,required,expected", [
        ("10", "3", 3),
        ("0", "1", 0),
        ("-2", "1", 0),
        ("0.5", "0.25", 2),
    ])
    def test_possible_servings(self, available, required, expected):
        assert possible_servings(Decimal(available), Decimal(required)) == expected

    def test_limiting_ingredient_sets_servings(self, db_session: Session, stock, milk, flour, kitchen):
        stock.receive_ledger_only(milk, kitchen, 3, 1)
        stock.receive_ledger_only(flour, kitchen, 10, 1)

        success, result = MenuAvailabilityService(db_session).calculate_available_servings(
            kitchen.id,
            [{'stock_item_id': milk.id, 'quantity': Decimal("2")},
             {'stock_item_id': flour.id, 'quantity': Decimal("4")}],
            recipe_yield=4,
        )

        assert success, result
        # milk 3 / 0.5 = 6, flour 10 / 1 = 10
        assert result['available_servings'] == 6
        assert result['limiting_ingredient'] == "Whole Milk"
        assert result['is_available'] is True

    def test_threshold_and_missing_ingredients(self, db_session: Session, stock, milk, flour, kitchen):
        stock.receive_ledger_only(milk, kitchen, 3, 1)
        service = MenuAvailabilityService(db_session)

        success, result = service.calculate_available_servings(
            kitchen.id, [{'stock_item_id': milk.id, 'quantity': Decimal("1")}], threshold=5
        )
        assert success and result['available_servings'] == 3
        assert result['is_available'] is False

        success, result = service.calculate_available_servings(
            kitchen.id, [{'stock_item_id': milk.id, 'quantity': Decimal("1")},
                         {'stock_item_id': flour.id, 'quantity': Decimal("1")}]
        )
        assert success
        assert result['available_servings'] == 0
        assert result['missing_ingredients'] == ["Flour"]
        assert result['is_available'] is True

        success, result = service.calculate_available_servings(
            kitchen.id, [{'stock_item_id': flour.id, 'quantity': Decimal("1")}], threshold=1
        )
        assert success
        assert result['is_available'] is False

    def test_recipe_without_ingredients(self, db_session: Session, kitchen):
        success, result = MenuAvailabilityService(db_session).calculate_available_servings(kitchen.id, [])
        assert success
        assert result['available_servings'] == 999

    def test_invalid_recipe_yield(self, db_session: Session, milk, kitchen):
        success, error = MenuAvailabilityService(db_session).calculate_available_servings(
            kitchen.id, [{'stock_item_id': milk.id, 'quantity': Decimal("1")}], recipe_yield=0
        )
        assert not success
        assert error.code == "VALIDATION_ERROR"
