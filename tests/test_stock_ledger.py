"""
Tests for the Stock Ledger
Weighted-average costing and quantity bookkeeping
"""

import pytest
from decimal import Decimal
from sqlalchemy.orm import Session

from pms_inventory.core.exceptions import InsufficientStockError, ValidationError
from pms_inventory.core.scope import ScopeFilter
from pms_inventory.services.stock.stock_ledger import (
    StockLedgerService, calculate_weighted_average, apply_receipt, apply_outflow
)


class TestWeightedAverage:
    """Pure costing formulas"""

    def test_equal_quantities_blend_to_midpoint(self):
        assert calculate_weighted_average(10, Decimal("2"), 10, Decimal("4")) == Decimal("3.0000")

    def test_first_receipt_takes_its_own_cost(self):
        assert calculate_weighted_average(0, 0, 25, Decimal("1.2345")) == Decimal("1.2345")

    def test_result_is_rounded_half_up_to_four_places(self):
        # (1 * 1 + 2 * 1.00005) / 3 = 1.0000333...
        assert calculate_weighted_average(1, 1, 2, Decimal("1.00005")) == Decimal("1.0000")
        # (100 * 5 + 50 * 6) / 150 = 5.33333...
        assert calculate_weighted_average(100, 5, 50, 6) == Decimal("5.3333")

    def test_apply_receipt_returns_quantity_and_cost(self):
        quantity, average = apply_receipt(Decimal("10"), Decimal("2"), Decimal("10"), Decimal("4"))
        assert quantity == Decimal("20.000")
        assert average == Decimal("3.0000")

    def test_apply_outflow_keeps_remaining_quantity(self):
        assert apply_outflow(Decimal("20"), Decimal("7.5")) == Decimal("12.500")

    def test_apply_outflow_to_exactly_zero(self):
        assert apply_outflow(Decimal("5"), Decimal("5")) == Decimal("0.000")

    def test_apply_outflow_rejects_overdraw(self):
        with pytest.raises(InsufficientStockError) as exc_info:
            apply_outflow(Decimal("5"), Decimal("8"))
        assert exc_info.value.available == Decimal("5")
        assert exc_info.value.requested == Decimal("8")


class TestStockLedgerService:
    """Ledger rows in the database"""

    def test_receipts_blend_average_cost(self, db_session: Session, milk, main_store):
        ledger = StockLedgerService(db_session)
        ledger.increase_on_receipt(milk.id, main_store.id, Decimal("10"), Decimal("2"))
        ledger.increase_on_receipt(milk.id, main_store.id, Decimal("10"), Decimal("4"))
        db_session.commit()

        level = ledger.get_stock_level(milk.id, main_store.id)
        assert level['quantity'] == Decimal("20")
        assert level['average_cost'] == Decimal("3.0000")
        assert level['total_value'] == Decimal("60.00")

    def test_outflow_leaves_average_cost_unchanged(self, db_session: Session, milk, main_store):
        ledger = StockLedgerService(db_session)
        ledger.increase_on_receipt(milk.id, main_store.id, Decimal("100"), Decimal("5"))
        ledger.increase_on_receipt(milk.id, main_store.id, Decimal("50"), Decimal("6"))
        ledger.decrease_on_outflow(milk.id, main_store.id, Decimal("60"))
        db_session.commit()

        assert ledger.get_stock_level(milk.id, main_store.id)['quantity'] == Decimal("90")
        assert ledger.get_weighted_average_cost(milk.id, main_store.id) == Decimal("5.3333")

    def test_outflow_without_ledger_row_is_insufficient(self, db_session: Session, milk, main_store):
        ledger = StockLedgerService(db_session)
        with pytest.raises(InsufficientStockError):
            ledger.decrease_on_outflow(milk.id, main_store.id, Decimal("1"))

    def test_receipt_rejects_non_positive_quantity(self, db_session: Session, milk, main_store):
        ledger = StockLedgerService(db_session)
        with pytest.raises(ValidationError):
            ledger.increase_on_receipt(milk.id, main_store.id, Decimal("0"), Decimal("1"))

    def test_adjust_up_keeps_average_and_new_row_starts_at_zero_cost(self, db_session: Session,
                                                                       milk, flour, main_store):
        ledger = StockLedgerService(db_session)
        ledger.increase_on_receipt(milk.id, main_store.id, Decimal("10"), Decimal("2.5"))
        ledger.adjust_by(milk.id, main_store.id, Decimal("5"))
        ledger.adjust_by(flour.id, main_store.id, Decimal("3"))
        db_session.commit()

        milk_level = ledger.get_stock_level(milk.id, main_store.id)
        assert milk_level['quantity'] == Decimal("15")
        assert milk_level['average_cost'] == Decimal("2.5")

        flour_level = ledger.get_stock_level(flour.id, main_store.id)
        assert flour_level['quantity'] == Decimal("3")
        assert flour_level['average_cost'] == Decimal("0")

    def test_total_quantity_respects_property_scope(self, db_session: Session, milk, main_store,
                                                    kitchen, resort_store, hotel, other_hotel):
        ledger = StockLedgerService(db_session)
        ledger.increase_on_receipt(milk.id, main_store.id, Decimal("10"), Decimal("1"))
        ledger.increase_on_receipt(milk.id, kitchen.id, Decimal("4"), Decimal("1"))
        ledger.increase_on_receipt(milk.id, resort_store.id, Decimal("7"), Decimal("1"))
        db_session.commit()

        assert ledger.get_total_stock_quantity(milk.id) == Decimal("21.000")
        assert ledger.get_total_stock_quantity(milk.id, ScopeFilter(hotel.id)) == Decimal("14.000")
        assert ledger.get_total_stock_quantity(milk.id, ScopeFilter(other_hotel.id)) == Decimal("7.000")

    def test_warehouse_summary_values_stock(self, db_session: Session, milk, flour, main_store):
        ledger = StockLedgerService(db_session)
        ledger.increase_on_receipt(milk.id, main_store.id, Decimal("10"), Decimal("1.50"))
        ledger.increase_on_receipt(flour.id, main_store.id, Decimal("4"), Decimal("2.25"))
        db_session.commit()

        summary = ledger.get_warehouse_stock_summary(main_store.id)
        assert summary['item_count'] == 2
        assert summary['total_value'] == Decimal("24.00")
