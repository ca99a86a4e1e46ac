"""
Tests for Cycle Counts
Numbering, count sheet building, variance and approved adjustments
"""

import pytest
from decimal import Decimal
from sqlalchemy.orm import Session

from pms_inventory.core.exceptions import SequenceOverflowError
from pms_inventory.core.precision import utcnow
from pms_inventory.core.scope import ScopeFilter
from pms_inventory.models import CycleCountItem, StockBatch, StockMovement
from pms_inventory.services.stock import CycleCountService, StockMovementService
from pms_inventory.services.stock.cycle_count import (
    calculate_line_variance, classify_abc, generate_count_number_pure
)


@pytest.fixture
def count_service(db_session: Session) -> CycleCountService:
    return CycleCountService(db_session, "counter")


@pytest.fixture
def stocked_store(stock, milk, flour, main_store):
    """Milk in two batches, flour on the ledger only"""
    stock.receive_batch(milk, main_store, "M1", 10, 2)
    stock.receive_batch(milk, main_store, "M2", 5, 3)
    stock.receive_ledger_only(flour, main_store, 20, Decimal("1.5"))
    return main_store


def _open_count(count_service, warehouse, count_type="FULL", **extra):
    success, count = count_service.create_cycle_count({'warehouse_id': warehouse.id, 'type': count_type, **extra})
    assert success, count
    return count


def _started_count(count_service, warehouse, count_type="FULL", options=None, **extra):
    count = _open_count(count_service, warehouse, count_type, **extra)
    success, result = count_service.populate_count_items(count['id'], options)
    assert success, result
    success, result = count_service.start_cycle_count(count['id'])
    assert success, result
    return result


def _lines_by_key(count):
    return {(line['item_code'], line['batch_number']): line for line in count['items']}


def _count_all(count_service, count, quantities):
    lines = _lines_by_key(count)
    counts = [{'cycle_count_item_id': lines[key]['id'], 'counted_quantity': Decimal(str(qty))}
              for key, qty in quantities.items()]
    success, result = count_service.record_bulk_counts(count['id'], counts)
    assert success, result


class TestCountHelpers:
    """Pure numbering, classification and variance arithmetic"""

    def test_first_number_of_the_year(self):
        assert generate_count_number_pure([], 2024) == "CC-2024-0001"

    def test_next_sequence_ignores_other_years(self):
        existing = ["CC-2024-0003", "CC-2023-0009", "CC-2024-ABCD"]
        assert generate_count_number_pure(existing, 2024) == "CC-2024-0004"

    def test_overflow_past_yearly_maximum(self):
        with pytest.raises(SequenceOverflowError) as exc_info:
            generate_count_number_pure(["CC-2024-9999"], 2024)
        assert exc_info.value.details['sequence'] == 10000

    def test_abc_classes_follow_cumulative_value(self):
        classes = classify_abc([(1, Decimal("700")), (2, Decimal("200")), (3, Decimal("100"))])
        assert classes == {1: 'A', 2: 'B', 3: 'C'}

    def test_zero_value_items_are_class_c(self):
        assert classify_abc([(1, Decimal("0")), (2, Decimal("0"))]) == {1: 'C', 2: 'C'}

    def test_shortage_variance(self):
        assert calculate_line_variance(Decimal("10"), Decimal("8"), Decimal("2")) == (
            Decimal("-2.000"), Decimal("-20.00"), Decimal("-4.00")
        )

    def test_variance_against_zero_system_quantity(self):
        variance, percent, cost = calculate_line_variance(Decimal("0"), Decimal("3"), Decimal("1.5"))
        assert (variance, percent, cost) == (Decimal("3"), Decimal("100"), Decimal("4.50"))
        assert calculate_line_variance(Decimal("0"), Decimal("0"), Decimal("1.5"))[1] == Decimal("0")


class TestCountSheet:
    """Populating and starting a count"""

    def test_full_count_has_a_line_per_batch_and_ledger_only_item(self, count_service, stocked_store):
        count = _open_count(count_service, stocked_store)
        assert count['count_number'].startswith("CC-")
        assert count['status'] == "DRAFT"

        success, result = count_service.populate_count_items(count['id'])
        assert success, result
        assert result['items_created'] == 3

        lines = _lines_by_key(count_service.get_cycle_count(count['id']))
        assert set(lines) == {("ITM-0001", "M1"), ("ITM-0001", "M2"), ("ITM-0002", None)}
        assert lines[("ITM-0001", "M2")]['system_quantity'] == Decimal("5")
        assert lines[("ITM-0001", "M2")]['unit_cost'] == Decimal("3")
        assert lines[("ITM-0002", None)]['system_quantity'] == Decimal("20")

    def test_unbatched_remainder_gets_its_own_line(self, count_service, stock, milk, main_store):
        stock.receive_batch(milk, main_store, "M1", 10, 2)
        stock.receive_ledger_only(milk, main_store, 4, 2)

        count = _started_count(count_service, main_store)

        lines = _lines_by_key(count)
        assert lines[("ITM-0001", "M1")]['system_quantity'] == Decimal("10")
        assert lines[("ITM-0001", None)]['system_quantity'] == Decimal("4")

    def test_start_snapshots_current_stock(self, db_session: Session, count_service, stocked_store, flour):
        count = _open_count(count_service, stocked_store)
        count_service.populate_count_items(count['id'])

        success, result = StockMovementService(db_session).consume_stock({
            'stock_item_id': flour.id, 'warehouse_id': stocked_store.id, 'quantity': Decimal("5"),
        })
        assert success, result

        success, started = count_service.start_cycle_count(count['id'])
        assert success, started
        assert started['status'] == "IN_PROGRESS"
        assert started['started_at'] is not None
        assert _lines_by_key(started)[("ITM-0002", None)]['system_quantity'] == Decimal("15")

    def test_start_requires_lines(self, count_service, main_store):
        count = _open_count(count_service, main_store)

        success, error = count_service.start_cycle_count(count['id'])

        assert not success
        assert error.code == "VALIDATION_ERROR"

    def test_scheduled_count_can_be_populated_and_started(self, count_service, stocked_store):
        count = _started_count(count_service, stocked_store, scheduled_at=utcnow())
        assert count['status'] == "IN_PROGRESS"
        assert count['scheduled_at'] is not None

    def test_abc_count_selects_one_value_class(self, count_service, stocked_store):
        # milk is worth 35 and flour 30, so milk alone makes up class A
        count = _started_count(count_service, stocked_store, "ABC_CLASS_A")
        assert {line['item_code'] for line in count['items']} == {"ITM-0001"}

    def test_random_count_samples_items(self, count_service, stocked_store):
        count = _started_count(count_service, stocked_store, "RANDOM", sample_percent=50)
        assert len({line['stock_item_id'] for line in count['items']}) == 1

    def test_random_count_requires_a_sample(self, count_service, main_store):
        success, error = count_service.create_cycle_count({'warehouse_id': main_store.id, 'type': "RANDOM"})
        assert not success
        assert error.code == "VALIDATION_ERROR"

    def test_spot_count_includes_items_without_stock(self, count_service, stock, milk, flour, main_store):
        stock.receive_batch(milk, main_store, "M1", 10, 2)

        count = _started_count(count_service, main_store, "SPOT", options={'item_ids': [flour.id]})

        assert len(count['items']) == 1
        assert count['items'][0]['stock_item_id'] == flour.id
        assert count['items'][0]['system_quantity'] == Decimal("0")

    def test_blind_count_hides_system_figures_until_submitted(self, count_service, stocked_store):
        count = _started_count(count_service, stocked_store, blind_count=True)

        sheet = count_service.get_count_sheet(count['id'])
        assert all(line['system_quantity'] is None for line in sheet)

        _count_all(count_service, count, {("ITM-0001", "M1"): 10, ("ITM-0001", "M2"): 5, ("ITM-0002", None): 20})
        success, result = count_service.submit_for_review(count['id'])
        assert success, result
        assert all(line['system_quantity'] is not None for line in count_service.get_count_sheet(count['id']))


class TestRecordingCounts:
    """Count entry and review"""

    def test_counts_only_while_in_progress(self, db_session: Session, count_service, stocked_store):
        count = _open_count(count_service, stocked_store)
        count_service.populate_count_items(count['id'])
        line = db_session.query(CycleCountItem).filter(CycleCountItem.cycle_count_id == count['id']).first()

        success, error = count_service.record_count(line.id, {'counted_quantity': Decimal("1")})

        assert not success
        assert error.code == "INVALID_STATE"

    def test_negative_count_is_rejected(self, count_service, stocked_store):
        count = _started_count(count_service, stocked_store)

        success, error = count_service.record_count(count['items'][0]['id'], {'counted_quantity': Decimal("-1")})

        assert not success
        assert error.code == "VALIDATION_ERROR"

    def test_submit_requires_every_line_counted(self, count_service, stocked_store):
        count = _started_count(count_service, stocked_store)
        success, line = count_service.record_count(count['items'][0]['id'], {'counted_quantity': Decimal("10")})
        assert success, line

        progress = count_service.get_count_progress(count['id'])
        assert progress['items_counted'] == 1
        assert progress['items_remaining'] == 2

        success, error = count_service.submit_for_review(count['id'])
        assert not success
        assert error.code == "VALIDATION_ERROR"
        assert len(error.details['uncounted_item_ids']) == 2

    def test_submit_calculates_variances_and_summary(self, count_service, stocked_store):
        count = _started_count(count_service, stocked_store)
        _count_all(count_service, count, {("ITM-0001", "M1"): 8, ("ITM-0001", "M2"): 5, ("ITM-0002", None): 21})

        success, result = count_service.submit_for_review(count['id'])

        assert success, result
        assert result['status'] == "PENDING_REVIEW"
        assert result['items_counted'] == 3
        assert result['items_with_variance'] == 2
        assert result['total_variance_cost'] == Decimal("5.50")
        assert result['accuracy_percent'] == Decimal("33.33")
        lines = _lines_by_key(result)
        assert lines[("ITM-0001", "M1")]['variance'] == Decimal("-2")
        assert lines[("ITM-0001", "M1")]['variance_cost'] == Decimal("-4.00")
        assert lines[("ITM-0002", None)]['variance_percent'] == Decimal("5.00")

    def test_reject_returns_to_counting(self, count_service, stocked_store):
        count = _started_count(count_service, stocked_store)
        _count_all(count_service, count, {("ITM-0001", "M1"): 8, ("ITM-0001", "M2"): 5, ("ITM-0002", None): 21})
        count_service.submit_for_review(count['id'])

        success, error = count_service.reject_cycle_count(count['id'], " ")
        assert not success and error.code == "VALIDATION_ERROR"

        success, result = count_service.reject_cycle_count(count['id'], "Recount dairy", clear_counts=True)
        assert success, result
        assert result['status'] == "IN_PROGRESS"
        assert "Recount dairy" in result['notes']
        assert all(line['counted_quantity'] is None for line in result['items'])

    def test_completed_count_cannot_be_cancelled(self, count_service, stocked_store):
        count = _started_count(count_service, stocked_store)
        _count_all(count_service, count, {("ITM-0001", "M1"): 10, ("ITM-0001", "M2"): 5, ("ITM-0002", None): 20})
        count_service.submit_for_review(count['id'])
        success, result = count_service.approve_cycle_count(count['id'])
        assert success, result

        success, error = count_service.cancel_cycle_count(count['id'], "Too late")

        assert not success
        assert error.code == "INVALID_STATE"


class TestCountAdjustments:
    """Approval books variances as ADJUSTMENT movements"""

    def test_approval_adjusts_batches_and_ledger(self, db_session: Session, count_service, stock,
                                                 stocked_store, milk, flour):
        count = _started_count(count_service, stocked_store)
        _count_all(count_service, count, {("ITM-0001", "M1"): 8, ("ITM-0001", "M2"): 5, ("ITM-0002", None): 21})
        count_service.submit_for_review(count['id'])

        success, result = count_service.approve_cycle_count(count['id'])

        assert success, result
        assert result['status'] == "COMPLETED"
        assert result['approved_by'] == "counter"
        assert len(result['adjustments']) == 2

        assert stock.level(milk, stocked_store).quantity == Decimal("13")
        assert db_session.query(StockBatch).filter(StockBatch.batch_number == "M1").one().quantity == Decimal("8")
        stock.assert_partition(milk, stocked_store)

        flour_level = stock.level(flour, stocked_store)
        assert flour_level.quantity == Decimal("21")
        assert flour_level.average_cost == Decimal("1.5")

        lines = _lines_by_key(count_service.get_cycle_count(count['id']))
        shortage = db_session.get(StockMovement, lines[("ITM-0001", "M1")]['adjustment_movement_id'])
        assert shortage.type == "ADJUSTMENT"
        assert shortage.quantity == Decimal("2")
        assert shortage.unit_cost == Decimal("2")
        assert shortage.source_warehouse_id == stocked_store.id
        assert shortage.destination_warehouse_id is None
        assert shortage.reference_type == "CYCLE_COUNT"
        assert shortage.reason == f"Cycle Count Adjustment: {count['count_number']}"

        surplus = db_session.get(StockMovement, lines[("ITM-0002", None)]['adjustment_movement_id'])
        assert surplus.destination_warehouse_id == stocked_store.id
        assert lines[("ITM-0001", "M2")]['adjustment_made'] is False

    def test_adjustments_are_not_booked_twice(self, db_session: Session, count_service, stocked_store):
        count = _started_count(count_service, stocked_store)
        _count_all(count_service, count, {("ITM-0001", "M1"): 8, ("ITM-0001", "M2"): 5, ("ITM-0002", None): 21})
        count_service.submit_for_review(count['id'])
        count_service.approve_cycle_count(count['id'])
        movements = db_session.query(StockMovement).count()

        success, result = count_service.create_adjustments(count['id'])

        assert success, result
        assert result['adjustments_created'] == 0
        assert db_session.query(StockMovement).count() == movements

    def test_found_stock_for_an_empty_item(self, count_service, stock, milk, flour, main_store):
        stock.receive_batch(milk, main_store, "M1", 10, 2)
        count = _started_count(count_service, main_store, "SPOT", options={'item_ids': [flour.id]})
        _count_all(count_service, count, {("ITM-0002", None): 2})
        count_service.submit_for_review(count['id'])

        success, result = count_service.approve_cycle_count(count['id'])

        assert success, result
        assert stock.level(flour, main_store).quantity == Decimal("2")

    def test_approval_fails_when_a_batch_was_drawn_down(self, db_session: Session, count_service, stock,
                                                         stocked_store, milk):
        count = _started_count(count_service, stocked_store)
        _count_all(count_service, count, {("ITM-0001", "M1"): 8, ("ITM-0001", "M2"): 5, ("ITM-0002", None): 21})
        count_service.submit_for_review(count['id'])
        m1 = db_session.query(StockBatch).filter(StockBatch.batch_number == "M1").one()
        success, result = StockMovementService(db_session).consume_stock({
            'stock_item_id': milk.id, 'warehouse_id': stocked_store.id,
            'quantity': Decimal("9"), 'batch_id': m1.id,
        })
        assert success, result
        movements = db_session.query(StockMovement).count()

        success, error = count_service.approve_cycle_count(count['id'])

        assert not success
        assert error.code == "INSUFFICIENT_STOCK"
        assert count_service.get_cycle_count(count['id'])['status'] == "PENDING_REVIEW"
        assert db_session.query(StockMovement).count() == movements
        assert stock.level(milk, stocked_store).quantity == Decimal("6")


class TestVarianceAnalysis:
    """Variance patterns over completed counts"""

    def test_analysis_ranks_items_and_categories(self, count_service, stocked_store):
        count = _started_count(count_service, stocked_store)
        _count_all(count_service, count, {("ITM-0001", "M1"): 8, ("ITM-0001", "M2"): 5, ("ITM-0002", None): 21})
        count_service.submit_for_review(count['id'])
        count_service.approve_cycle_count(count['id'])

        analysis = count_service.get_variance_analysis(warehouse_id=stocked_store.id)

        summary = analysis['summary']
        assert summary['total_variance_occurrences'] == 2
        assert summary['unique_items_with_variance'] == 2
        assert summary['total_variance_cost'] == Decimal("5.50")
        assert summary['most_problematic_category'] == "Food"
        assert analysis['top_items_by_cost'][0]['item_code'] == "ITM-0001"
        food = analysis['variance_by_category'][0]
        assert food['lines_counted'] == 3
        assert food['variance_count'] == 2
        assert food['accuracy_percent'] == Decimal("33.33")

    def test_open_counts_are_left_out(self, count_service, stocked_store):
        count = _started_count(count_service, stocked_store)
        _count_all(count_service, count, {("ITM-0001", "M1"): 8, ("ITM-0001", "M2"): 5, ("ITM-0002", None): 21})
        count_service.submit_for_review(count['id'])

        analysis = count_service.get_variance_analysis()

        assert analysis['summary']['total_variance_occurrences'] == 0
        assert analysis['summary']['most_problematic_category'] is None

    def test_listing_is_scoped(self, count_service, stocked_store, resort_store, hotel):
        _open_count(count_service, stocked_store)
        _open_count(count_service, resort_store)

        listing = count_service.list_cycle_counts(ScopeFilter(property_id=hotel.id))

        assert listing['total'] == 1
        assert listing['cycle_counts'][0]['warehouse_id'] == stocked_store.id
