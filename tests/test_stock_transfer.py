"""
Tests for Stock Transfers
Ledger-only and batch-preserving moves between warehouses
"""

from decimal import Decimal
from sqlalchemy.orm import Session

from pms_inventory.models import StockBatch, StockMovement
from pms_inventory.services.stock import (
    LotTrackingService, MovementLogService, StockLedgerService, StockTransferService
)


def _transfer(db_session, item, source, destination, quantity, **extra):
    data = {
        'stock_item_id': item.id,
        'source_warehouse_id': source.id,
        'destination_warehouse_id': destination.id,
        'quantity': Decimal(str(quantity)),
    }
    data.update(extra)
    return StockTransferService(db_session, "porter").transfer_stock(data)


class TestLedgerTransfer:
    """Stock without batches"""

    def test_transfer_values_at_source_average(self, db_session: Session, stock, flour, main_store, kitchen):
        stock.receive_ledger_only(flour, main_store, 10, 2)
        stock.receive_ledger_only(flour, main_store, 10, 4)
        stock.receive_ledger_only(flour, kitchen, 5, 10)

        success, result = _transfer(db_session, flour, main_store, kitchen, 5)

        assert success, result
        assert result['unit_cost'] == Decimal("3.0000")
        assert result['total_cost'] == Decimal("15.00")
        assert result['batches'] == []
        # (5 * 10 + 5 * 3) / 10
        assert result['destination_average_cost'] == Decimal("6.5000")

        source = stock.level(flour, main_store)
        assert source.quantity == Decimal("15")
        assert source.average_cost == Decimal("3.0000")
        assert stock.level(flour, kitchen).quantity == Decimal("10")

    def test_movement_pair_links_in_to_out(self, db_session: Session, stock, flour, main_store, kitchen):
        stock.receive_ledger_only(flour, main_store, 10, 2)

        success, result = _transfer(db_session, flour, main_store, kitchen, 4, reason="Weekend prep")

        assert success, result
        out_movement, in_movement = [db_session.get(StockMovement, mid) for mid in result['movement_ids']]
        assert out_movement.type == "TRANSFER_OUT"
        assert in_movement.type == "TRANSFER_IN"
        assert in_movement.reference_type == "TRANSFER"
        assert in_movement.reference_id == str(out_movement.id)
        for movement in (out_movement, in_movement):
            assert movement.source_warehouse_id == main_store.id
            assert movement.destination_warehouse_id == kitchen.id
            assert movement.reason == "Weekend prep"
            assert movement.created_by == "porter"

    def test_quantity_is_conserved(self, db_session: Session, stock, flour, main_store, kitchen):
        stock.receive_ledger_only(flour, main_store, 12, 2)

        _transfer(db_session, flour, main_store, kitchen, 5)
        _transfer(db_session, flour, kitchen, main_store, 2)

        total = stock.level(flour, main_store).quantity + stock.level(flour, kitchen).quantity
        assert total == Decimal("12")
        assert stock.level(flour, kitchen).quantity == Decimal("3")

    def test_replay_after_transfer_matches_both_ledgers(self, db_session: Session, stock, flour,
                                                        main_store, kitchen):
        stock.receive_ledger_only(flour, main_store, 10, 2)
        stock.receive_ledger_only(flour, kitchen, 2, 5)
        _transfer(db_session, flour, main_store, kitchen, 4)

        log = MovementLogService(db_session)
        assert log.replay_stock_level(flour.id, main_store.id)['matches_ledger'] is True
        assert log.replay_stock_level(flour.id, kitchen.id)['matches_ledger'] is True


class TestBatchTransfer:
    """Batch-tracked stock keeps its lot identity"""

    def test_lots_move_fefo_and_keep_their_identity(self, db_session: Session, stock, milk, main_store, kitchen):
        early = stock.receive_batch(milk, main_store, "B1", 10, 2, expires_in_days=5, received_days_ago=2)
        stock.receive_batch(milk, main_store, "B2", 10, 4, expires_in_days=9)

        success, result = _transfer(db_session, milk, main_store, kitchen, 12)

        assert success, result
        assert result['unit_cost'] == Decimal("3.0000")
        assert [(lot['batch_number'], lot['quantity']) for lot in result['batches']] == [
            ("B1", Decimal("10")), ("B2", Decimal("2"))
        ]
        assert len(result['movement_ids']) == 4

        db_session.expire_all()
        moved = db_session.get(StockBatch, result['batches'][0]['destination_batch_id'])
        assert moved.warehouse_id == kitchen.id
        assert moved.batch_number == "B1"
        assert Decimal(moved.unit_cost) == Decimal("2")
        assert moved.expiration_date == early.expiration_date
        assert moved.received_at == early.received_at

        assert stock.level(milk, kitchen).average_cost == Decimal("3.0000")
        stock.assert_partition(milk, main_store)
        stock.assert_partition(milk, kitchen)

    def test_transfer_tops_up_existing_destination_lot(self, db_session: Session, stock, milk,
                                                      main_store, kitchen):
        source = stock.receive_batch(milk, main_store, "B1", 10, 2, expires_in_days=5)
        _transfer(db_session, milk, main_store, kitchen, 3, batch_id=source.id)

        success, result = _transfer(db_session, milk, main_store, kitchen, 2, batch_id=source.id)

        assert success, result
        assert db_session.query(StockBatch).filter(StockBatch.warehouse_id == kitchen.id).count() == 1
        assert stock.batch_total(milk, kitchen) == Decimal("5")
        stock.assert_partition(milk, kitchen)

    def test_pinned_expired_batch_cannot_move(self, db_session: Session, stock, milk, main_store, kitchen):
        batch = stock.receive_batch(milk, main_store, "OLD", 10, 2, expires_in_days=-1)

        success, error = _transfer(db_session, milk, main_store, kitchen, 1, batch_id=batch.id)

        assert not success
        assert error.code == "INVALID_STATE"

    def test_expired_lot_does_not_move_as_ledger_stock(self, db_session: Session, stock, milk,
                                                       main_store, kitchen):
        stock.receive_batch(milk, main_store, "OLD", 10, 2, expires_in_days=-2)
        movements_before = db_session.query(StockMovement).count()

        success, error = _transfer(db_session, milk, main_store, kitchen, 10)

        assert not success
        assert error.code == "INSUFFICIENT_STOCK"
        assert stock.level(milk, main_store).quantity == Decimal("10")
        assert stock.level(milk, kitchen) is None
        assert db_session.query(StockMovement).count() == movements_before

    def test_live_lots_move_when_an_expired_lot_shares_the_pair(self, db_session: Session, stock, milk,
                                                                main_store, kitchen):
        stock.receive_batch(milk, main_store, "OLD", 4, 2, expires_in_days=-2)
        stock.receive_batch(milk, main_store, "NEW", 6, 3, expires_in_days=5)

        success, result = _transfer(db_session, milk, main_store, kitchen, 6)

        assert success, result
        assert [lot['batch_number'] for lot in result['batches']] == ["NEW"]
        assert stock.level(milk, main_store).quantity == Decimal("4")
        assert stock.batch_total(milk, kitchen) == Decimal("6")

    def test_source_batches_are_locked_before_the_ledger_row(self, db_session: Session, stock, milk,
                                                              main_store, kitchen, monkeypatch):
        stock.receive_batch(milk, main_store, "B1", 10, 2, expires_in_days=5)
        calls = []
        get_batches = LotTrackingService.get_available_batches
        lock_level = StockLedgerService.lock_level

        def record_batches(self, item_id, warehouse_id, lock=False):
            if lock:
                calls.append(("batches", warehouse_id))
            return get_batches(self, item_id, warehouse_id, lock=lock)

        def record_level(self, item_id, warehouse_id):
            calls.append(("ledger", warehouse_id))
            return lock_level(self, item_id, warehouse_id)

        monkeypatch.setattr(LotTrackingService, "get_available_batches", record_batches)
        monkeypatch.setattr(StockLedgerService, "lock_level", record_level)

        success, result = _transfer(db_session, milk, main_store, kitchen, 4)

        assert success, result
        assert calls.index(("batches", main_store.id)) < calls.index(("ledger", main_store.id))



class TestTransferValidation:
    """Rejected transfers leave every row untouched"""

    def test_same_warehouse_is_rejected(self, db_session: Session, stock, flour, main_store):
        stock.receive_ledger_only(flour, main_store, 10, 2)

        success, error = _transfer(db_session, flour, main_store, main_store, 1)

        assert not success
        assert error.code == "VALIDATION_ERROR"

    def test_cross_property_is_rejected(self, db_session: Session, stock, flour, main_store, resort_store):
        stock.receive_ledger_only(flour, main_store, 10, 2)

        success, error = _transfer(db_session, flour, main_store, resort_store, 1)

        assert not success
        assert error.code == "VALIDATION_ERROR"
        assert stock.level(flour, resort_store) is None

    def test_insufficient_source_stock(self, db_session: Session, stock, flour, main_store, kitchen):
        stock.receive_ledger_only(flour, main_store, 3, 2)
        movements_before = db_session.query(StockMovement).count()

        success, error = _transfer(db_session, flour, main_store, kitchen, 4)

        assert not success
        assert error.code == "INSUFFICIENT_STOCK"
        assert stock.level(flour, main_store).quantity == Decimal("3")
        assert stock.level(flour, kitchen) is None
        assert db_session.query(StockMovement).count() == movements_before

    def test_inactive_destination_is_rejected(self, db_session: Session, stock, flour, main_store, kitchen):
        stock.receive_ledger_only(flour, main_store, 3, 2)
        kitchen.is_active = False
        db_session.commit()

        success, error = _transfer(db_session, flour, main_store, kitchen, 1)

        assert not success
        assert error.code == "VALIDATION_ERROR"
