# Overview: Pytest coverage for stock level operations (receipts, adjustments, thresholds).

import pytest

from stockledger.domain import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_EXPIRE,
    MOVEMENT_PURCHASE,
    MOVEMENT_RETURN,
    MOVEMENT_SALE,
    MOVEMENT_TRANSFER_IN,
    MOVEMENT_TRANSFER_OUT,
    StockKey,
)
from stockledger.errors import (
    InsufficientStock,
    InvalidMovement,
    StockLevelNotEmpty,
    StockRecordNotFound,
)

from conftest import PRODUCT, STORE, TENANT, WAREHOUSE, assert_ledger_consistent


class TestIncrementStock:
    def test_increment_creates_level(self, engine, key):
        engine.stock.increment_stock(key, 10, batch_number="B1", expiry_date="2024-08-01", cost_price_cents=250)
        level = engine.stock.get_stock_level(key)
        assert level.quantity == 10
        assert_ledger_consistent(engine)

    def test_increment_rejects_negative(self, engine, key):
        with pytest.raises(InvalidMovement):
            engine.stock.increment_stock(key, -1)

    def test_increment_with_return_type(self, engine, key):
        record = engine.stock.increment_stock(key, 1, MOVEMENT_RETURN)
        assert record.movement_type == MOVEMENT_RETURN

    @pytest.mark.parametrize("movement_type", [MOVEMENT_SALE, MOVEMENT_TRANSFER_OUT, MOVEMENT_TRANSFER_IN, MOVEMENT_EXPIRE])
    def test_increment_rejects_non_receipt_types(self, engine, key, movement_type):
        """Receiving stock is a purchase, return or adjustment; transfers post their own movements."""
        with pytest.raises(InvalidMovement):
            engine.stock.increment_stock(key, 1, movement_type)
        assert engine.ledger.search_movements(TENANT) == []


class TestAdjustStock:
    def test_requires_existing_level(self, engine, key):
        with pytest.raises(StockRecordNotFound):
            engine.stock.adjust_stock(key, 5)
        assert engine.ledger.search_movements(TENANT) == []

    def test_positive_adjustment(self, engine, key):
        engine.stock.increment_stock(key, 2)
        movements = engine.stock.adjust_stock(key, 3, reference="count-7")
        assert [m.quantity for m in movements] == [3]
        assert engine.stock.get_stock_level(key).quantity == 5

    def test_negative_adjustment_uses_fifo(self, engine, key):
        engine.stock.increment_stock(key, 2, batch_number="LATE", expiry_date="2024-09-01")
        engine.stock.increment_stock(key, 2, batch_number="EARLY", expiry_date="2024-02-01")

        movements = engine.stock.adjust_stock(key, -3)
        assert [(m.batch_number, m.quantity) for m in movements] == [("EARLY", -2), ("LATE", -1)]
        assert all(m.movement_type == MOVEMENT_ADJUSTMENT for m in movements)
        assert_ledger_consistent(engine)

    def test_expired_batch_can_be_written_off_by_number(self, engine, key):
        engine.stock.increment_stock(key, 4, batch_number="GONE", expiry_date="2023-10-01")

        movements = engine.stock.adjust_stock(key, -4, MOVEMENT_EXPIRE, batch_number="GONE")
        assert movements[0].movement_type == MOVEMENT_EXPIRE
        assert engine.stock.get_stock_level(key).quantity == 0

    def test_batch_write_off_beyond_remaining(self, engine, key):
        engine.stock.increment_stock(key, 4, batch_number="B1", expiry_date="2024-10-01")
        engine.stock.increment_stock(key, 4, batch_number="B2", expiry_date="2024-11-01")

        with pytest.raises(InsufficientStock) as exc:
            engine.stock.adjust_stock(key, -5, batch_number="B1")
        assert exc.value.batch_number == "B1"
        assert exc.value.available == 4
        assert engine.stock.get_stock_level(key).quantity == 8

    def test_sale_type_not_allowed_for_write_off(self, engine, key):
        engine.stock.increment_stock(key, 4)
        with pytest.raises(InvalidMovement):
            engine.stock.adjust_stock(key, -1, MOVEMENT_SALE)

    @pytest.mark.parametrize("movement_type", [MOVEMENT_SALE, MOVEMENT_TRANSFER_OUT, MOVEMENT_EXPIRE])
    def test_positive_adjustment_rejects_outbound_types(self, engine, key, movement_type):
        engine.stock.increment_stock(key, 4)
        with pytest.raises(InvalidMovement):
            engine.stock.adjust_stock(key, 1, movement_type)
        assert engine.stock.get_stock_level(key).quantity == 4
        assert len(engine.ledger.search_movements(TENANT)) == 1

    def test_positive_adjustment_with_return_type(self, engine, key):
        engine.stock.increment_stock(key, 4)
        [movement] = engine.stock.adjust_stock(key, 2, MOVEMENT_RETURN)
        assert movement.movement_type == MOVEMENT_RETURN
        assert engine.stock.get_stock_level(key).quantity == 6


class TestThresholdsAndDeletion:
    def test_set_thresholds_keeps_quantity(self, engine, key):
        engine.stock.increment_stock(key, 7)
        level = engine.stock.set_thresholds(key, min_stock_level=2, max_stock_level=50, reorder_point=8)

        assert level.quantity == 7
        assert (level.min_stock_level, level.max_stock_level, level.reorder_point) == (2, 50, 8)
        assert level.is_low
        assert_ledger_consistent(engine)

    def test_set_thresholds_missing_level(self, engine, key):
        with pytest.raises(StockRecordNotFound):
            engine.stock.set_thresholds(key, reorder_point=3)

    def test_min_above_max_rejected(self, engine, key):
        engine.stock.increment_stock(key, 1)
        with pytest.raises(InvalidMovement):
            engine.stock.set_thresholds(key, min_stock_level=10, max_stock_level=5)

    def test_delete_requires_zero_quantity(self, engine, key, publisher):
        engine.stock.increment_stock(key, 2)
        with pytest.raises(StockLevelNotEmpty):
            engine.stock.delete_stock_level(key)

        engine.stock.adjust_stock(key, -2)
        engine.stock.delete_stock_level(key)

        assert engine.stock.get_stock_level(key) is None
        assert "stock.level_deleted" in publisher.names()
        # Ledger history is kept
        assert len(engine.ledger.search_movements(TENANT)) == 2

    def test_delete_missing_level(self, engine, key):
        with pytest.raises(StockRecordNotFound):
            engine.stock.delete_stock_level(key)


class TestStockReads:
    def test_list_and_low_stock(self, engine):
        a = StockKey(TENANT, PRODUCT, STORE)
        b = StockKey(TENANT, PRODUCT + 1, STORE)
        c = StockKey(TENANT, PRODUCT, WAREHOUSE)
        for k, qty in ((a, 3), (b, 20), (c, 1)):
            engine.stock.increment_stock(k, qty, MOVEMENT_PURCHASE)
        engine.stock.set_thresholds(a, min_stock_level=5)
        engine.stock.set_thresholds(b, min_stock_level=5)

        assert [r.key for r in engine.stock.list_stock_levels(TENANT, location=STORE)] == [a, b]
        assert [r.key for r in engine.stock.list_stock_levels(TENANT, product_id=PRODUCT)] == [a, c]
        assert [r.key for r in engine.stock.low_stock_levels(TENANT)] == [a]
        assert engine.stock.list_stock_levels(TENANT + 1) == []

    def test_check_availability_excludes_expired(self, engine, key):
        engine.stock.increment_stock(key, 4, batch_number="OLD", expiry_date="2023-01-01")
        engine.stock.increment_stock(key, 3, batch_number="NEW", expiry_date="2024-12-01")

        availability = engine.stock.check_availability(key, 5)
        assert availability.on_hand == 7
        assert availability.sellable == 3
        assert availability.is_available is False
        assert engine.stock.check_availability(key, 3).is_available is True
