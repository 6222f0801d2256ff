# Overview: Pytest coverage for the movement ledger and stock level index.

"""
Movement Ledger Tests

Proves that every append moves the StockLevel by exactly the same delta in
the same transaction, that invalid movements write nothing, and that the
ledger is deliberately not idempotent.
"""

from datetime import date

import pytest

from stockledger.domain import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_PURCHASE,
    MOVEMENT_SALE,
    StockKey,
)
from stockledger.errors import InvalidMovement
from stockledger.locations import Warehouse

from conftest import PRODUCT, STORE, TENANT, assert_ledger_consistent


class TestRecordMovement:
    def test_first_movement_creates_stock_level(self, engine, key):
        """A key with no StockLevel gets one with quantity == delta."""
        record = engine.ledger.record_movement(key, 12, MOVEMENT_PURCHASE, batch_number="B1",
                                               expiry_date="2024-06-30", reference="PO-1")

        assert record.id == 1
        assert record.quantity == 12
        assert record.expiry_date == date(2024, 6, 30)
        assert engine.stock.get_stock_level(key).quantity == 12
        assert_ledger_consistent(engine)

    def test_signed_deltas_accumulate(self, engine, key):
        """Level follows the running sum, negative balances included."""
        engine.ledger.record_movement(key, 5, MOVEMENT_PURCHASE)
        engine.ledger.record_movement(key, -3, MOVEMENT_SALE)
        engine.ledger.record_movement(key, -4, MOVEMENT_ADJUSTMENT)

        assert engine.stock.get_stock_level(key).quantity == -2
        assert_ledger_consistent(engine)

    def test_identical_calls_are_not_deduplicated(self, engine, key):
        """Two identical calls -> two rows and a doubled delta."""
        engine.ledger.record_movement(key, 4, MOVEMENT_PURCHASE, reference="PO-9")
        engine.ledger.record_movement(key, 4, MOVEMENT_PURCHASE, reference="PO-9")

        rows = engine.ledger.search_movements(TENANT, reference="PO-9")
        assert len(rows) == 2
        assert engine.stock.get_stock_level(key).quantity == 8

    @pytest.mark.parametrize("quantity", [0, 1.5, "3", True])
    def test_invalid_quantity_rejected(self, engine, key, quantity):
        with pytest.raises(InvalidMovement):
            engine.ledger.record_movement(key, quantity, MOVEMENT_PURCHASE)
        assert engine.stock.get_stock_level(key) is None

    def test_unknown_movement_type_rejected(self, engine, key):
        with pytest.raises(InvalidMovement):
            engine.ledger.record_movement(key, 1, "THEFT")
        assert engine.ledger.search_movements(TENANT) == []

    def test_variants_are_separate_keys(self, engine):
        plain = StockKey(TENANT, PRODUCT, STORE)
        red = StockKey(TENANT, PRODUCT, STORE, variant_id=7)
        engine.ledger.record_movement(plain, 3, MOVEMENT_PURCHASE)
        engine.ledger.record_movement(red, 9, MOVEMENT_PURCHASE)

        assert engine.stock.get_stock_level(plain).quantity == 3
        assert engine.stock.get_stock_level(red).quantity == 9
        assert_ledger_consistent(engine)

    @pytest.mark.parametrize("variant_id", [0, -3, True, "7"])
    def test_invalid_variant_id_rejected(self, variant_id):
        """0 is reserved for the no-variant row, so only positive ids are keys."""
        with pytest.raises(ValueError):
            StockKey(TENANT, PRODUCT, STORE, variant_id=variant_id)


class TestLedgerEffects:
    def test_movement_event_and_audit_after_commit(self, engine, key, publisher, audit_log):
        engine.ledger.record_movement(key, 2, MOVEMENT_PURCHASE, created_by=42)

        assert publisher.names() == ["stock.movement_recorded"]
        assert audit_log.actions() == ["STOCK_MOVEMENT_RECORDED"]
        assert audit_log.entries[0]["actor_id"] == 42

    def test_low_stock_event_fires_on_crossing_only(self, engine, key, publisher):
        engine.ledger.record_movement(key, 10, MOVEMENT_PURCHASE)
        engine.stock.set_thresholds(key, reorder_point=5)

        engine.ledger.record_movement(key, -4, MOVEMENT_SALE)   # 6, not low
        engine.ledger.record_movement(key, -1, MOVEMENT_SALE)   # 5, crosses
        engine.ledger.record_movement(key, -1, MOVEMENT_SALE)   # 4, already low

        assert publisher.names().count("stock.low_stock") == 1

    def test_failed_publisher_does_not_undo_movement(self, engine, key, caplog):
        class Broken:
            def publish(self, event_name, payload):
                raise RuntimeError("broker down")

        engine.effects.publisher = Broken()
        record = engine.ledger.record_movement(key, 3, MOVEMENT_PURCHASE)

        assert engine.ledger.get_movement(TENANT, record.id) == record
        assert engine.stock.get_stock_level(key).quantity == 3
        assert "Event publish failed" in caplog.text

    def test_nested_rollback_publishes_nothing(self, engine, key, publisher, audit_log):
        """A movement recorded inside a caller's transaction that later fails leaves no trace."""
        engine.ledger.record_movement(key, 5, MOVEMENT_PURCHASE)
        publisher.events.clear()
        audit_log.entries.clear()

        def _op():
            engine.ledger.record_movement(key, 4, MOVEMENT_PURCHASE)
            raise RuntimeError("caller failed")

        with pytest.raises(RuntimeError):
            engine.repos.uow.run(_op)

        assert engine.stock.get_stock_level(key).quantity == 5
        assert len(engine.ledger.search_movements(TENANT)) == 1
        assert publisher.events == []
        assert audit_log.entries == []

    def test_nested_commit_dispatches_once_after_outer_commit(self, engine, key, publisher):
        """Effects of nested operations wait for the outermost transaction."""
        seen = []

        def _op():
            engine.ledger.record_movement(key, 2, MOVEMENT_PURCHASE)
            engine.ledger.record_movement(key, 3, MOVEMENT_PURCHASE)
            seen.append(list(publisher.names()))

        engine.repos.uow.run(_op)

        assert seen == [[]]
        assert publisher.names() == ["stock.movement_recorded", "stock.movement_recorded"]
        assert engine.stock.get_stock_level(key).quantity == 5


class TestLedgerReads:
    def test_search_filters_and_orders_newest_first(self, engine, key):
        other = StockKey(TENANT, PRODUCT, Warehouse(10))
        first = engine.ledger.record_movement(key, 5, MOVEMENT_PURCHASE)
        engine.ledger.record_movement(other, 5, MOVEMENT_PURCHASE)
        last = engine.ledger.record_movement(key, -1, MOVEMENT_SALE)

        rows = engine.ledger.search_movements(TENANT, location=STORE)
        assert [r.id for r in rows] == [last.id, first.id]

        sales = engine.ledger.search_movements(TENANT, movement_type=MOVEMENT_SALE)
        assert [r.id for r in sales] == [last.id]

    def test_search_accepts_iso_time_bounds(self, engine, key, clock):
        """since/until may be ISO-8601 strings; offsets are converted to UTC."""
        engine.ledger.record_movement(key, 1, MOVEMENT_PURCHASE)
        clock.advance(hours=1)
        middle = engine.ledger.record_movement(key, 2, MOVEMENT_PURCHASE)
        clock.advance(hours=1)
        engine.ledger.record_movement(key, 3, MOVEMENT_PURCHASE)

        rows = engine.ledger.search_movements(
            TENANT, since="2023-12-01T09:30:00Z", until="2023-12-01T11:30:00+01:00",
        )
        assert [r.id for r in rows] == [middle.id]

    def test_search_rejects_malformed_time_bound(self, engine):
        with pytest.raises(InvalidMovement):
            engine.ledger.search_movements(TENANT, since="yesterday")

    def test_search_is_tenant_scoped(self, engine, key):
        engine.ledger.record_movement(key, 5, MOVEMENT_PURCHASE)
        assert engine.ledger.search_movements(TENANT + 1) == []

    def test_get_movement_hides_other_tenants(self, engine, key):
        record = engine.ledger.record_movement(key, 5, MOVEMENT_PURCHASE)
        assert engine.ledger.get_movement(TENANT + 1, record.id) is None

    def test_verify_consistency_reports_drift(self, engine, key, memory_store, clock):
        engine.ledger.record_movement(key, 5, MOVEMENT_PURCHASE)
        # Simulate drift by writing the level directly
        engine.repos.levels.apply_delta(key, 2, clock())

        mismatches = engine.ledger.verify_consistency()
        assert len(mismatches) == 1
        assert mismatches[0].ledger_quantity == 5
        assert mismatches[0].level_quantity == 7
        assert mismatches[0].difference == 2
