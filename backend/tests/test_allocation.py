# Overview: Pytest coverage for expiry-aware FIFO batch allocation.

from datetime import date

import pytest

from stockledger.domain import MOVEMENT_PURCHASE, MOVEMENT_SALE, MOVEMENT_WASTAGE
from stockledger.errors import InsufficientStock, InvalidMovement
from stockledger.services.settings_service import NEAR_EXPIRY_DAYS

from conftest import TENANT, assert_ledger_consistent


def receive(engine, key, qty, batch=None, expiry=None):
    return engine.stock.increment_stock(key, qty, MOVEMENT_PURCHASE, batch_number=batch, expiry_date=expiry)


class TestFifoOrder:
    def test_earliest_expiry_consumed_first(self, engine, key):
        """B1 (2024-01-01, 5) and B2 (2024-02-01, 5): allocating 7 takes 5 from B1 then 2 from B2."""
        # Receive the later batch first so insertion order cannot explain the result
        receive(engine, key, 5, "B2", "2024-02-01")
        receive(engine, key, 5, "B1", "2024-01-01")

        allocation = engine.allocator.allocate(key, 7)

        assert [(c.batch_number, c.quantity) for c in allocation.consumptions] == [("B1", 5), ("B2", 2)]
        assert [m.quantity for m in allocation.movements] == [-5, -2]
        assert all(m.movement_type == MOVEMENT_SALE for m in allocation.movements)
        assert engine.stock.get_stock_level(key).quantity == 3
        assert_ledger_consistent(engine)

    def test_same_expiry_oldest_activity_first(self, engine, key):
        receive(engine, key, 3, "OLD", "2024-05-01")
        receive(engine, key, 3, "NEW", "2024-05-01")

        plan = engine.allocator.plan(key, 4)
        assert [(c.batch_number, c.quantity) for c in plan] == [("OLD", 3), ("NEW", 1)]

    def test_unbatched_stock_used_after_dated_batches(self, engine, key):
        receive(engine, key, 4)
        receive(engine, key, 2, "D1", "2024-03-01")

        plan = engine.allocator.plan(key, 5)
        assert [(c.batch_number, c.quantity) for c in plan] == [("D1", 2), (None, 3)]

    def test_plan_writes_nothing(self, engine, key):
        receive(engine, key, 5, "B1", "2024-01-01")
        engine.allocator.plan(key, 5)

        assert engine.stock.get_stock_level(key).quantity == 5
        assert len(engine.ledger.search_movements(TENANT)) == 1


class TestExpiry:
    def test_expired_batch_never_selected(self, engine, key, clock):
        receive(engine, key, 5, "OLD", "2023-11-30")  # already expired on 2023-12-01
        receive(engine, key, 5, "GOOD", "2024-06-01")

        allocation = engine.allocator.allocate(key, 5)
        assert [c.batch_number for c in allocation.consumptions] == ["GOOD"]

        with pytest.raises(InsufficientStock) as exc:
            engine.allocator.allocate(key, 1)
        assert exc.value.available == 0
        assert engine.stock.get_stock_level(key).quantity == 5  # the expired units stay on hand

    def test_batch_expiring_today_is_still_eligible(self, engine, key):
        receive(engine, key, 2, "TODAY", "2023-12-01")
        allocation = engine.allocator.allocate(key, 2)
        assert allocation.consumptions[0].near_expiry is True

    def test_near_expiry_flag_and_warning(self, engine, key):
        receive(engine, key, 2, "SOON", "2023-12-20")
        receive(engine, key, 2, "LATER", "2024-06-01")

        allocation = engine.allocator.allocate(key, 3)
        flags = {c.batch_number: c.near_expiry for c in allocation.consumptions}
        assert flags == {"SOON": True, "LATER": False}
        assert allocation.warnings == [f"Batch SOON of product {key.product_id} expires on 2023-12-20"]

    def test_near_expiry_threshold_is_per_tenant(self, engine, key):
        receive(engine, key, 2, "B", "2024-02-15")  # 76 days out
        assert engine.allocator.plan(key, 1)[0].near_expiry is False

        engine.settings.update(TENANT, {NEAR_EXPIRY_DAYS: 90})
        assert engine.allocator.plan(key, 1)[0].near_expiry is True

    def test_list_batches_reports_flags(self, engine, key):
        receive(engine, key, 1, "EXP", "2023-01-01")
        receive(engine, key, 1, "SOON", "2023-12-10")
        receive(engine, key, 1, "FAR", "2025-01-01")

        report = {b.batch_number: (b.expired, b.near_expiry) for b in engine.allocator.list_batches(key)}
        assert report == {"EXP": (True, False), "SOON": (False, True), "FAR": (False, False)}

        live = engine.allocator.list_batches(key, include_expired=False)
        assert [b.batch_number for b in live] == ["SOON", "FAR"]


class TestInsufficientStock:
    def test_all_or_nothing(self, engine, key, publisher):
        """5 available, 8 requested -> error, no movement, level unchanged."""
        receive(engine, key, 5, "B1", "2024-01-01")
        before = len(engine.ledger.search_movements(TENANT))
        publisher.events.clear()

        with pytest.raises(InsufficientStock) as exc:
            engine.allocator.allocate(key, 8)

        assert exc.value.requested == 8
        assert exc.value.available == 5
        assert exc.value.product_id == key.product_id
        assert exc.value.location == key.location
        assert len(engine.ledger.search_movements(TENANT)) == before
        assert engine.stock.get_stock_level(key).quantity == 5
        assert publisher.events == []

    def test_unknown_key_has_nothing_available(self, engine, key):
        with pytest.raises(InsufficientStock):
            engine.allocator.allocate(key, 1)
        assert engine.stock.get_stock_level(key) is None

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_non_positive_request_rejected(self, engine, key, quantity):
        with pytest.raises(InvalidMovement):
            engine.allocator.allocate(key, quantity)

    def test_custom_movement_type(self, engine, key):
        receive(engine, key, 3, "B", "2024-03-01")
        allocation = engine.allocator.allocate(key, 1, MOVEMENT_WASTAGE, reference="spill")
        assert allocation.movements[0].movement_type == MOVEMENT_WASTAGE
        assert allocation.movements[0].expiry_date == date(2024, 3, 1)
