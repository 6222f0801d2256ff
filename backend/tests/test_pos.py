# Overview: Pytest coverage for POS sales and returns.

"""
POS Transaction Tests

Covers:
- Totals in integer cents with half-up tax per batch portion
- All-or-nothing carts (one short line aborts the whole sale)
- Session checks
- Near-expiry warnings
- Returns crediting the original batch
"""

from datetime import date

import pytest

from stockledger.domain import MOVEMENT_RETURN, MOVEMENT_SALE, StockKey
from stockledger.errors import (
    InsufficientStock,
    ReturnQuantityExceeded,
    SaleError,
    SaleNotFound,
    SessionClosed,
    SessionNotFound,
)
from stockledger.services.pos_service import CartLine, ReturnLine, round_half_up_bps

from conftest import OTHER_TENANT, PRODUCT, STORE, TENANT, assert_ledger_consistent

OTHER_PRODUCT = 101


def stock(engine, key, qty, batch, expiry):
    engine.stock.increment_stock(key, qty, batch_number=batch, expiry_date=expiry)


class TestRounding:
    @pytest.mark.parametrize("amount,bps,expected", [
        (10, 500, 1),      # 0.5 rounds up
        (30, 825, 2),      # 2.475
        (1800, 825, 149),  # 148.5
        (0, 825, 0),
        (999, 0, 0),
    ])
    def test_round_half_up(self, amount, bps, expected):
        assert round_half_up_bps(amount, bps) == expected


class TestCreateSale:
    def test_single_line_totals(self, engine, key, publisher):
        stock(engine, key, 5, "B1", "2024-05-01")

        sale = engine.pos.create_sale(TENANT, STORE, [
            CartLine(PRODUCT, 2, unit_price_cents=1000, discount_cents=100, tax_rate_bps=825),
        ], shipping_fee_cents=500, created_by=3)

        assert sale.subtotal_cents == 1800
        assert sale.tax_total_cents == 149
        assert sale.discount_total_cents == 200
        assert sale.total_cents == 1800 + 149 + 500
        assert [(l.batch_number, l.quantity) for l in sale.lines] == [("B1", 2)]
        assert sale.warnings == ()
        assert engine.stock.get_stock_level(key).quantity == 3
        assert "pos.sale_created" in publisher.names()
        assert_ledger_consistent(engine)

    def test_dict_lines_accepted(self, engine, key):
        stock(engine, key, 5, "B1", "2024-05-01")
        sale = engine.pos.create_sale(TENANT, STORE, [
            {"product_id": PRODUCT, "quantity": 1, "unit_price_cents": 250},
        ])
        assert sale.total_cents == 250

    def test_line_split_across_batches(self, engine, key):
        stock(engine, key, 2, "EARLY", "2024-02-01")
        stock(engine, key, 5, "LATE", "2024-08-01")

        sale = engine.pos.create_sale(TENANT, STORE, [
            CartLine(PRODUCT, 3, unit_price_cents=333, tax_rate_bps=500),
        ])

        assert [(l.batch_number, l.quantity, l.line_subtotal_cents) for l in sale.lines] == [
            ("EARLY", 2, 666),
            ("LATE", 1, 333),
        ]
        # 33.3 -> 33 and 16.65 -> 17, rounded per portion
        assert [l.tax_cents for l in sale.lines] == [33, 17]
        assert sale.tax_total_cents == 50
        movements = engine.ledger.search_movements(TENANT, movement_type=MOVEMENT_SALE)
        assert sorted((m.batch_number, m.quantity) for m in movements) == [("EARLY", -2), ("LATE", -1)]
        assert {l.movement_id for l in sale.lines} == {m.id for m in movements}

    def test_near_expiry_warning(self, engine, key):
        stock(engine, key, 5, "SOON", "2023-12-20")

        sale = engine.pos.create_sale(TENANT, STORE, [CartLine(PRODUCT, 1, unit_price_cents=100)])

        assert len(sale.warnings) == 1
        assert "SOON" in sale.warnings[0]
        assert "2023-12-20" in sale.warnings[0]

    def test_expired_stock_is_not_sold(self, engine, key):
        stock(engine, key, 5, "OLD", "2023-11-01")
        with pytest.raises(InsufficientStock) as exc:
            engine.pos.create_sale(TENANT, STORE, [CartLine(PRODUCT, 1, unit_price_cents=100)])
        assert exc.value.available == 0

    def test_short_line_aborts_whole_cart(self, engine, key, publisher):
        other = StockKey(TENANT, OTHER_PRODUCT, STORE)
        stock(engine, key, 5, "B1", "2024-05-01")
        stock(engine, other, 1, "C1", "2024-05-01")
        publisher.events.clear()

        with pytest.raises(InsufficientStock) as exc:
            engine.pos.create_sale(TENANT, STORE, [
                CartLine(PRODUCT, 2, unit_price_cents=100),
                CartLine(OTHER_PRODUCT, 4, unit_price_cents=100),
            ])

        assert exc.value.product_id == OTHER_PRODUCT
        assert (exc.value.requested, exc.value.available) == (4, 1)
        assert engine.stock.get_stock_level(key).quantity == 5
        assert engine.ledger.search_movements(TENANT, movement_type=MOVEMENT_SALE) == []
        assert publisher.events == []
        assert_ledger_consistent(engine)

    @pytest.mark.parametrize("line", [
        CartLine(PRODUCT, 0, unit_price_cents=100),
        CartLine(PRODUCT, 1, unit_price_cents=-1),
        CartLine(PRODUCT, 1, unit_price_cents=100, discount_cents=101),
        CartLine(PRODUCT, 1, unit_price_cents=100, tax_rate_bps=-5),
        CartLine(PRODUCT, 1, unit_price_cents=100, variant_id=0),
    ])
    def test_invalid_lines(self, engine, line):
        with pytest.raises(SaleError):
            engine.pos.create_sale(TENANT, STORE, [line])

    def test_empty_cart(self, engine):
        with pytest.raises(SaleError):
            engine.pos.create_sale(TENANT, STORE, [])

    def test_overall_discount_larger_than_sale(self, engine, key):
        stock(engine, key, 5, "B1", "2024-05-01")
        with pytest.raises(SaleError):
            engine.pos.create_sale(
                TENANT, STORE, [CartLine(PRODUCT, 1, unit_price_cents=100)], overall_discount_cents=101,
            )
        assert engine.stock.get_stock_level(key).quantity == 5


class TestSaleSessions:
    def test_open_session_at_store(self, engine, key, memory_store):
        session = memory_store.add_session(tenant_id=TENANT, store_id=STORE.id, user_id=5)
        stock(engine, key, 5, "B1", "2024-05-01")

        sale = engine.pos.create_sale(
            TENANT, STORE, [CartLine(PRODUCT, 1, unit_price_cents=100)], session_id=session.id,
        )
        assert sale.session_id == session.id

    def test_closed_session(self, engine, key, memory_store):
        session = memory_store.add_session(tenant_id=TENANT, store_id=STORE.id, user_id=5, is_open=False)
        stock(engine, key, 5, "B1", "2024-05-01")
        with pytest.raises(SessionClosed):
            engine.pos.create_sale(
                TENANT, STORE, [CartLine(PRODUCT, 1, unit_price_cents=100)], session_id=session.id,
            )

    def test_session_of_other_tenant(self, engine, memory_store):
        session = memory_store.add_session(tenant_id=OTHER_TENANT, store_id=STORE.id, user_id=5)
        with pytest.raises(SessionNotFound):
            engine.pos.create_sale(
                TENANT, STORE, [CartLine(PRODUCT, 1, unit_price_cents=100)], session_id=session.id,
            )

    def test_session_at_other_store(self, engine, memory_store):
        session = memory_store.add_session(tenant_id=TENANT, store_id=99, user_id=5)
        with pytest.raises(SaleError):
            engine.pos.create_sale(
                TENANT, STORE, [CartLine(PRODUCT, 1, unit_price_cents=100)], session_id=session.id,
            )


class TestReturns:
    def sell_three(self, engine, key):
        stock(engine, key, 2, "EARLY", "2024-02-01")
        stock(engine, key, 5, "LATE", "2024-08-01")
        return engine.pos.create_sale(TENANT, STORE, [
            CartLine(PRODUCT, 3, unit_price_cents=1000, discount_cents=100, tax_rate_bps=825),
        ])

    def test_return_credits_original_batch(self, engine, key, publisher):
        sale = self.sell_three(engine, key)

        result = engine.pos.create_return(TENANT, sale.id, [ReturnLine(PRODUCT, 2)], reason="damaged box")

        assert [(m.movement_type, m.batch_number, m.expiry_date, m.quantity) for m in result.movements] == [
            (MOVEMENT_RETURN, "EARLY", date(2024, 2, 1), 2),
        ]
        assert result.movements[0].reference == f"sale:{sale.id}"
        # 900 * 2 = 1800 net, 148.5 tax -> 149
        assert result.refund_cents == 1949
        assert result.reason == "damaged box"
        assert engine.stock.get_stock_level(key).quantity == 6
        assert "pos.return_created" in publisher.names()
        assert_ledger_consistent(engine)

    def test_return_spanning_portions(self, engine, key):
        sale = self.sell_three(engine, key)

        result = engine.pos.create_return(TENANT, sale.id, [
            ReturnLine(PRODUCT, 1),
            {"product_id": PRODUCT, "quantity": 2},
        ])

        assert [(m.batch_number, m.quantity) for m in result.movements] == [("EARLY", 2), ("LATE", 1)]
        batches = {b.batch_number: b.remaining for b in engine.allocator.list_batches(key)}
        assert batches == {"EARLY": 2, "LATE": 5}

    def test_cannot_return_more_than_sold(self, engine, key):
        sale = self.sell_three(engine, key)
        engine.pos.create_return(TENANT, sale.id, [ReturnLine(PRODUCT, 2)])

        with pytest.raises(ReturnQuantityExceeded) as exc:
            engine.pos.create_return(TENANT, sale.id, [ReturnLine(PRODUCT, 2)])
        assert (exc.value.requested, exc.value.returnable) == (2, 1)
        assert engine.stock.get_stock_level(key).quantity == 6

    def test_product_not_on_sale(self, engine, key):
        sale = self.sell_three(engine, key)
        with pytest.raises(ReturnQuantityExceeded):
            engine.pos.create_return(TENANT, sale.id, [ReturnLine(OTHER_PRODUCT, 1)])
        assert engine.ledger.search_movements(TENANT, movement_type=MOVEMENT_RETURN) == []

    def test_sale_of_other_tenant(self, engine, key):
        sale = self.sell_three(engine, key)
        with pytest.raises(SaleNotFound):
            engine.pos.create_return(OTHER_TENANT, sale.id, [ReturnLine(PRODUCT, 1)])

    def test_non_positive_return(self, engine, key):
        sale = self.sell_three(engine, key)
        with pytest.raises(SaleError):
            engine.pos.create_return(TENANT, sale.id, [ReturnLine(PRODUCT, 0)])
