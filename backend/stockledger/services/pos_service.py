# Overview: Converts POS carts into batch-allocated SALE movements, and returns into RETURN movements.

"""
POS transaction invariants (authoritative)

- A sale is all-or-nothing: if any line cannot be covered by non-expired
  stock, no line, movement or sale row is written.
- One sale line row is stored per batch portion consumed, so returns can
  credit the original batch and expiry without re-allocating.
- Amounts are integer cents; tax rates are basis points (825 = 8.25%).
  Line tax is rounded half-up per batch portion.
- Totals are computed once at sale time and never recomputed.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

from ..domain import MOVEMENT_RETURN, MOVEMENT_SALE, SaleRecord, SalesReturnRecord, StockKey
from ..errors import ProductNotFound, ReturnQuantityExceeded, SaleError, SaleNotFound, SessionClosed, SessionNotFound
from ..locations import Store
from .allocation_service import BatchAllocator
from .ledger_service import MovementLedger
from .side_effects import TransactionalService, stock_list_key


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int
    unit_price_cents: int
    variant_id: Optional[int] = None
    discount_cents: int = 0
    tax_rate_bps: int = 0


@dataclass(frozen=True)
class ReturnLine:
    product_id: int
    quantity: int
    variant_id: Optional[int] = None


def round_half_up_bps(amount_cents: int, rate_bps: int) -> int:
    """amount * rate / 10000, rounded half-up (amount and rate are non-negative)."""
    return (amount_cents * rate_bps + 5000) // 10000


def _is_count(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _coerce(lines, cls):
    coerced = [line if isinstance(line, cls) else cls(**line) for line in lines or []]
    if not coerced:
        raise SaleError("At least one line is required")
    return coerced


def _validate_cart_line(line: CartLine) -> None:
    if not _is_count(line.quantity) or line.quantity <= 0:
        raise SaleError(f"Quantity for product {line.product_id} must be a positive integer")
    if not _is_count(line.unit_price_cents) or line.unit_price_cents < 0:
        raise SaleError(f"Unit price for product {line.product_id} must be >= 0 cents")
    if not _is_count(line.discount_cents) or not 0 <= line.discount_cents <= line.unit_price_cents:
        raise SaleError(f"Discount for product {line.product_id} must be between 0 and the unit price")
    if not _is_count(line.tax_rate_bps) or line.tax_rate_bps < 0:
        raise SaleError(f"Tax rate for product {line.product_id} must be >= 0 basis points")
    if line.variant_id is not None and (not _is_count(line.variant_id) or line.variant_id <= 0):
        raise SaleError(f"Variant for product {line.product_id} must be a positive integer")


class POSTransactionEngine(TransactionalService):
    def __init__(self, repos, effects, ledger: MovementLedger, allocator: BatchAllocator, catalog, clock=None):
        super().__init__(repos, effects, clock or ledger.clock)
        self.ledger = ledger
        self.allocator = allocator
        self.catalog = catalog

    def _check_session(self, tenant_id: int, session_id: int, location) -> None:
        session = self.repos.sessions.get(tenant_id, session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if not session.is_open:
            raise SessionClosed(session_id)
        if isinstance(location, Store) and session.store_id != location.id:
            raise SaleError(f"POS session {session_id} belongs to store {session.store_id}, not {location}")

    def create_sale(
        self,
        tenant_id: int,
        location,
        lines,
        *,
        session_id: Optional[int] = None,
        shipping_fee_cents: int = 0,
        overall_discount_cents: int = 0,
        reference: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> SaleRecord:
        """
        Sell a cart from one location.

        Each cart line is allocated FIFO over non-expired batches; near-expiry
        notices come back on SaleRecord.warnings.

        Raises:
            SaleError: Empty cart or invalid amounts
            ProductNotFound: Product unknown to the catalog
            SessionNotFound / SessionClosed: session_id given but not usable
            InsufficientStock: First line that cannot be covered; nothing is written
        """
        cart = _coerce(lines, CartLine)
        for line in cart:
            _validate_cart_line(line)
        if not _is_count(shipping_fee_cents) or shipping_fee_cents < 0:
            raise SaleError("Shipping fee must be >= 0 cents")
        if not _is_count(overall_discount_cents) or overall_discount_cents < 0:
            raise SaleError("Overall discount must be >= 0 cents")

        for line in cart:
            if not self.catalog.exists(tenant_id, line.product_id, line.variant_id):
                raise ProductNotFound(tenant_id, line.product_id, line.variant_id)
        if session_id is not None:
            self._check_session(tenant_id, session_id, location)

        def _op(effects):
            subtotal = tax_total = discount_total = 0
            sale_lines = []
            warnings = []

            for line in cart:
                key = StockKey(tenant_id, line.product_id, location, line.variant_id)
                allocation = self.allocator.deduct(
                    effects, key, line.quantity, MOVEMENT_SALE,
                    reference=reference, created_by=created_by,
                )
                warnings.extend(allocation.warnings)

                net_unit = line.unit_price_cents - line.discount_cents
                for portion, movement in zip(allocation.consumptions, allocation.movements):
                    line_subtotal = net_unit * portion.quantity
                    tax = round_half_up_bps(line_subtotal, line.tax_rate_bps)
                    subtotal += line_subtotal
                    tax_total += tax
                    discount_total += line.discount_cents * portion.quantity
                    sale_lines.append({
                        "product_id": line.product_id,
                        "variant_id": line.variant_id,
                        "batch_number": portion.batch_number,
                        "expiry_date": portion.expiry_date,
                        "quantity": portion.quantity,
                        "unit_price_cents": line.unit_price_cents,
                        "discount_cents": line.discount_cents,
                        "tax_rate_bps": line.tax_rate_bps,
                        "line_subtotal_cents": line_subtotal,
                        "tax_cents": tax,
                        "movement_id": movement.id,
                    })

            total = subtotal + tax_total + shipping_fee_cents - overall_discount_cents
            if total < 0:
                raise SaleError("Overall discount exceeds the sale amount")

            sale = self.repos.sales.add_sale(
                {
                    "tenant_id": tenant_id,
                    "location": location,
                    "session_id": session_id,
                    "subtotal_cents": subtotal,
                    "tax_total_cents": tax_total,
                    "discount_total_cents": discount_total,
                    "shipping_fee_cents": shipping_fee_cents,
                    "overall_discount_cents": overall_discount_cents,
                    "total_cents": total,
                    "created_by": created_by,
                    "created_at": self.clock(),
                },
                sale_lines,
            )

            effects.audit_entry(
                action="POS_SALE_CREATED",
                entity_type="pos_sale",
                entity_id=sale.id,
                tenant_id=tenant_id,
                actor_id=created_by,
                details={"total_cents": total, "lines": len(sale_lines), "session_id": session_id},
            )
            effects.event("pos.sale_created", {
                "sale_id": sale.id,
                "tenant_id": tenant_id,
                "location": str(location),
                "session_id": session_id,
                "total_cents": total,
                "warnings": warnings,
            })
            effects.invalidate(stock_list_key(tenant_id))
            return replace(sale, warnings=tuple(warnings))

        return self._transact(_op)

    def create_return(
        self,
        tenant_id: int,
        sale_id: int,
        lines,
        *,
        created_by: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> SalesReturnRecord:
        """
        Return items from a sale back to the sale's location.

        RETURN movements carry the batch and expiry of the sale portions they
        reverse, oldest portion first. The refund is the net price plus tax
        of the returned units.

        Raises:
            SaleError: Empty or invalid lines
            SaleNotFound: Sale does not exist for this tenant
            ReturnQuantityExceeded: More than sold minus already returned
        """
        requested: dict[tuple[int, Optional[int]], int] = {}
        for line in _coerce(lines, ReturnLine):
            if not _is_count(line.quantity) or line.quantity <= 0:
                raise SaleError(f"Return quantity for product {line.product_id} must be a positive integer")
            product = (line.product_id, line.variant_id)
            requested[product] = requested.get(product, 0) + line.quantity

        def _op(effects):
            sale = self.repos.sales.get_sale(tenant_id, sale_id, for_update=True)
            if sale is None:
                raise SaleNotFound(sale_id)

            portions_by_product = {}
            for sale_line in sale.lines:
                portions_by_product.setdefault((sale_line.product_id, sale_line.variant_id), []).append(sale_line)

            # Validate every product before writing anything
            for (product_id, variant_id), quantity in requested.items():
                returnable = sum(p.returnable_quantity for p in portions_by_product.get((product_id, variant_id), []))
                if quantity > returnable:
                    raise ReturnQuantityExceeded(sale_id, product_id, quantity, returnable)

            reference = f"sale:{sale.id}"
            refund = 0
            movements = []
            for (product_id, variant_id), quantity in requested.items():
                key = StockKey(tenant_id, product_id, sale.location, variant_id)
                outstanding = quantity
                for portion in portions_by_product[(product_id, variant_id)]:
                    if outstanding <= 0:
                        break
                    take = min(portion.returnable_quantity, outstanding)
                    if take <= 0:
                        continue
                    movements.append(self.ledger.append(
                        effects,
                        key,
                        quantity=take,
                        movement_type=MOVEMENT_RETURN,
                        batch_number=portion.batch_number,
                        expiry_date=portion.expiry_date,
                        reference=reference,
                        created_by=created_by,
                    ))
                    self.repos.sales.record_returned(portion.id, take)

                    net = (portion.unit_price_cents - portion.discount_cents) * take
                    refund += net + round_half_up_bps(net, portion.tax_rate_bps)
                    outstanding -= take

            sales_return = self.repos.sales.add_return(
                tenant_id=tenant_id,
                sale_id=sale.id,
                refund_cents=refund,
                reason=reason,
                created_by=created_by,
                created_at=self.clock(),
            )

            effects.audit_entry(
                action="POS_RETURN_CREATED",
                entity_type="sales_return",
                entity_id=sales_return.id,
                tenant_id=tenant_id,
                actor_id=created_by,
                details={"sale_id": sale.id, "refund_cents": refund, "reason": reason},
            )
            effects.event("pos.return_created", {
                "return_id": sales_return.id,
                "sale_id": sale.id,
                "tenant_id": tenant_id,
                "refund_cents": refund,
            })
            effects.invalidate(stock_list_key(tenant_id))
            return replace(sales_return, movements=tuple(movements))

        return self._transact(_op)
