# Overview: Service-layer operations for the movement ledger; the only writer of stock quantities.

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from typing import Optional

from ..domain import MOVEMENT_TYPES, MovementRecord, StockKey
from ..errors import InvalidMovement
from ..time_utils import parse_iso_date, parse_iso_datetime
from .side_effects import EffectBatch, TransactionalService, stock_detail_key, stock_list_key

"""
Ledger invariants (authoritative)

- Movements are append-only: never updated, never deleted.
- Every append updates the StockLevel for the same StockKey in the same
  transaction (quantity += delta; the row is created if absent).
- No sufficiency check at this layer; oversell prevention belongs to the
  BatchAllocator. Negative balances are representable here.
- Appends are not idempotent. Callers deduplicate through `reference`.
"""

MAX_SEARCH_LIMIT = 500


@dataclass(frozen=True)
class LedgerMismatch:
    key: StockKey
    ledger_quantity: int
    level_quantity: int

    @property
    def difference(self) -> int:
        return self.level_quantity - self.ledger_quantity


def validate_movement(quantity, movement_type: str) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidMovement("quantity must be an integer")
    if quantity == 0:
        raise InvalidMovement("quantity must be non-zero")
    if movement_type not in MOVEMENT_TYPES:
        raise InvalidMovement(f"Unknown movement type: {movement_type}")


def normalize_batch_number(batch_number: Optional[str]) -> Optional[str]:
    if batch_number is None:
        return None
    batch_number = str(batch_number).strip()
    return batch_number or None


class MovementLedger(TransactionalService):

    def record_movement(
        self,
        key: StockKey,
        quantity: int,
        movement_type: str,
        *,
        batch_number: Optional[str] = None,
        expiry_date=None,
        reference: Optional[str] = None,
        cost_price_cents: Optional[int] = None,
        created_by: Optional[int] = None,
    ) -> MovementRecord:
        """Append one movement and apply its delta to the StockLevel, atomically."""
        validate_movement(quantity, movement_type)
        expiry = parse_iso_date(expiry_date)

        return self._transact(lambda effects: self.append(
            effects,
            key,
            quantity=quantity,
            movement_type=movement_type,
            batch_number=batch_number,
            expiry_date=expiry,
            reference=reference,
            cost_price_cents=cost_price_cents,
            created_by=created_by,
        ))

    def append(
        self,
        effects: EffectBatch,
        key: StockKey,
        *,
        quantity: int,
        movement_type: str,
        batch_number: Optional[str] = None,
        expiry_date: Optional[date] = None,
        reference: Optional[str] = None,
        cost_price_cents: Optional[int] = None,
        created_by: Optional[int] = None,
    ) -> MovementRecord:
        """
        Append inside an already-open unit of work.

        Used by the allocator, transfer and POS services so several appends
        share one transaction.
        """
        validate_movement(quantity, movement_type)
        now = self.clock()

        record = self.repos.ledger.append(
            key,
            quantity=quantity,
            movement_type=movement_type,
            created_at=now,
            batch_number=normalize_batch_number(batch_number),
            expiry_date=expiry_date,
            reference=reference,
            cost_price_cents=cost_price_cents,
            created_by=created_by,
        )
        before, level = self.repos.levels.apply_delta(key, quantity, now)

        effects.audit_entry(
            action="STOCK_MOVEMENT_RECORDED",
            entity_type="stock_movement",
            entity_id=record.id,
            tenant_id=key.tenant_id,
            actor_id=created_by,
            details={
                "product_id": key.product_id,
                "variant_id": key.variant_id,
                "location": str(key.location),
                "movement_type": movement_type,
                "quantity": quantity,
                "batch_number": record.batch_number,
                "reference": reference,
                "quantity_after": level.quantity,
            },
        )
        effects.event("stock.movement_recorded", record.to_dict())

        # Fire only when the level crosses into low stock
        if level.is_low and not replace(level, quantity=before).is_low:
            effects.event("stock.low_stock", {
                "tenant_id": key.tenant_id,
                "product_id": key.product_id,
                "variant_id": key.variant_id,
                "location": str(key.location),
                "quantity": level.quantity,
                "threshold": level.low_stock_threshold,
            })

        effects.invalidate(
            stock_list_key(key.tenant_id),
            stock_detail_key(key.tenant_id, key.product_id, key.location),
        )
        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_movement(self, tenant_id: int, movement_id: int) -> Optional[MovementRecord]:
        return self.repos.ledger.get(tenant_id, movement_id)

    def search_movements(
        self,
        tenant_id: int,
        *,
        product_id: Optional[int] = None,
        variant_id: Optional[int] = None,
        location=None,
        movement_type: Optional[str] = None,
        reference: Optional[str] = None,
        since=None,
        until=None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[MovementRecord]:
        if movement_type and movement_type not in MOVEMENT_TYPES:
            raise InvalidMovement(f"Unknown movement type: {movement_type}")
        limit = max(1, min(int(limit), MAX_SEARCH_LIMIT))
        offset = max(0, int(offset))
        try:
            since, until = parse_iso_datetime(since), parse_iso_datetime(until)
        except ValueError as exc:
            raise InvalidMovement(f"Invalid time range bound: {exc}") from exc
        return self.repos.ledger.search(
            tenant_id,
            product_id=product_id,
            variant_id=variant_id,
            location=location,
            movement_type=movement_type,
            reference=reference,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
        )

    def verify_consistency(self, tenant_id: Optional[int] = None) -> list[LedgerMismatch]:
        """
        Compare every StockLevel with the ledger sum for its key.

        A key with movements but no StockLevel row counts as level 0; a
        StockLevel row with no movements counts as ledger 0.
        """
        sums = self.repos.ledger.sums_by_key(tenant_id)
        levels = {r.key: r.quantity for r in self.repos.levels.list(tenant_id)}

        mismatches = []
        for key in sorted(set(sums) | set(levels), key=StockKey.sort_key):
            ledger_qty = sums.get(key, 0)
            level_qty = levels.get(key, 0)
            if ledger_qty != level_qty:
                mismatches.append(LedgerMismatch(key, ledger_qty, level_qty))
        return mismatches
