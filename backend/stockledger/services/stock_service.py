# Overview: Service-layer operations for stock levels; receipts, adjustments, thresholds and reads.

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..domain import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_PURCHASE,
    RECEIPT_TYPES,
    WRITE_OFF_TYPES,
    MovementRecord,
    StockKey,
    StockLevelRecord,
)
from ..errors import InvalidMovement, StockLevelNotEmpty, StockRecordNotFound
from ..time_utils import parse_iso_date
from .allocation_service import BatchAllocator
from .ledger_service import MovementLedger, validate_movement
from .side_effects import TransactionalService, stock_detail_key, stock_list_key


@dataclass(frozen=True)
class Availability:
    key: StockKey
    requested: int
    on_hand: int
    sellable: int

    @property
    def is_available(self) -> bool:
        return self.sellable >= self.requested

    def to_dict(self) -> dict:
        return {
            "product_id": self.key.product_id,
            "variant_id": self.key.variant_id,
            "location": str(self.key.location),
            "requested": self.requested,
            "on_hand": self.on_hand,
            "sellable": self.sellable,
            "is_available": self.is_available,
        }


def _check_threshold(name: str, value) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidMovement(f"{name} must be a non-negative integer")


class StockService(TransactionalService):
    def __init__(self, repos, effects, ledger: MovementLedger, allocator: BatchAllocator, clock=None):
        super().__init__(repos, effects, clock or ledger.clock)
        self.ledger = ledger
        self.allocator = allocator

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def increment_stock(
        self,
        key: StockKey,
        quantity: int,
        movement_type: str = MOVEMENT_PURCHASE,
        *,
        batch_number: Optional[str] = None,
        expiry_date=None,
        reference: Optional[str] = None,
        cost_price_cents: Optional[int] = None,
        created_by: Optional[int] = None,
    ) -> MovementRecord:
        """Receive stock. Creates the StockLevel when this is the first movement."""
        validate_movement(quantity, movement_type)
        if quantity < 0:
            raise InvalidMovement("increment_stock requires a positive quantity")
        if movement_type not in RECEIPT_TYPES:
            raise InvalidMovement(f"{movement_type} cannot be used to receive stock")
        return self.ledger.record_movement(
            key,
            quantity,
            movement_type,
            batch_number=batch_number,
            expiry_date=expiry_date,
            reference=reference,
            cost_price_cents=cost_price_cents,
            created_by=created_by,
        )

    def adjust_stock(
        self,
        key: StockKey,
        delta: int,
        movement_type: str = MOVEMENT_ADJUSTMENT,
        *,
        batch_number: Optional[str] = None,
        expiry_date=None,
        reference: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> list[MovementRecord]:
        """
        Adjust an existing StockLevel by delta.

        Negative deltas are write-offs: from the named batch when one is given
        (expired batches included), otherwise FIFO over non-expired stock.
        """
        validate_movement(delta, movement_type)
        if delta < 0 and movement_type not in WRITE_OFF_TYPES:
            raise InvalidMovement(f"{movement_type} cannot be used for a negative adjustment")
        if delta > 0 and movement_type not in RECEIPT_TYPES:
            raise InvalidMovement(f"{movement_type} cannot be used for a positive adjustment")
        expiry = parse_iso_date(expiry_date)

        def _op(effects):
            if self.repos.levels.lock([key])[key] is None:
                raise StockRecordNotFound(key)

            if delta > 0:
                return [self.ledger.append(
                    effects,
                    key,
                    quantity=delta,
                    movement_type=movement_type,
                    batch_number=batch_number,
                    expiry_date=expiry,
                    reference=reference,
                    created_by=created_by,
                )]

            if batch_number is not None:
                allocation = self.allocator.deduct_batch(
                    effects, key, batch_number, -delta, movement_type,
                    allow_expired=True, reference=reference, created_by=created_by,
                )
            else:
                allocation = self.allocator.deduct(
                    effects, key, -delta, movement_type, reference=reference, created_by=created_by,
                )
            return list(allocation.movements)

        return self._transact(_op)

    def set_thresholds(
        self,
        key: StockKey,
        *,
        min_stock_level: Optional[int] = None,
        max_stock_level: Optional[int] = None,
        reorder_point: Optional[int] = None,
        updated_by: Optional[int] = None,
    ) -> StockLevelRecord:
        """Replace the replenishment thresholds. Never touches quantity."""
        _check_threshold("min_stock_level", min_stock_level)
        _check_threshold("max_stock_level", max_stock_level)
        _check_threshold("reorder_point", reorder_point)
        if min_stock_level is not None and max_stock_level is not None and min_stock_level > max_stock_level:
            raise InvalidMovement("min_stock_level cannot exceed max_stock_level")

        def _op(effects):
            record = self.repos.levels.set_thresholds(
                key,
                min_stock_level=min_stock_level,
                max_stock_level=max_stock_level,
                reorder_point=reorder_point,
                now=self.clock(),
            )
            if record is None:
                raise StockRecordNotFound(key)
            effects.audit_entry(
                action="STOCK_THRESHOLDS_UPDATED",
                entity_type="stock_level",
                entity_id=record.id,
                tenant_id=key.tenant_id,
                actor_id=updated_by,
                details={
                    "min_stock_level": min_stock_level,
                    "max_stock_level": max_stock_level,
                    "reorder_point": reorder_point,
                },
            )
            effects.invalidate(
                stock_list_key(key.tenant_id),
                stock_detail_key(key.tenant_id, key.product_id, key.location),
            )
            return record

        return self._transact(_op)

    def delete_stock_level(self, key: StockKey, *, deleted_by: Optional[int] = None) -> None:
        """Remove an empty StockLevel. Ledger history is kept."""
        def _op(effects):
            record = self.repos.levels.lock([key])[key]
            if record is None:
                raise StockRecordNotFound(key)
            if record.quantity != 0:
                raise StockLevelNotEmpty(key, record.quantity)
            self.repos.levels.delete(key)

            effects.audit_entry(
                action="STOCK_LEVEL_DELETED",
                entity_type="stock_level",
                entity_id=record.id,
                tenant_id=key.tenant_id,
                actor_id=deleted_by,
            )
            effects.event("stock.level_deleted", record.to_dict())
            effects.invalidate(
                stock_list_key(key.tenant_id),
                stock_detail_key(key.tenant_id, key.product_id, key.location),
            )

        self._transact(_op)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_stock_level(self, key: StockKey) -> Optional[StockLevelRecord]:
        return self.repos.levels.get(key)

    def list_stock_levels(self, tenant_id: int, *, location=None, product_id: Optional[int] = None) -> list[StockLevelRecord]:
        return self.repos.levels.list(tenant_id, location=location, product_id=product_id)

    def low_stock_levels(self, tenant_id: int, *, location=None) -> list[StockLevelRecord]:
        return [r for r in self.repos.levels.list(tenant_id, location=location) if r.is_low]

    def check_availability(self, key: StockKey, quantity: int) -> Availability:
        record = self.repos.levels.get(key)
        return Availability(
            key=key,
            requested=quantity,
            on_hand=record.quantity if record else 0,
            sellable=self.allocator.sellable_quantity(key),
        )
