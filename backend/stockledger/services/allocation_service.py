# Overview: Expiry-aware FIFO batch allocation for outbound stock.

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from ..domain import (
    MOVEMENT_SALE,
    MOVEMENT_TYPES,
    Allocation,
    Batch,
    BatchConsumption,
    StockKey,
)
from ..errors import InsufficientStock, InvalidMovement
from ..time_utils import to_iso_date, to_utc_z
from .ledger_service import MovementLedger, normalize_batch_number
from .side_effects import EffectBatch, TransactionalService

"""
Allocation rules (authoritative)

1. Candidates are the batches at the StockKey with remaining > 0 whose
   expiry is today or later. Expired stock is never allocated.
2. Order: earliest expiry first, then oldest last movement. Stock without a
   batch number (or a batch without an expiry) never expires and is used
   after every dated batch.
3. If the candidates cannot cover the request, InsufficientStock is raised
   and nothing is written.
4. Deductions lock the StockLevel row before reading batches, and append one
   negative movement per consumed batch in the same transaction.
"""


@dataclass(frozen=True)
class BatchStatus:
    batch_number: Optional[str]
    expiry_date: Optional[date]
    remaining: int
    last_movement_at: datetime
    expired: bool
    near_expiry: bool

    def to_dict(self) -> dict:
        return {
            "batch_number": self.batch_number,
            "expiry_date": to_iso_date(self.expiry_date),
            "remaining": self.remaining,
            "last_movement_at": to_utc_z(self.last_movement_at),
            "expired": self.expired,
            "near_expiry": self.near_expiry,
        }


def _check_quantity(quantity) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidMovement("quantity must be a positive integer")


def plan_consumptions(batches: list[Batch], required: int, *, today: date,
                      near_expiry_days: int) -> list[BatchConsumption]:
    """Walk FIFO-ordered, non-expired batches until required is covered."""
    consumptions = []
    outstanding = required
    for batch in batches:
        if outstanding <= 0:
            break
        take = min(batch.remaining, outstanding)
        consumptions.append(BatchConsumption(
            batch_number=batch.batch_number,
            expiry_date=batch.expiry_date,
            quantity=take,
            near_expiry=batch.is_near_expiry(today, near_expiry_days),
        ))
        outstanding -= take
    return consumptions


class BatchAllocator(TransactionalService):
    def __init__(self, repos, effects, ledger: MovementLedger, settings, clock=None):
        super().__init__(repos, effects, clock or ledger.clock)
        self.ledger = ledger
        self.settings = settings

    def _today(self) -> date:
        return self.clock().date()

    def eligible_batches(self, key: StockKey, today: Optional[date] = None) -> list[Batch]:
        today = today or self._today()
        return [b for b in self.repos.ledger.batches(key) if not b.is_expired(today)]

    def sellable_quantity(self, key: StockKey) -> int:
        return sum(b.remaining for b in self.eligible_batches(key))

    def list_batches(self, key: StockKey, *, include_expired: bool = True) -> list[BatchStatus]:
        today = self._today()
        days = self.settings.near_expiry_days(key.tenant_id)
        report = []
        for b in self.repos.ledger.batches(key):
            expired = b.is_expired(today)
            if expired and not include_expired:
                continue
            report.append(BatchStatus(
                batch_number=b.batch_number,
                expiry_date=b.expiry_date,
                remaining=b.remaining,
                last_movement_at=b.last_movement_at,
                expired=expired,
                near_expiry=not expired and b.is_near_expiry(today, days),
            ))
        return report

    def plan(self, key: StockKey, quantity: int) -> list[BatchConsumption]:
        """Dry run: what deduct() would consume right now. Writes nothing."""
        _check_quantity(quantity)
        return self._plan(key, quantity)

    def _plan(self, key: StockKey, quantity: int) -> list[BatchConsumption]:
        today = self._today()
        candidates = self.eligible_batches(key, today)
        available = sum(b.remaining for b in candidates)
        if available < quantity:
            raise InsufficientStock(key, quantity, available)
        return plan_consumptions(
            candidates,
            quantity,
            today=today,
            near_expiry_days=self.settings.near_expiry_days(key.tenant_id),
        )

    def allocate(
        self,
        key: StockKey,
        quantity: int,
        movement_type: str = MOVEMENT_SALE,
        *,
        reference: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> Allocation:
        """Atomically deduct quantity from key in FIFO order."""
        _check_quantity(quantity)
        if movement_type not in MOVEMENT_TYPES:
            raise InvalidMovement(f"Unknown movement type: {movement_type}")
        return self._transact(lambda effects: self.deduct(
            effects, key, quantity, movement_type, reference=reference, created_by=created_by,
        ))

    def deduct(
        self,
        effects: EffectBatch,
        key: StockKey,
        quantity: int,
        movement_type: str,
        *,
        reference: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> Allocation:
        """FIFO deduction inside an already-open unit of work."""
        self.repos.levels.lock([key])
        consumptions = self._plan(key, quantity)
        movements = tuple(
            self.ledger.append(
                effects,
                key,
                quantity=-c.quantity,
                movement_type=movement_type,
                batch_number=c.batch_number,
                expiry_date=c.expiry_date,
                reference=reference,
                created_by=created_by,
            )
            for c in consumptions
        )
        return Allocation(key=key, consumptions=tuple(consumptions), movements=movements)

    def deduct_batch(
        self,
        effects: EffectBatch,
        key: StockKey,
        batch_number: Optional[str],
        quantity: int,
        movement_type: str,
        *,
        allow_expired: bool = False,
        reference: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> Allocation:
        """Deduct from one named batch inside an already-open unit of work."""
        batch_number = normalize_batch_number(batch_number)
        self.repos.levels.lock([key])
        today = self._today()
        batch = self.repos.ledger.batch(key, batch_number)

        available = 0
        if batch is not None and (allow_expired or not batch.is_expired(today)):
            available = max(batch.remaining, 0)
        if available < quantity:
            raise InsufficientStock(key, quantity, available, batch_number=batch_number)

        consumption = BatchConsumption(
            batch_number=batch_number,
            expiry_date=batch.expiry_date,
            quantity=quantity,
            near_expiry=not batch.is_expired(today)
            and batch.is_near_expiry(today, self.settings.near_expiry_days(key.tenant_id)),
        )
        movement = self.ledger.append(
            effects,
            key,
            quantity=-quantity,
            movement_type=movement_type,
            batch_number=batch_number,
            expiry_date=batch.expiry_date,
            reference=reference,
            created_by=created_by,
        )
        return Allocation(key=key, consumptions=(consumption,), movements=(movement,))
