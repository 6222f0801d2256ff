# Overview: Persistence interfaces the engine services are written against.

"""
Repository contracts.

Services never touch ORM rows or db.session directly. They receive a
Repositories bundle and run every mutation through UnitOfWork.run(), which
owns the transaction boundary (commit, rollback, retry).

Contract shared by all implementations:
- Records returned are frozen domain dataclasses (see domain.py).
- StockLevelRepo.lock() locks rows in ascending StockKey.sort_key() order and
  holds them until the surrounding unit of work ends.
- MovementLedgerRepo.batches() returns batches with remaining > 0, including
  expired ones; eligibility is the allocator's decision.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Iterable, Optional, TypeVar

from ..domain import (
    Batch,
    MethodTotal,
    MovementRecord,
    Page,
    SaleRecord,
    SalesReturnRecord,
    SessionView,
    StockKey,
    StockLevelRecord,
    TransferRecord,
)
from ..locations import LocationRef

T = TypeVar("T")


def batch_sort_key(batch: Batch) -> tuple:
    """FIFO order: earliest expiry first, undated stock last, then oldest activity."""
    return (
        batch.expiry_date is None,
        batch.expiry_date or date.max,
        batch.last_movement_at,
        batch.batch_number or "",
    )


class UnitOfWork(ABC):
    @abstractmethod
    def run(self, func: Callable[[], T]) -> T:
        """
        Run func inside one atomic transaction and return its result.

        Any exception raised by func leaves no trace in the store and is
        re-raised unchanged. Nested calls join the outermost transaction.
        """

    @abstractmethod
    def after_commit(self, callback: Callable[[], None]) -> None:
        """
        Run callback once the outermost run() has committed.

        Callbacks registered inside a transaction that rolls back, or inside
        an attempt that is retried, are discarded. Outside any transaction the
        callback runs immediately.
        """


class MovementLedgerRepo(ABC):
    @abstractmethod
    def append(
        self,
        key: StockKey,
        *,
        quantity: int,
        movement_type: str,
        created_at: datetime,
        batch_number: Optional[str] = None,
        expiry_date: Optional[date] = None,
        reference: Optional[str] = None,
        cost_price_cents: Optional[int] = None,
        created_by: Optional[int] = None,
    ) -> MovementRecord: ...

    @abstractmethod
    def get(self, tenant_id: int, movement_id: int) -> Optional[MovementRecord]: ...

    @abstractmethod
    def search(
        self,
        tenant_id: int,
        *,
        product_id: Optional[int] = None,
        variant_id: Optional[int] = None,
        location: Optional[LocationRef] = None,
        movement_type: Optional[str] = None,
        reference: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[MovementRecord]:
        """Newest first."""

    @abstractmethod
    def batches(self, key: StockKey) -> list[Batch]: ...

    @abstractmethod
    def batch(self, key: StockKey, batch_number: Optional[str]) -> Optional[Batch]: ...

    @abstractmethod
    def sums_by_key(self, tenant_id: Optional[int] = None) -> dict[StockKey, int]: ...


class StockLevelRepo(ABC):
    @abstractmethod
    def get(self, key: StockKey) -> Optional[StockLevelRecord]: ...

    @abstractmethod
    def lock(self, keys: Iterable[StockKey]) -> dict[StockKey, Optional[StockLevelRecord]]: ...

    @abstractmethod
    def apply_delta(self, key: StockKey, delta: int, now: datetime) -> tuple[int, StockLevelRecord]:
        """Upsert the row for key and add delta. Returns (quantity_before, updated_record)."""

    @abstractmethod
    def set_thresholds(
        self,
        key: StockKey,
        *,
        min_stock_level: Optional[int],
        max_stock_level: Optional[int],
        reorder_point: Optional[int],
        now: datetime,
    ) -> Optional[StockLevelRecord]:
        """Returns None when no row exists for key."""

    @abstractmethod
    def delete(self, key: StockKey) -> None: ...

    @abstractmethod
    def list(
        self,
        tenant_id: Optional[int] = None,
        *,
        location: Optional[LocationRef] = None,
        product_id: Optional[int] = None,
    ) -> list[StockLevelRecord]: ...


class TransferRepo(ABC):
    @abstractmethod
    def add(self, **fields) -> TransferRecord: ...

    @abstractmethod
    def get(self, transfer_id: int) -> Optional[TransferRecord]: ...

    @abstractmethod
    def lock(self, transfer_id: int) -> Optional[TransferRecord]: ...

    @abstractmethod
    def update(self, transfer_id: int, **changes) -> TransferRecord: ...

    @abstractmethod
    def delete(self, transfer_id: int) -> None: ...

    @abstractmethod
    def list(
        self,
        tenant_id: int,
        *,
        status: Optional[str] = None,
        product_id: Optional[int] = None,
        location: Optional[LocationRef] = None,
        transfer_type: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page:
        """Transfers where tenant_id is either party, newest first."""


class SaleRepo(ABC):
    @abstractmethod
    def add_sale(self, header: dict, lines: list[dict]) -> SaleRecord: ...

    @abstractmethod
    def get_sale(self, tenant_id: int, sale_id: int, *, for_update: bool = False) -> Optional[SaleRecord]: ...

    @abstractmethod
    def record_returned(self, line_id: int, quantity: int) -> None: ...

    @abstractmethod
    def add_return(self, **fields) -> SalesReturnRecord: ...


class PaymentLedger(ABC):
    """Read-only view over the payments module's session payments."""

    @abstractmethod
    def method_totals(self, tenant_id: int, session_id: int) -> list[MethodTotal]:
        """Completed payments only, grouped by method, sorted by method."""

    @abstractmethod
    def cash_drops_total(self, tenant_id: int, session_id: int) -> int: ...


class SessionDirectory(ABC):
    @abstractmethod
    def get(self, tenant_id: int, session_id: int) -> Optional[SessionView]: ...


class SettingsRepo(ABC):
    @abstractmethod
    def get(self, tenant_id: int, key: str) -> Optional[str]: ...

    @abstractmethod
    def set(self, tenant_id: int, key: str, value: Optional[str]) -> None: ...

    @abstractmethod
    def all(self, tenant_id: int) -> dict[str, Optional[str]]: ...


@dataclass(frozen=True)
class Repositories:
    uow: UnitOfWork
    ledger: MovementLedgerRepo
    levels: StockLevelRepo
    transfers: TransferRepo
    sales: SaleRepo
    payments: PaymentLedger
    sessions: SessionDirectory
    settings: SettingsRepo
