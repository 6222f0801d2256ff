# Overview: In-memory implementations of the repository contracts.

"""
In-memory repositories.

All repositories built from one MemoryStore share its state and its
re-entrant lock. UnitOfWork.run() holds that lock for the whole call, so
transactions are serialized; on any exception the state captured when the
outermost run() started is restored and pending after-commit callbacks are
dropped.

The store also exposes seeding helpers for the data other modules own
(POS sessions, session payments, cash drops).
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from typing import Optional

from ..domain import (
    PAYMENT_STATUS_COMPLETED,
    Batch,
    MethodTotal,
    MovementRecord,
    Page,
    SaleLineRecord,
    SaleRecord,
    SalesReturnRecord,
    SessionView,
    StockKey,
    StockLevelRecord,
    TransferRecord,
)
from ..time_utils import utcnow
from .base import (
    MovementLedgerRepo,
    PaymentLedger,
    Repositories,
    SaleRepo,
    SessionDirectory,
    SettingsRepo,
    StockLevelRepo,
    TransferRepo,
    UnitOfWork,
    batch_sort_key,
)


@dataclass
class _Payment:
    tenant_id: int
    session_id: int
    method: str
    amount_cents: int
    status: str


@dataclass
class _State:
    movements: list = field(default_factory=list)
    levels: dict = field(default_factory=dict)
    transfers: dict = field(default_factory=dict)
    sales: dict = field(default_factory=dict)
    returns: list = field(default_factory=list)
    sessions: dict = field(default_factory=dict)
    payments: list = field(default_factory=list)
    cash_drops: list = field(default_factory=list)
    settings: dict = field(default_factory=dict)
    ids: dict = field(default_factory=dict)

    def copy(self) -> "_State":
        # Records are frozen, so copying the containers is enough
        return _State(
            movements=list(self.movements),
            levels=dict(self.levels),
            transfers=dict(self.transfers),
            sales=dict(self.sales),
            returns=list(self.returns),
            sessions=dict(self.sessions),
            payments=list(self.payments),
            cash_drops=list(self.cash_drops),
            settings=dict(self.settings),
            ids=dict(self.ids),
        )


class MemoryStore:
    def __init__(self):
        self.lock = threading.RLock()
        self.state = _State()
        self.depth = 0
        self.callbacks: list = []

    def next_id(self, name: str) -> int:
        value = self.state.ids.get(name, 0) + 1
        self.state.ids[name] = value
        return value

    # ------------------------------------------------------------------
    # Seeding for data owned by other modules
    # ------------------------------------------------------------------

    def add_session(self, *, tenant_id: int, store_id: int, user_id: int,
                    opening_balance_cents: int = 0, is_open: bool = True,
                    closing_balance_cents: Optional[int] = None, opened_at=None) -> SessionView:
        with self.lock:
            view = SessionView(
                id=self.next_id("sessions"),
                tenant_id=tenant_id,
                store_id=store_id,
                user_id=user_id,
                opening_balance_cents=opening_balance_cents,
                closing_balance_cents=closing_balance_cents,
                is_open=is_open,
                opened_at=opened_at or utcnow(),
            )
            self.state.sessions[view.id] = view
            return view

    def add_payment(self, *, tenant_id: int, session_id: int, method: str, amount_cents: int,
                    status: str = PAYMENT_STATUS_COMPLETED) -> None:
        with self.lock:
            self.state.payments.append(_Payment(tenant_id, session_id, method, amount_cents, status))

    def add_cash_drop(self, *, tenant_id: int, session_id: int, amount_cents: int) -> None:
        with self.lock:
            self.state.cash_drops.append((tenant_id, session_id, amount_cents))


class MemoryUnitOfWork(UnitOfWork):
    def __init__(self, store: MemoryStore):
        self.store = store

    def run(self, func):
        store = self.store
        with store.lock:
            outermost = store.depth == 0
            snapshot = store.state.copy() if outermost else None
            if outermost:
                store.callbacks = []
            store.depth += 1
            try:
                result = func()
            except BaseException:
                if outermost:
                    store.state = snapshot
                    store.callbacks = []
                raise
            finally:
                store.depth -= 1
            if not outermost:
                return result
            callbacks, store.callbacks = store.callbacks, []
        # Callbacks run after the lock is released
        for callback in callbacks:
            callback()
        return result

    def after_commit(self, callback):
        store = self.store
        with store.lock:
            if store.depth:
                store.callbacks.append(callback)
                return
        callback()


class _MemoryRepo:
    def __init__(self, store: MemoryStore):
        self.store = store

    @property
    def state(self) -> _State:
        return self.store.state


def _movement_matches(m: MovementRecord, key: StockKey) -> bool:
    return (
        m.tenant_id == key.tenant_id
        and m.product_id == key.product_id
        and m.variant_id == key.variant_id
        and m.location == key.location
    )


def _build_batch(batch_number, movements) -> Batch:
    expiry = None
    if batch_number is not None:
        expiry = next((m.expiry_date for m in movements if m.quantity > 0), None)
    return Batch(
        batch_number=batch_number,
        expiry_date=expiry,
        remaining=sum(m.quantity for m in movements),
        last_movement_at=max(m.created_at for m in movements),
    )


class MemoryMovementLedgerRepo(_MemoryRepo, MovementLedgerRepo):
    def append(self, key, *, quantity, movement_type, created_at, batch_number=None,
               expiry_date=None, reference=None, cost_price_cents=None, created_by=None):
        with self.store.lock:
            record = MovementRecord(
                id=self.store.next_id("movements"),
                tenant_id=key.tenant_id,
                product_id=key.product_id,
                variant_id=key.variant_id,
                location=key.location,
                batch_number=batch_number,
                expiry_date=expiry_date,
                quantity=quantity,
                movement_type=movement_type,
                reference=reference,
                cost_price_cents=cost_price_cents,
                created_by=created_by,
                created_at=created_at,
            )
            self.state.movements.append(record)
            return record

    def get(self, tenant_id, movement_id):
        with self.store.lock:
            for m in self.state.movements:
                if m.id == movement_id and m.tenant_id == tenant_id:
                    return m
        return None

    def search(self, tenant_id, *, product_id=None, variant_id=None, location=None,
               movement_type=None, reference=None, since=None, until=None,
               limit=100, offset=0):
        with self.store.lock:
            found = [
                m for m in self.state.movements
                if m.tenant_id == tenant_id
                and (product_id is None or m.product_id == product_id)
                and (variant_id is None or m.variant_id == variant_id)
                and (location is None or m.location == location)
                and (not movement_type or m.movement_type == movement_type)
                and (not reference or m.reference == reference)
                and (since is None or m.created_at >= since)
                and (until is None or m.created_at <= until)
            ]
        found.sort(key=lambda m: (m.created_at, m.id), reverse=True)
        return found[offset:offset + limit]

    def _grouped(self, key: StockKey) -> dict:
        groups = {}
        with self.store.lock:
            for m in self.state.movements:
                if _movement_matches(m, key):
                    groups.setdefault(m.batch_number, []).append(m)
        return groups

    def batches(self, key):
        batches = [_build_batch(number, rows) for number, rows in self._grouped(key).items()]
        return sorted((b for b in batches if b.remaining > 0), key=batch_sort_key)

    def batch(self, key, batch_number):
        rows = self._grouped(key).get(batch_number)
        return _build_batch(batch_number, rows) if rows else None

    def sums_by_key(self, tenant_id=None):
        sums = {}
        with self.store.lock:
            for m in self.state.movements:
                if tenant_id is not None and m.tenant_id != tenant_id:
                    continue
                sums[m.key] = sums.get(m.key, 0) + m.quantity
        return sums


class MemoryStockLevelRepo(_MemoryRepo, StockLevelRepo):
    def get(self, key):
        with self.store.lock:
            return self.state.levels.get(key)

    def lock(self, keys):
        # The store lock held by the unit of work already serializes writers
        with self.store.lock:
            return {key: self.state.levels.get(key) for key in sorted(set(keys), key=StockKey.sort_key)}

    def apply_delta(self, key, delta, now):
        with self.store.lock:
            current = self.state.levels.get(key)
            if current is None:
                current = StockLevelRecord(id=self.store.next_id("levels"), key=key, quantity=0)
            updated = replace(current, quantity=current.quantity + delta, updated_at=now)
            self.state.levels[key] = updated
            return current.quantity, updated

    def set_thresholds(self, key, *, min_stock_level, max_stock_level, reorder_point, now):
        with self.store.lock:
            current = self.state.levels.get(key)
            if current is None:
                return None
            updated = replace(
                current,
                min_stock_level=min_stock_level,
                max_stock_level=max_stock_level,
                reorder_point=reorder_point,
                updated_at=now,
            )
            self.state.levels[key] = updated
            return updated

    def delete(self, key):
        with self.store.lock:
            self.state.levels.pop(key, None)

    def list(self, tenant_id=None, *, location=None, product_id=None):
        with self.store.lock:
            rows = [
                r for r in self.state.levels.values()
                if (tenant_id is None or r.key.tenant_id == tenant_id)
                and (location is None or r.key.location == location)
                and (product_id is None or r.key.product_id == product_id)
            ]
        return sorted(rows, key=lambda r: r.key.sort_key())


class MemoryTransferRepo(_MemoryRepo, TransferRepo):
    def add(self, **fields):
        with self.store.lock:
            record = TransferRecord(id=self.store.next_id("transfers"), **fields)
            self.state.transfers[record.id] = record
            return record

    def get(self, transfer_id):
        with self.store.lock:
            return self.state.transfers.get(transfer_id)

    def lock(self, transfer_id):
        return self.get(transfer_id)

    def update(self, transfer_id, **changes):
        with self.store.lock:
            record = replace(self.state.transfers[transfer_id], **changes)
            self.state.transfers[transfer_id] = record
            return record

    def delete(self, transfer_id):
        with self.store.lock:
            self.state.transfers.pop(transfer_id, None)

    def list(self, tenant_id, *, status=None, product_id=None, location=None,
             transfer_type=None, page=1, limit=20):
        with self.store.lock:
            rows = [
                t for t in self.state.transfers.values()
                if tenant_id in (t.tenant_id, t.destination_tenant_id)
                and (not status or t.status == status)
                and (product_id is None or t.product_id == product_id)
                and (location is None or location in (t.source, t.destination))
                and (not transfer_type or t.transfer_type == transfer_type)
            ]
        rows.sort(key=lambda t: (t.created_at, t.id), reverse=True)
        start = (page - 1) * limit
        return Page(items=rows[start:start + limit], total=len(rows), page=page, limit=limit)


class MemorySaleRepo(_MemoryRepo, SaleRepo):
    def add_sale(self, header, lines):
        with self.store.lock:
            sale_id = self.store.next_id("sales")
            records = tuple(
                SaleLineRecord(id=self.store.next_id("sale_lines"), sale_id=sale_id, returned_quantity=0, **line)
                for line in lines
            )
            sale = SaleRecord(id=sale_id, lines=records, **header)
            self.state.sales[sale_id] = sale
            return sale

    def get_sale(self, tenant_id, sale_id, *, for_update=False):
        with self.store.lock:
            sale = self.state.sales.get(sale_id)
        if sale is None or sale.tenant_id != tenant_id:
            return None
        return sale

    def record_returned(self, line_id, quantity):
        with self.store.lock:
            for sale in self.state.sales.values():
                lines = list(sale.lines)
                for i, line in enumerate(lines):
                    if line.id == line_id:
                        lines[i] = replace(line, returned_quantity=line.returned_quantity + quantity)
                        self.state.sales[sale.id] = replace(sale, lines=tuple(lines))
                        return
        raise KeyError(line_id)

    def add_return(self, **fields):
        with self.store.lock:
            record = SalesReturnRecord(id=self.store.next_id("returns"), **fields)
            self.state.returns.append(record)
            return record


class MemoryPaymentLedger(_MemoryRepo, PaymentLedger):
    def method_totals(self, tenant_id, session_id):
        totals = {}
        with self.store.lock:
            for p in self.state.payments:
                if p.tenant_id != tenant_id or p.session_id != session_id:
                    continue
                if p.status != PAYMENT_STATUS_COMPLETED:
                    continue
                collected, refunded = totals.get(p.method, (0, 0))
                if p.amount_cents > 0:
                    collected += p.amount_cents
                else:
                    refunded -= p.amount_cents
                totals[p.method] = (collected, refunded)
        return [MethodTotal(method, c, r) for method, (c, r) in sorted(totals.items())]

    def cash_drops_total(self, tenant_id, session_id):
        with self.store.lock:
            return sum(
                amount for t, s, amount in self.state.cash_drops
                if t == tenant_id and s == session_id
            )


class MemorySessionDirectory(_MemoryRepo, SessionDirectory):
    def get(self, tenant_id, session_id):
        with self.store.lock:
            view = self.state.sessions.get(session_id)
        if view is None or view.tenant_id != tenant_id:
            return None
        return view


class MemorySettingsRepo(_MemoryRepo, SettingsRepo):
    def get(self, tenant_id, key):
        with self.store.lock:
            return self.state.settings.get((tenant_id, key))

    def set(self, tenant_id, key, value):
        with self.store.lock:
            if value is None:
                self.state.settings.pop((tenant_id, key), None)
            else:
                self.state.settings[(tenant_id, key)] = value

    def all(self, tenant_id):
        with self.store.lock:
            return {k: v for (t, k), v in self.state.settings.items() if t == tenant_id}


def build_memory_repositories(store: Optional[MemoryStore] = None) -> Repositories:
    store = store or MemoryStore()
    return Repositories(
        uow=MemoryUnitOfWork(store),
        ledger=MemoryMovementLedgerRepo(store),
        levels=MemoryStockLevelRepo(store),
        transfers=MemoryTransferRepo(store),
        sales=MemorySaleRepo(store),
        payments=MemoryPaymentLedger(store),
        sessions=MemorySessionDirectory(store),
        settings=MemorySettingsRepo(store),
    )
