# Overview: SQLAlchemy implementations of the repository contracts.

from __future__ import annotations

import threading
from typing import Iterable, Optional

from sqlalchemy import case, func, or_

from ..domain import (
    PAYMENT_STATUS_COMPLETED,
    Batch,
    MethodTotal,
    Page,
    StockKey,
)
from ..extensions import db
from ..locations import make_location
from ..models import (
    CashDrop,
    POSSale,
    POSSaleLine,
    POSSession,
    SalesReturn,
    SessionPayment,
    StockLevel,
    StockMovement,
    StockTransfer,
    TenantSetting,
)
from ..services.concurrency import lock_for_update, run_with_retry
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


def _nullable_eq(column, value):
    return column.is_(None) if value is None else column == value


def _movement_key_filter(key: StockKey) -> list:
    return [
        StockMovement.tenant_id == key.tenant_id,
        StockMovement.product_id == key.product_id,
        _nullable_eq(StockMovement.variant_id, key.variant_id),
        StockMovement.location_type == key.location.location_type,
        StockMovement.location_id == key.location.id,
    ]


def _split_location(fields: dict, name: str) -> None:
    location = fields.pop(name, None)
    if location is not None:
        fields[f"{name}_type"] = location.location_type
        fields[f"{name}_id"] = location.id


class SqlUnitOfWork(UnitOfWork):
    """
    One db.session transaction per outermost run() call.

    Nested run() calls join the outer transaction. The outermost call commits,
    rolls back on any exception, and replays func on transient conflicts.
    After-commit callbacks run once the commit has succeeded, outside the
    transaction.
    """

    def __init__(self, *, attempts: int = 3, backoff_base: float = 0.1):
        self.attempts = attempts
        self.backoff_base = backoff_base
        self._local = threading.local()

    def run(self, func):
        if getattr(self._local, "depth", 0):
            return func()

        def _op():
            self._local.depth = 1
            self._local.callbacks = []
            try:
                result = func()
                db.session.commit()
                return result, self._local.callbacks
            except Exception:
                db.session.rollback()
                raise
            finally:
                self._local.depth = 0
                self._local.callbacks = []

        result, callbacks = run_with_retry(_op, attempts=self.attempts, backoff_base=self.backoff_base)
        for callback in callbacks:
            callback()
        return result

    def after_commit(self, callback):
        if getattr(self._local, "depth", 0):
            self._local.callbacks.append(callback)
        else:
            callback()


class SqlMovementLedgerRepo(MovementLedgerRepo):
    def append(self, key, *, quantity, movement_type, created_at, batch_number=None,
               expiry_date=None, reference=None, cost_price_cents=None, created_by=None):
        row = StockMovement(
            tenant_id=key.tenant_id,
            product_id=key.product_id,
            variant_id=key.variant_id,
            location_type=key.location.location_type,
            location_id=key.location.id,
            batch_number=batch_number,
            expiry_date=expiry_date,
            quantity=quantity,
            movement_type=movement_type,
            reference=reference,
            cost_price_cents=cost_price_cents,
            created_by=created_by,
            created_at=created_at,
        )
        db.session.add(row)
        db.session.flush()
        return row.to_record()

    def get(self, tenant_id, movement_id):
        row = db.session.query(StockMovement).filter_by(id=movement_id, tenant_id=tenant_id).first()
        return row.to_record() if row else None

    def search(self, tenant_id, *, product_id=None, variant_id=None, location=None,
               movement_type=None, reference=None, since=None, until=None,
               limit=100, offset=0):
        q = db.session.query(StockMovement).filter(StockMovement.tenant_id == tenant_id)
        if product_id is not None:
            q = q.filter(StockMovement.product_id == product_id)
        if variant_id is not None:
            q = q.filter(StockMovement.variant_id == variant_id)
        if location is not None:
            q = q.filter(
                StockMovement.location_type == location.location_type,
                StockMovement.location_id == location.id,
            )
        if movement_type:
            q = q.filter(StockMovement.movement_type == movement_type)
        if reference:
            q = q.filter(StockMovement.reference == reference)
        if since is not None:
            q = q.filter(StockMovement.created_at >= since)
        if until is not None:
            q = q.filter(StockMovement.created_at <= until)

        rows = (
            q.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [r.to_record() for r in rows]

    def _first_in_expiries(self, key: StockKey, *extra) -> dict:
        q = db.session.query(StockMovement.batch_number, StockMovement.expiry_date).filter(
            *_movement_key_filter(key), StockMovement.quantity > 0,
            *extra,
        )
        expiries = {}
        for number, expiry in q.order_by(StockMovement.id.asc()).all():
            expiries.setdefault(number, expiry)
        return expiries

    def batches(self, key):
        remaining = func.sum(StockMovement.quantity)
        rows = (
            db.session.query(
                StockMovement.batch_number,
                remaining.label("remaining"),
                func.max(StockMovement.created_at).label("last_movement_at"),
            )
            .filter(*_movement_key_filter(key))
            .group_by(StockMovement.batch_number)
            .having(remaining > 0)
            .all()
        )
        expiries = self._first_in_expiries(key)
        batches = [
            Batch(
                batch_number=r.batch_number,
                # Un-numbered stock never expires
                expiry_date=expiries.get(r.batch_number) if r.batch_number is not None else None,
                remaining=int(r.remaining),
                last_movement_at=r.last_movement_at,
            )
            for r in rows
        ]
        return sorted(batches, key=batch_sort_key)

    def batch(self, key, batch_number):
        row = (
            db.session.query(
                func.coalesce(func.sum(StockMovement.quantity), 0).label("remaining"),
                func.max(StockMovement.created_at).label("last_movement_at"),
            )
            .filter(*_movement_key_filter(key), _nullable_eq(StockMovement.batch_number, batch_number))
            .one()
        )
        if row.last_movement_at is None:
            return None
        expiry = None
        if batch_number is not None:
            expiry = self._first_in_expiries(
                key, StockMovement.batch_number == batch_number,
            ).get(batch_number)
        return Batch(
            batch_number=batch_number,
            expiry_date=expiry,
            remaining=int(row.remaining),
            last_movement_at=row.last_movement_at,
        )

    def sums_by_key(self, tenant_id=None):
        q = db.session.query(
            StockMovement.tenant_id,
            StockMovement.product_id,
            StockMovement.variant_id,
            StockMovement.location_type,
            StockMovement.location_id,
            func.sum(StockMovement.quantity),
        )
        if tenant_id is not None:
            q = q.filter(StockMovement.tenant_id == tenant_id)
        q = q.group_by(
            StockMovement.tenant_id,
            StockMovement.product_id,
            StockMovement.variant_id,
            StockMovement.location_type,
            StockMovement.location_id,
        )
        sums = {}
        for tenant, product, variant, loc_type, loc_id, total in q.all():
            key = StockKey(tenant, product, make_location(loc_type, loc_id), variant)
            sums[key] = int(total or 0)
        return sums


class SqlStockLevelRepo(StockLevelRepo):
    def _query(self, key: StockKey):
        return db.session.query(StockLevel).filter(
            StockLevel.tenant_id == key.tenant_id,
            StockLevel.product_id == key.product_id,
            StockLevel.variant_key == (key.variant_id or 0),
            StockLevel.location_type == key.location.location_type,
            StockLevel.location_id == key.location.id,
        )

    def get(self, key):
        row = self._query(key).first()
        return row.to_record() if row else None

    def lock(self, keys: Iterable[StockKey]):
        locked = {}
        for key in sorted(set(keys), key=StockKey.sort_key):
            row = lock_for_update(self._query(key)).first()
            locked[key] = row.to_record() if row else None
        return locked

    def apply_delta(self, key, delta, now):
        row = lock_for_update(self._query(key)).first()
        if row is None:
            row = StockLevel(
                tenant_id=key.tenant_id,
                product_id=key.product_id,
                variant_id=key.variant_id,
                variant_key=key.variant_id or 0,
                location_type=key.location.location_type,
                location_id=key.location.id,
                quantity=0,
                created_at=now,
            )
            db.session.add(row)
        before = row.quantity or 0
        row.quantity = before + delta
        row.updated_at = now
        db.session.flush()
        return before, row.to_record()

    def set_thresholds(self, key, *, min_stock_level, max_stock_level, reorder_point, now):
        row = lock_for_update(self._query(key)).first()
        if row is None:
            return None
        row.min_stock_level = min_stock_level
        row.max_stock_level = max_stock_level
        row.reorder_point = reorder_point
        row.updated_at = now
        db.session.flush()
        return row.to_record()

    def delete(self, key):
        row = self._query(key).first()
        if row is not None:
            db.session.delete(row)
            db.session.flush()

    def list(self, tenant_id=None, *, location=None, product_id=None):
        q = db.session.query(StockLevel)
        if tenant_id is not None:
            q = q.filter(StockLevel.tenant_id == tenant_id)
        if location is not None:
            q = q.filter(
                StockLevel.location_type == location.location_type,
                StockLevel.location_id == location.id,
            )
        if product_id is not None:
            q = q.filter(StockLevel.product_id == product_id)
        rows = q.order_by(
            StockLevel.tenant_id,
            StockLevel.location_type,
            StockLevel.location_id,
            StockLevel.product_id,
            StockLevel.variant_key,
        ).all()
        return [r.to_record() for r in rows]


class SqlTransferRepo(TransferRepo):
    def add(self, **fields):
        _split_location(fields, "source")
        _split_location(fields, "destination")
        row = StockTransfer(**fields)
        db.session.add(row)
        db.session.flush()
        return row.to_record()

    def get(self, transfer_id):
        row = db.session.get(StockTransfer, transfer_id)
        return row.to_record() if row else None

    def lock(self, transfer_id):
        row = lock_for_update(db.session.query(StockTransfer).filter_by(id=transfer_id)).first()
        return row.to_record() if row else None

    def update(self, transfer_id, **changes):
        row = db.session.get(StockTransfer, transfer_id)
        for name, value in changes.items():
            setattr(row, name, value)
        db.session.flush()
        return row.to_record()

    def delete(self, transfer_id):
        row = db.session.get(StockTransfer, transfer_id)
        if row is not None:
            db.session.delete(row)
            db.session.flush()

    def list(self, tenant_id, *, status=None, product_id=None, location=None,
             transfer_type=None, page=1, limit=20):
        q = db.session.query(StockTransfer).filter(
            or_(StockTransfer.tenant_id == tenant_id, StockTransfer.destination_tenant_id == tenant_id)
        )
        if status:
            q = q.filter(StockTransfer.status == status)
        if product_id is not None:
            q = q.filter(StockTransfer.product_id == product_id)
        if location is not None:
            q = q.filter(or_(
                (StockTransfer.source_type == location.location_type) & (StockTransfer.source_id == location.id),
                (StockTransfer.destination_type == location.location_type) & (StockTransfer.destination_id == location.id),
            ))
        if transfer_type:
            q = q.filter(StockTransfer.transfer_type == transfer_type)

        total = q.count()
        rows = (
            q.order_by(StockTransfer.created_at.desc(), StockTransfer.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return Page(items=[r.to_record() for r in rows], total=total, page=page, limit=limit)


class SqlSaleRepo(SaleRepo):
    def add_sale(self, header, lines):
        header = dict(header)
        _split_location(header, "location")
        sale = POSSale(**header)
        for line in lines:
            sale.lines.append(POSSaleLine(**line))
        db.session.add(sale)
        db.session.flush()
        return sale.to_record()

    def get_sale(self, tenant_id, sale_id, *, for_update=False):
        q = db.session.query(POSSale).filter_by(id=sale_id, tenant_id=tenant_id)
        if for_update:
            q = lock_for_update(q)
        sale = q.first()
        return sale.to_record() if sale else None

    def record_returned(self, line_id, quantity):
        line = db.session.get(POSSaleLine, line_id)
        line.returned_quantity = (line.returned_quantity or 0) + quantity
        db.session.flush()

    def add_return(self, **fields):
        row = SalesReturn(**fields)
        db.session.add(row)
        db.session.flush()
        return row.to_record()


class SqlPaymentLedger(PaymentLedger):
    def method_totals(self, tenant_id, session_id):
        collected = func.coalesce(func.sum(case(
            (SessionPayment.amount_cents > 0, SessionPayment.amount_cents), else_=0,
        )), 0)
        refunded = func.coalesce(func.sum(case(
            (SessionPayment.amount_cents < 0, -SessionPayment.amount_cents), else_=0,
        )), 0)
        rows = (
            db.session.query(SessionPayment.method, collected, refunded)
            .filter(
                SessionPayment.tenant_id == tenant_id,
                SessionPayment.session_id == session_id,
                SessionPayment.status == PAYMENT_STATUS_COMPLETED,
            )
            .group_by(SessionPayment.method)
            .order_by(SessionPayment.method)
            .all()
        )
        return [MethodTotal(method=m, collected_cents=int(c), refunded_cents=int(r)) for m, c, r in rows]

    def cash_drops_total(self, tenant_id, session_id):
        total = (
            db.session.query(func.coalesce(func.sum(CashDrop.amount_cents), 0))
            .filter(CashDrop.tenant_id == tenant_id, CashDrop.session_id == session_id)
            .scalar()
        )
        return int(total or 0)


class SqlSessionDirectory(SessionDirectory):
    def get(self, tenant_id, session_id):
        row = db.session.query(POSSession).filter_by(id=session_id, tenant_id=tenant_id).first()
        return row.to_view() if row else None


class SqlSettingsRepo(SettingsRepo):
    def get(self, tenant_id, key):
        row = db.session.query(TenantSetting).filter_by(tenant_id=tenant_id, key=key).first()
        return row.value if row else None

    def set(self, tenant_id, key, value):
        row = db.session.query(TenantSetting).filter_by(tenant_id=tenant_id, key=key).first()
        if value is None:
            if row is not None:
                db.session.delete(row)
        elif row is None:
            db.session.add(TenantSetting(tenant_id=tenant_id, key=key, value=value))
        else:
            row.value = value
        db.session.flush()

    def all(self, tenant_id):
        rows = db.session.query(TenantSetting).filter_by(tenant_id=tenant_id).all()
        return {r.key: r.value for r in rows}


def build_sql_repositories(*, attempts: int = 3, backoff_base: float = 0.1) -> Repositories:
    return Repositories(
        uow=SqlUnitOfWork(attempts=attempts, backoff_base=backoff_base),
        ledger=SqlMovementLedgerRepo(),
        levels=SqlStockLevelRepo(),
        transfers=SqlTransferRepo(),
        sales=SqlSaleRepo(),
        payments=SqlPaymentLedger(),
        sessions=SqlSessionDirectory(),
        settings=SqlSettingsRepo(),
    )
