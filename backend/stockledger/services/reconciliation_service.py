# Overview: Read-only cash reconciliation and payment breakdown for POS sessions.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..domain import (
    PAYMENT_METHOD_CASH,
    RECONCILIATION_DISCREPANCY,
    RECONCILIATION_OK,
    MethodTotal,
)
from ..errors import SessionError, SessionNotFound
from ..time_utils import to_utc_z, utcnow


@dataclass(frozen=True)
class ReconciliationReport:
    session_id: int
    opening_balance_cents: int
    cash_sales_cents: int
    cash_refunds_cents: int
    cash_drops_cents: int
    expected_cash_cents: int
    declared_cash_cents: int
    cash_difference_cents: int
    tolerance_cents: int
    status: str
    reconciled_at: Optional[datetime] = None

    @property
    def is_balanced(self) -> bool:
        return self.status == RECONCILIATION_OK

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "opening_balance_cents": self.opening_balance_cents,
            "cash_sales_cents": self.cash_sales_cents,
            "cash_refunds_cents": self.cash_refunds_cents,
            "cash_drops_cents": self.cash_drops_cents,
            "expected_cash_cents": self.expected_cash_cents,
            "declared_cash_cents": self.declared_cash_cents,
            "cash_difference_cents": self.cash_difference_cents,
            "tolerance_cents": self.tolerance_cents,
            "status": self.status,
            "reconciled_at": to_utc_z(self.reconciled_at),
        }


@dataclass(frozen=True)
class PaymentsBreakdown:
    session_id: int
    methods: list[MethodTotal] = field(default_factory=list)

    @property
    def total_cents(self) -> int:
        return sum(m.amount_cents for m in self.methods)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "methods": [{"method": m.method, "amount_cents": m.amount_cents} for m in self.methods],
            "total_cents": self.total_cents,
        }


class SessionReconciler:
    """
    Pure reads over the session, payment and cash-drop data other modules own.

    expected = opening + cash sales - cash refunds - cash drops
    difference = declared - expected
    OK when |difference| <= tolerance (per tenant, default 0), else DISCREPANCY.
    """

    def __init__(self, repos, settings, clock=utcnow):
        self.repos = repos
        self.settings = settings
        self.clock = clock

    def _session(self, tenant_id: int, session_id: int):
        session = self.repos.sessions.get(tenant_id, session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def reconcile(self, tenant_id: int, session_id: int, declared_closing_cash_cents: int) -> ReconciliationReport:
        if isinstance(declared_closing_cash_cents, bool) or not isinstance(declared_closing_cash_cents, int):
            raise SessionError("Declared closing cash must be an integer amount in cents")

        session = self._session(tenant_id, session_id)
        cash = next(
            (m for m in self.repos.payments.method_totals(tenant_id, session_id) if m.method == PAYMENT_METHOD_CASH),
            MethodTotal(PAYMENT_METHOD_CASH, 0, 0),
        )
        drops = self.repos.payments.cash_drops_total(tenant_id, session_id)
        tolerance = self.settings.reconciliation_tolerance_cents(tenant_id)

        expected = session.opening_balance_cents + cash.collected_cents - cash.refunded_cents - drops
        difference = declared_closing_cash_cents - expected

        return ReconciliationReport(
            session_id=session.id,
            opening_balance_cents=session.opening_balance_cents,
            cash_sales_cents=cash.collected_cents,
            cash_refunds_cents=cash.refunded_cents,
            cash_drops_cents=drops,
            expected_cash_cents=expected,
            declared_cash_cents=declared_closing_cash_cents,
            cash_difference_cents=difference,
            tolerance_cents=tolerance,
            status=RECONCILIATION_OK if abs(difference) <= tolerance else RECONCILIATION_DISCREPANCY,
            reconciled_at=self.clock(),
        )

    def payments_breakdown(self, tenant_id: int, session_id: int) -> PaymentsBreakdown:
        self._session(tenant_id, session_id)
        return PaymentsBreakdown(
            session_id=session_id,
            methods=list(self.repos.payments.method_totals(tenant_id, session_id)),
        )
