from __future__ import annotations

from ..extensions import db
from ..domain import SaleLineRecord, SaleRecord, SalesReturnRecord, SessionView
from ..locations import make_location
from stockledger.time_utils import to_utc_z


class POSSession(db.Model):
    """
    Cashier session on a store register.

    OWNERSHIP: Opened and closed by the POS-session module. The stock engine
    only reads it (sale scope checks and cash reconciliation).
    """
    __tablename__ = "pos_sessions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False, index=True)
    store_id = db.Column(db.Integer, nullable=False, index=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)

    # Cash tracking (all amounts in cents)
    opening_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    closing_balance_cents = db.Column(db.Integer, nullable=True)

    is_open = db.Column(db.Boolean, nullable=False, default=True, index=True)
    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_view(self) -> SessionView:
        return SessionView(
            id=self.id,
            tenant_id=self.tenant_id,
            store_id=self.store_id,
            user_id=self.user_id,
            opening_balance_cents=self.opening_balance_cents,
            closing_balance_cents=self.closing_balance_cents,
            is_open=self.is_open,
            opened_at=self.opened_at,
            closed_at=self.closed_at,
        )


class SessionPayment(db.Model):
    """
    Payment rows recorded against a POS session.

    OWNERSHIP: Written by the payments module; read-only here.
    amount_cents is signed: positive for collected payments, negative for refunds.
    """
    __tablename__ = "session_payments"
    __table_args__ = (
        db.Index("ix_session_payments_session_method", "session_id", "method"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False, index=True)
    session_id = db.Column(db.Integer, db.ForeignKey("pos_sessions.id"), nullable=False)

    method = db.Column(db.String(32), nullable=False)  # CASH, CARD, MOBILE_MONEY, ...
    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="COMPLETED")  # COMPLETED, VOIDED, FAILED

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())


class CashDrop(db.Model):
    """Cash removed from the drawer mid-session (owned by the POS-session module)."""
    __tablename__ = "cash_drops"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False, index=True)
    session_id = db.Column(db.Integer, db.ForeignKey("pos_sessions.id"), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())


class POSSale(db.Model):
    """
    Sale header written by the POS transaction engine.

    Totals are computed from the per-batch lines at the time of sale and
    never recomputed.
    """
    __tablename__ = "pos_sales"
    __table_args__ = (
        db.Index("ix_pos_sales_tenant_created", "tenant_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False, index=True)
    location_type = db.Column(db.String(16), nullable=False)
    location_id = db.Column(db.Integer, nullable=False)
    session_id = db.Column(db.Integer, db.ForeignKey("pos_sessions.id"), nullable=True, index=True)

    # All amounts in cents
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_total_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_total_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    overall_discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.Integer, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_record(self) -> SaleRecord:
        return SaleRecord(
            id=self.id,
            tenant_id=self.tenant_id,
            location=make_location(self.location_type, self.location_id),
            session_id=self.session_id,
            subtotal_cents=self.subtotal_cents,
            tax_total_cents=self.tax_total_cents,
            discount_total_cents=self.discount_total_cents,
            shipping_fee_cents=self.shipping_fee_cents,
            overall_discount_cents=self.overall_discount_cents,
            total_cents=self.total_cents,
            created_by=self.created_by,
            created_at=self.created_at,
            lines=tuple(line.to_record() for line in sorted(self.lines, key=lambda l: l.id)),
        )


class POSSaleLine(db.Model):
    """
    One row per batch portion consumed by a cart line.

    WHY: Returns must credit stock back to the ORIGINAL batch and expiry,
    so the batch each unit came from is kept on the line.
    """
    __tablename__ = "pos_sale_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("pos_sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, nullable=False)
    variant_id = db.Column(db.Integer, nullable=True)

    batch_number = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    returned_quantity = db.Column(db.Integer, nullable=False, default=0)

    unit_price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    line_subtotal_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)

    movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    sale = db.relationship("POSSale", backref=db.backref("lines", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_record(self) -> SaleLineRecord:
        return SaleLineRecord(
            id=self.id,
            sale_id=self.sale_id,
            product_id=self.product_id,
            variant_id=self.variant_id,
            batch_number=self.batch_number,
            expiry_date=self.expiry_date,
            quantity=self.quantity,
            returned_quantity=self.returned_quantity,
            unit_price_cents=self.unit_price_cents,
            discount_cents=self.discount_cents,
            tax_rate_bps=self.tax_rate_bps,
            line_subtotal_cents=self.line_subtotal_cents,
            tax_cents=self.tax_cents,
            movement_id=self.movement_id,
        )


class SalesReturn(db.Model):
    """Customer return against a POS sale; stock comes back via RETURN movements."""
    __tablename__ = "sales_returns"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("pos_sales.id"), nullable=False, index=True)
    refund_cents = db.Column(db.Integer, nullable=False, default=0)
    reason = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_record(self) -> SalesReturnRecord:
        return SalesReturnRecord(
            id=self.id,
            tenant_id=self.tenant_id,
            sale_id=self.sale_id,
            refund_cents=self.refund_cents,
            reason=self.reason,
            created_by=self.created_by,
            created_at=self.created_at,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "sale_id": self.sale_id,
            "refund_cents": self.refund_cents,
            "reason": self.reason,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
