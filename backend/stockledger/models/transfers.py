from __future__ import annotations

from ..extensions import db
from ..domain import TransferRecord, TRANSFER_STATUS_PENDING
from ..locations import make_location


class StockTransfer(db.Model):
    """
    Stock transfer between two locations, possibly across tenants.

    LIFECYCLE:
    1. PENDING: Requested, no stock has moved
    2. COMPLETED: Approved; TRANSFER_OUT at source and TRANSFER_IN at
       destination were written in the approval transaction
    3. REJECTED: Declined by the receiving side
    4. CANCELLED: Withdrawn by the requesting side

    IMMUTABLE: Terminal states never change; COMPLETED rows are never deleted
    because ledger rows reference them.
    """
    __tablename__ = "stock_transfers"
    __table_args__ = (
        db.Index("ix_stock_transfers_tenant_status", "tenant_id", "status"),
        db.Index("ix_stock_transfers_dest_tenant_status", "destination_tenant_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False, index=True)
    destination_tenant_id = db.Column(db.Integer, nullable=True)

    source_type = db.Column(db.String(16), nullable=False)
    source_id = db.Column(db.Integer, nullable=False)
    destination_type = db.Column(db.String(16), nullable=False)
    destination_id = db.Column(db.Integer, nullable=False)

    product_id = db.Column(db.Integer, nullable=False, index=True)
    variant_id = db.Column(db.Integer, nullable=True)
    quantity = db.Column(db.Integer, nullable=False)

    transfer_type = db.Column(db.String(16), nullable=False)  # INTRA_TENANT, CROSS_TENANT
    status = db.Column(db.String(16), nullable=False, default=TRANSFER_STATUS_PENDING, index=True)

    # Attribution
    requested_by = db.Column(db.Integer, nullable=False)
    approved_by = db.Column(db.Integer, nullable=True)
    rejected_by = db.Column(db.Integer, nullable=True)
    cancelled_by = db.Column(db.Integer, nullable=True)

    # Optional batch pin (controlled substances); otherwise FIFO at approval
    batch_number = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)

    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_record(self) -> TransferRecord:
        return TransferRecord(
            id=self.id,
            tenant_id=self.tenant_id,
            source=make_location(self.source_type, self.source_id),
            destination=make_location(self.destination_type, self.destination_id),
            destination_tenant_id=self.destination_tenant_id,
            product_id=self.product_id,
            variant_id=self.variant_id,
            quantity=self.quantity,
            transfer_type=self.transfer_type,
            status=self.status,
            requested_by=self.requested_by,
            approved_by=self.approved_by,
            rejected_by=self.rejected_by,
            cancelled_by=self.cancelled_by,
            batch_number=self.batch_number,
            expiry_date=self.expiry_date,
            notes=self.notes,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_dict(self) -> dict:
        return self.to_record().to_dict()
