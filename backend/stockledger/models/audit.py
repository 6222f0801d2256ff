from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


class AuditEvent(db.Model):
    """
    Append-only audit trail of engine mutations.

    Written AFTER the business transaction commits, in its own commit, so an
    audit failure can never roll back stock.
    """
    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("ix_audit_events_tenant_occurred", "tenant_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False, index=True)

    # What happened (e.g., STOCK_TRANSFER_APPROVED, STOCK_MOVEMENT_RECORDED)
    action = db.Column(db.String(64), nullable=False, index=True)

    # What it refers to (generic pointer)
    entity_type = db.Column(db.String(64), nullable=False, index=True)
    entity_id = db.Column(db.Integer, nullable=False, index=True)

    actor_id = db.Column(db.Integer, nullable=True, index=True)

    # JSON-encoded details (keep small; do not denormalize domain state)
    details = db.Column(db.Text, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "details": self.details,
            "occurred_at": to_utc_z(self.occurred_at),
        }
