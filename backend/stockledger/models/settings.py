from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


class TenantSetting(db.Model):
    """
    Key-value overrides of engine thresholds for one tenant.

    Keys without a row fall back to the application config defaults.
    """
    __tablename__ = "tenant_settings"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "key", name="uq_tenant_settings_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False, index=True)

    key = db.Column(db.String(128), nullable=False)
    value = db.Column(db.Text, nullable=True)

    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "key": self.key,
            "value": self.value,
            "updated_at": to_utc_z(self.updated_at),
        }
