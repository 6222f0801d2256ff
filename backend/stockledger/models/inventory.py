from __future__ import annotations

from ..extensions import db
from ..domain import MovementRecord, StockKey, StockLevelRecord
from ..locations import LOCATION_TYPES, make_location
from stockledger.time_utils import to_iso_date, to_utc_z

_LOCATION_TYPE_CHECK = "location_type IN ({})".format(", ".join(f"'{t}'" for t in LOCATION_TYPES))


class StockMovement(db.Model):
    """
    Append-only ledger of signed quantity changes.

    IMMUTABLE: Rows are never updated or deleted after creation.
    StockLevel.quantity is derived from SUM(quantity) per StockKey.

    BATCHES: Rows sharing (tenant, product, variant, location, batch_number)
    form a batch. The batch expiry is fixed by its first inbound row.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("quantity <> 0", name="ck_stock_movements_nonzero"),
        db.CheckConstraint(_LOCATION_TYPE_CHECK, name="ck_stock_movements_location_type"),
        db.Index(
            "ix_stock_movements_key_batch",
            "tenant_id", "product_id", "location_type", "location_id", "batch_number",
        ),
        db.Index("ix_stock_movements_tenant_created", "tenant_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False, index=True)
    product_id = db.Column(db.Integer, nullable=False)
    variant_id = db.Column(db.Integer, nullable=True)

    # Store XOR warehouse, encoded so neither/both is unrepresentable
    location_type = db.Column(db.String(16), nullable=False)
    location_id = db.Column(db.Integer, nullable=False)

    batch_number = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)

    # Signed: positive = into location, negative = out of location
    quantity = db.Column(db.Integer, nullable=False)
    movement_type = db.Column(db.String(32), nullable=False, index=True)

    reference = db.Column(db.String(128), nullable=True, index=True)
    cost_price_cents = db.Column(db.Integer, nullable=True)
    created_by = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_record(self) -> MovementRecord:
        return MovementRecord(
            id=self.id,
            tenant_id=self.tenant_id,
            product_id=self.product_id,
            variant_id=self.variant_id,
            location=make_location(self.location_type, self.location_id),
            batch_number=self.batch_number,
            expiry_date=self.expiry_date,
            quantity=self.quantity,
            movement_type=self.movement_type,
            reference=self.reference,
            cost_price_cents=self.cost_price_cents,
            created_by=self.created_by,
            created_at=self.created_at,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "location_type": self.location_type,
            "location_id": self.location_id,
            "batch_number": self.batch_number,
            "expiry_date": to_iso_date(self.expiry_date),
            "quantity": self.quantity,
            "movement_type": self.movement_type,
            "reference": self.reference,
            "cost_price_cents": self.cost_price_cents,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


class StockLevel(db.Model):
    """
    Materialized quantity on hand per StockKey.

    WHY: Reading SUM(quantity) over the ledger on every sale is too slow and
    gives concurrent sales nothing to lock. This row is the lock target.

    CRITICAL: quantity is only ever changed together with a StockMovement
    append in the same DB transaction.

    variant_key mirrors variant_id with 0 for "no variant" so the unique
    constraint holds (NULLs never collide in SQL unique indexes).
    """
    __tablename__ = "stock_levels"
    __table_args__ = (
        db.UniqueConstraint(
            "tenant_id", "product_id", "variant_key", "location_type", "location_id",
            name="uq_stock_levels_key",
        ),
        db.CheckConstraint(_LOCATION_TYPE_CHECK, name="ck_stock_levels_location_type"),
        db.Index("ix_stock_levels_tenant_location", "tenant_id", "location_type", "location_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False, index=True)
    product_id = db.Column(db.Integer, nullable=False)
    variant_id = db.Column(db.Integer, nullable=True)
    variant_key = db.Column(db.Integer, nullable=False, default=0)

    location_type = db.Column(db.String(16), nullable=False)
    location_id = db.Column(db.Integer, nullable=False)

    quantity = db.Column(db.Integer, nullable=False, default=0)

    # Replenishment thresholds (metadata only; never derived from the ledger)
    min_stock_level = db.Column(db.Integer, nullable=True)
    max_stock_level = db.Column(db.Integer, nullable=True)
    reorder_point = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def key(self) -> StockKey:
        return StockKey(
            tenant_id=self.tenant_id,
            product_id=self.product_id,
            location=make_location(self.location_type, self.location_id),
            variant_id=self.variant_id,
        )

    def to_record(self) -> StockLevelRecord:
        return StockLevelRecord(
            id=self.id,
            key=self.key,
            quantity=self.quantity,
            min_stock_level=self.min_stock_level,
            max_stock_level=self.max_stock_level,
            reorder_point=self.reorder_point,
            updated_at=self.updated_at,
        )

    def to_dict(self) -> dict:
        return self.to_record().to_dict()
