# Overview: Persistence-agnostic records and constants shared by the engine services.

"""
Stock engine records.

Repositories hand these frozen dataclasses to the services instead of ORM
rows, so the same service code runs against SQLAlchemy and the in-memory
repositories.

Quantity invariant (authoritative):
- StockLevel.quantity == SUM(StockMovement.quantity) for the same StockKey,
  at every commit boundary. A missing StockLevel row counts as 0.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from .locations import LocationRef, location_sort_key
from .time_utils import to_iso_date, to_utc_z


# =============================================================================
# MOVEMENT TYPES
# =============================================================================

MOVEMENT_PURCHASE = "PURCHASE"
MOVEMENT_SALE = "SALE"
MOVEMENT_RETURN = "RETURN"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"
MOVEMENT_TRANSFER_IN = "TRANSFER_IN"
MOVEMENT_TRANSFER_OUT = "TRANSFER_OUT"
MOVEMENT_WASTAGE = "WASTAGE"
MOVEMENT_EXPIRE = "EXPIRE"
MOVEMENT_DAMAGE = "DAMAGE"
MOVEMENT_RECALL = "RECALL"
MOVEMENT_COMPOUNDING = "COMPOUNDING"
MOVEMENT_DONATION = "DONATION"
MOVEMENT_SAMPLES = "SAMPLES"

MOVEMENT_TYPES = frozenset({
    MOVEMENT_PURCHASE,
    MOVEMENT_SALE,
    MOVEMENT_RETURN,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_TRANSFER_IN,
    MOVEMENT_TRANSFER_OUT,
    MOVEMENT_WASTAGE,
    MOVEMENT_EXPIRE,
    MOVEMENT_DAMAGE,
    MOVEMENT_RECALL,
    MOVEMENT_COMPOUNDING,
    MOVEMENT_DONATION,
    MOVEMENT_SAMPLES,
})

# Types increment_stock() and a positive adjust_stock() delta may use
RECEIPT_TYPES = frozenset({
    MOVEMENT_PURCHASE,
    MOVEMENT_RETURN,
    MOVEMENT_ADJUSTMENT,
})

# Types an adjust_stock() write-off may use for a negative delta
WRITE_OFF_TYPES = frozenset({
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_WASTAGE,
    MOVEMENT_EXPIRE,
    MOVEMENT_DAMAGE,
    MOVEMENT_RECALL,
    MOVEMENT_COMPOUNDING,
    MOVEMENT_DONATION,
    MOVEMENT_SAMPLES,
})


# =============================================================================
# TRANSFER CONSTANTS
# =============================================================================

TRANSFER_STATUS_PENDING = "PENDING"
TRANSFER_STATUS_COMPLETED = "COMPLETED"
TRANSFER_STATUS_REJECTED = "REJECTED"
TRANSFER_STATUS_CANCELLED = "CANCELLED"
TRANSFER_TERMINAL_STATUSES = frozenset({
    TRANSFER_STATUS_COMPLETED,
    TRANSFER_STATUS_REJECTED,
    TRANSFER_STATUS_CANCELLED,
})

TRANSFER_TYPE_INTRA_TENANT = "INTRA_TENANT"
TRANSFER_TYPE_CROSS_TENANT = "CROSS_TENANT"


# =============================================================================
# PAYMENT CONSTANTS (read-only view of the payments module)
# =============================================================================

PAYMENT_METHOD_CASH = "CASH"
PAYMENT_STATUS_COMPLETED = "COMPLETED"

RECONCILIATION_OK = "OK"
RECONCILIATION_DISCREPANCY = "DISCREPANCY"


# =============================================================================
# RECORDS
# =============================================================================

@dataclass(frozen=True)
class StockKey:
    """Composite key of a StockLevel row and of its ledger sum."""
    tenant_id: int
    product_id: int
    location: LocationRef
    variant_id: Optional[int] = None

    def __post_init__(self):
        # 0 is the StockLevel.variant_key stand-in for "no variant"
        v = self.variant_id
        if v is not None and (isinstance(v, bool) or not isinstance(v, int) or v <= 0):
            raise ValueError(f"variant id must be a positive integer or None, got {v!r}")

    def sort_key(self) -> tuple:
        # Deterministic lock order: tenant, location, product, variant
        return (
            self.tenant_id,
            *location_sort_key(self.location),
            self.product_id,
            self.variant_id or 0,
        )

    def __str__(self) -> str:
        variant = f"/{self.variant_id}" if self.variant_id is not None else ""
        return f"tenant {self.tenant_id} product {self.product_id}{variant} @ {self.location}"


@dataclass(frozen=True)
class MovementRecord:
    id: int
    tenant_id: int
    product_id: int
    variant_id: Optional[int]
    location: LocationRef
    batch_number: Optional[str]
    expiry_date: Optional[date]
    quantity: int
    movement_type: str
    reference: Optional[str]
    cost_price_cents: Optional[int]
    created_by: Optional[int]
    created_at: datetime

    @property
    def key(self) -> StockKey:
        return StockKey(self.tenant_id, self.product_id, self.location, self.variant_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "location": str(self.location),
            "batch_number": self.batch_number,
            "expiry_date": to_iso_date(self.expiry_date),
            "quantity": self.quantity,
            "movement_type": self.movement_type,
            "reference": self.reference,
            "cost_price_cents": self.cost_price_cents,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


@dataclass(frozen=True)
class StockLevelRecord:
    id: int
    key: StockKey
    quantity: int
    min_stock_level: Optional[int] = None
    max_stock_level: Optional[int] = None
    reorder_point: Optional[int] = None
    updated_at: Optional[datetime] = None

    @property
    def low_stock_threshold(self) -> Optional[int]:
        return self.reorder_point if self.reorder_point is not None else self.min_stock_level

    @property
    def is_low(self) -> bool:
        if self.reorder_point is not None:
            return self.quantity <= self.reorder_point
        if self.min_stock_level is not None:
            return self.quantity < self.min_stock_level
        return False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.key.tenant_id,
            "product_id": self.key.product_id,
            "variant_id": self.key.variant_id,
            "location": str(self.key.location),
            "quantity": self.quantity,
            "min_stock_level": self.min_stock_level,
            "max_stock_level": self.max_stock_level,
            "reorder_point": self.reorder_point,
            "updated_at": to_utc_z(self.updated_at),
        }


@dataclass(frozen=True)
class Batch:
    """Derived view of the movements sharing one batch number at a key."""
    batch_number: Optional[str]
    expiry_date: Optional[date]
    remaining: int
    last_movement_at: datetime

    def is_expired(self, today: date) -> bool:
        return self.expiry_date is not None and self.expiry_date < today

    def is_near_expiry(self, today: date, threshold_days: int) -> bool:
        return self.expiry_date is not None and (self.expiry_date - today).days < threshold_days


@dataclass(frozen=True)
class BatchConsumption:
    batch_number: Optional[str]
    expiry_date: Optional[date]
    quantity: int
    near_expiry: bool = False

    def to_dict(self) -> dict:
        return {
            "batch_number": self.batch_number,
            "expiry_date": to_iso_date(self.expiry_date),
            "quantity": self.quantity,
            "near_expiry": self.near_expiry,
        }


@dataclass(frozen=True)
class Allocation:
    key: StockKey
    consumptions: tuple[BatchConsumption, ...]
    movements: tuple[MovementRecord, ...] = ()

    @property
    def quantity(self) -> int:
        return sum(c.quantity for c in self.consumptions)

    @property
    def warnings(self) -> list[str]:
        return [
            f"Batch {c.batch_number} of product {self.key.product_id} expires on "
            f"{c.expiry_date.isoformat()}"
            for c in self.consumptions
            if c.near_expiry
        ]


@dataclass(frozen=True)
class TransferRecord:
    id: int
    tenant_id: int
    source: LocationRef
    destination: LocationRef
    destination_tenant_id: Optional[int]
    product_id: int
    variant_id: Optional[int]
    quantity: int
    transfer_type: str
    status: str
    requested_by: int
    approved_by: Optional[int] = None
    rejected_by: Optional[int] = None
    cancelled_by: Optional[int] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[date] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def receiving_tenant_id(self) -> int:
        return self.destination_tenant_id or self.tenant_id

    @property
    def source_key(self) -> StockKey:
        return StockKey(self.tenant_id, self.product_id, self.source, self.variant_id)

    @property
    def destination_key(self) -> StockKey:
        return StockKey(self.receiving_tenant_id, self.product_id, self.destination, self.variant_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "source": str(self.source),
            "destination": str(self.destination),
            "destination_tenant_id": self.destination_tenant_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "transfer_type": self.transfer_type,
            "status": self.status,
            "requested_by": self.requested_by,
            "approved_by": self.approved_by,
            "rejected_by": self.rejected_by,
            "cancelled_by": self.cancelled_by,
            "batch_number": self.batch_number,
            "expiry_date": to_iso_date(self.expiry_date),
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


@dataclass(frozen=True)
class Page:
    items: list
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


@dataclass(frozen=True)
class SaleLineRecord:
    id: int
    sale_id: int
    product_id: int
    variant_id: Optional[int]
    batch_number: Optional[str]
    expiry_date: Optional[date]
    quantity: int
    returned_quantity: int
    unit_price_cents: int
    discount_cents: int
    tax_rate_bps: int
    line_subtotal_cents: int
    tax_cents: int
    movement_id: Optional[int] = None

    @property
    def returnable_quantity(self) -> int:
        return self.quantity - self.returned_quantity


@dataclass(frozen=True)
class SaleRecord:
    id: int
    tenant_id: int
    location: LocationRef
    session_id: Optional[int]
    subtotal_cents: int
    tax_total_cents: int
    discount_total_cents: int
    shipping_fee_cents: int
    overall_discount_cents: int
    total_cents: int
    created_by: Optional[int]
    created_at: Optional[datetime]
    lines: tuple[SaleLineRecord, ...] = ()
    warnings: tuple[str, ...] = field(default=(), compare=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "location": str(self.location),
            "session_id": self.session_id,
            "subtotal_cents": self.subtotal_cents,
            "tax_total_cents": self.tax_total_cents,
            "discount_total_cents": self.discount_total_cents,
            "shipping_fee_cents": self.shipping_fee_cents,
            "overall_discount_cents": self.overall_discount_cents,
            "total_cents": self.total_cents,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "lines": [
                {
                    "id": line.id,
                    "product_id": line.product_id,
                    "variant_id": line.variant_id,
                    "batch_number": line.batch_number,
                    "expiry_date": to_iso_date(line.expiry_date),
                    "quantity": line.quantity,
                    "returned_quantity": line.returned_quantity,
                    "unit_price_cents": line.unit_price_cents,
                    "discount_cents": line.discount_cents,
                    "tax_rate_bps": line.tax_rate_bps,
                    "line_subtotal_cents": line.line_subtotal_cents,
                    "tax_cents": line.tax_cents,
                }
                for line in self.lines
            ],
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class SalesReturnRecord:
    id: int
    tenant_id: int
    sale_id: int
    refund_cents: int
    reason: Optional[str]
    created_by: Optional[int]
    created_at: Optional[datetime]
    movements: tuple[MovementRecord, ...] = ()


@dataclass(frozen=True)
class SessionView:
    """Read-only view of a POS session owned by the POS-session module."""
    id: int
    tenant_id: int
    store_id: int
    user_id: int
    opening_balance_cents: int
    closing_balance_cents: Optional[int]
    is_open: bool
    opened_at: Optional[datetime]
    closed_at: Optional[datetime] = None


@dataclass(frozen=True)
class MethodTotal:
    """Completed payment sums for one payment method within a session."""
    method: str
    collected_cents: int
    refunded_cents: int

    @property
    def amount_cents(self) -> int:
        return self.collected_cents - self.refunded_cents
