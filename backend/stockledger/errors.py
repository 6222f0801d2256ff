# Overview: Typed errors raised by the stock engine services.

"""
Every mutating engine call either commits fully or raises exactly one of
these errors with nothing persisted. Errors carry the context callers need
to render a specific message (which product, where, how much).
"""
from __future__ import annotations


class StockEngineError(Exception):
    """Base class for stock engine errors."""
    pass


# =============================================================================
# LEDGER / STOCK LEVEL
# =============================================================================

class InvalidMovement(StockEngineError):
    """Raised for a zero quantity or an unrecognized movement type."""
    pass


class InsufficientStock(StockEngineError):
    """Raised when non-expired available stock cannot cover a deduction."""

    def __init__(self, key, requested: int, available: int, batch_number: str | None = None):
        self.key = key
        self.tenant_id = key.tenant_id
        self.product_id = key.product_id
        self.variant_id = key.variant_id
        self.location = key.location
        self.requested = requested
        self.available = available
        self.batch_number = batch_number
        scope = f" in batch {batch_number}" if batch_number else ""
        super().__init__(
            f"Insufficient stock for product {key.product_id} at {key.location}{scope}. "
            f"Available: {available}, requested: {requested}"
        )


class StockRecordNotFound(StockEngineError):
    """Raised when adjusting or deleting a StockLevel that does not exist."""

    def __init__(self, key):
        self.key = key
        super().__init__(f"No stock record for {key}")


class StockLevelNotEmpty(StockEngineError):
    """Raised when deleting a StockLevel that still holds quantity."""

    def __init__(self, key, quantity: int):
        self.key = key
        self.quantity = quantity
        super().__init__(f"Stock record for {key} still holds {quantity} units")


class ProductNotFound(StockEngineError):
    def __init__(self, tenant_id: int, product_id: int, variant_id: int | None = None):
        self.tenant_id = tenant_id
        self.product_id = product_id
        self.variant_id = variant_id
        suffix = f" (variant {variant_id})" if variant_id is not None else ""
        super().__init__(f"Product {product_id}{suffix} not found for tenant {tenant_id}")


# =============================================================================
# TRANSFERS
# =============================================================================

class TransferError(StockEngineError):
    """Raised when transfer operations fail."""
    pass


class TransferNotFound(TransferError):
    def __init__(self, transfer_id: int):
        self.transfer_id = transfer_id
        super().__init__(f"Transfer {transfer_id} not found")


class TransferNotPending(TransferError):
    def __init__(self, transfer_id: int, status: str):
        self.transfer_id = transfer_id
        self.status = status
        super().__init__(f"Transfer {transfer_id} is {status}, not PENDING")


class InvalidTransfer(TransferError):
    """Raised for malformed transfer requests (same location, bad quantity)."""
    pass


class TransferNotPermitted(TransferError):
    """Raised when the acting tenant is not the party allowed to take the action."""
    pass


class CrossTenantNotPermitted(TransferError):
    """Raised when two tenants lack the relationship a cross-tenant transfer needs."""

    def __init__(self, tenant_id: int, destination_tenant_id: int):
        self.tenant_id = tenant_id
        self.destination_tenant_id = destination_tenant_id
        super().__init__(
            f"Tenant {tenant_id} may not transfer stock to tenant {destination_tenant_id}"
        )


# =============================================================================
# POS
# =============================================================================

class SaleError(StockEngineError):
    """Raised for invalid sale or return requests."""
    pass


class SaleNotFound(SaleError):
    def __init__(self, sale_id: int):
        self.sale_id = sale_id
        super().__init__(f"Sale {sale_id} not found")


class ReturnQuantityExceeded(SaleError):
    def __init__(self, sale_id: int, product_id: int, requested: int, returnable: int):
        self.sale_id = sale_id
        self.product_id = product_id
        self.requested = requested
        self.returnable = returnable
        super().__init__(
            f"Cannot return {requested} of product {product_id} on sale {sale_id}; "
            f"only {returnable} returnable"
        )


class SessionError(StockEngineError):
    pass


class SessionNotFound(SessionError):
    def __init__(self, session_id: int):
        self.session_id = session_id
        super().__init__(f"POS session {session_id} not found")


class SessionClosed(SessionError):
    def __init__(self, session_id: int):
        self.session_id = session_id
        super().__init__(f"POS session {session_id} is closed")


# =============================================================================
# SETTINGS
# =============================================================================

class SettingsValidationError(StockEngineError, ValueError):
    pass
