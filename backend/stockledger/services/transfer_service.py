# backend/stockledger/services/transfer_service.py
"""
Stock transfer workflow.

WHY: Move stock between two locations, possibly owned by different tenants,
behind an approval step. Stock only moves when a PENDING transfer is
approved, and then exactly once.

LIFECYCLE:
1. PENDING: Requested; nothing has moved, source stock is not checked
2. COMPLETED: Approved by the receiving tenant; TRANSFER_OUT at source and
   mirrored TRANSFER_IN at destination written in one transaction
3. REJECTED: Declined by the receiving tenant
4. CANCELLED: Withdrawn by the requesting tenant

AUTHORITY:
- Receiving tenant (destination tenant, or the tenant itself for
  intra-tenant transfers) approves and rejects.
- Requesting tenant cancels and deletes.
- Either party can read.
"""
from __future__ import annotations

from typing import Optional

from ..domain import (
    MOVEMENT_TRANSFER_IN,
    MOVEMENT_TRANSFER_OUT,
    TRANSFER_STATUS_CANCELLED,
    TRANSFER_STATUS_COMPLETED,
    TRANSFER_STATUS_PENDING,
    TRANSFER_STATUS_REJECTED,
    TRANSFER_TYPE_CROSS_TENANT,
    TRANSFER_TYPE_INTRA_TENANT,
    Page,
    StockKey,
    TransferRecord,
)
from ..errors import (
    CrossTenantNotPermitted,
    InvalidTransfer,
    ProductNotFound,
    TransferNotFound,
    TransferNotPending,
    TransferNotPermitted,
)
from ..time_utils import parse_iso_date
from .allocation_service import BatchAllocator
from .ledger_service import MovementLedger, normalize_batch_number
from .side_effects import TransactionalService, transfers_key

MAX_PAGE_SIZE = 100


def transfer_reference(transfer_id: int) -> str:
    return f"transfer:{transfer_id}"


class TransferWorkflow(TransactionalService):
    def __init__(self, repos, effects, ledger: MovementLedger, allocator: BatchAllocator,
                 catalog, tenant_links, clock=None):
        super().__init__(repos, effects, clock or ledger.clock)
        self.ledger = ledger
        self.allocator = allocator
        self.catalog = catalog
        self.tenant_links = tenant_links

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _visible(self, transfer: Optional[TransferRecord], transfer_id: int, tenant_id: int) -> TransferRecord:
        if transfer is None or tenant_id not in (transfer.tenant_id, transfer.destination_tenant_id):
            raise TransferNotFound(transfer_id)
        return transfer

    def _load_pending(self, transfer_id: int, tenant_id: int) -> TransferRecord:
        transfer = self._visible(self.repos.transfers.lock(transfer_id), transfer_id, tenant_id)
        if transfer.status != TRANSFER_STATUS_PENDING:
            raise TransferNotPending(transfer_id, transfer.status)
        return transfer

    def _check_link(self, transfer: TransferRecord) -> None:
        if transfer.transfer_type != TRANSFER_TYPE_CROSS_TENANT:
            return
        if not self.tenant_links.allows_transfer(transfer.tenant_id, transfer.destination_tenant_id):
            raise CrossTenantNotPermitted(transfer.tenant_id, transfer.destination_tenant_id)

    def _close(self, effects, transfer: TransferRecord, *, status: str, action: str,
               actor_id: int, event_name: str, **changes) -> TransferRecord:
        updated = self.repos.transfers.update(
            transfer.id, status=status, updated_at=self.clock(), **changes,
        )
        effects.audit_entry(
            action=action,
            entity_type="stock_transfer",
            entity_id=transfer.id,
            tenant_id=transfer.tenant_id,
            actor_id=actor_id,
            details={"from_status": transfer.status, "to_status": status},
        )
        effects.event(event_name, updated.to_dict())
        effects.invalidate(transfers_key(transfer.tenant_id), transfers_key(transfer.receiving_tenant_id))
        return updated

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    def create(
        self,
        tenant_id: int,
        *,
        source,
        destination,
        product_id: int,
        quantity: int,
        requested_by: int,
        variant_id: Optional[int] = None,
        destination_tenant_id: Optional[int] = None,
        batch_number: Optional[str] = None,
        expiry_date=None,
        notes: Optional[str] = None,
    ) -> TransferRecord:
        """
        Request a transfer (status: PENDING).

        Args:
            tenant_id: Requesting (source) tenant
            source: LocationRef stock leaves from
            destination: LocationRef stock arrives at
            product_id: Product to move
            quantity: Units to move, > 0
            requested_by: User requesting the transfer
            destination_tenant_id: Receiving tenant for cross-tenant transfers
            batch_number: Pin the transfer to one batch; FIFO otherwise

        Returns:
            TransferRecord: The PENDING transfer

        Raises:
            InvalidTransfer: Same source and destination stock key, bad
                quantity or variant, or a controlled product without a batch number
            ProductNotFound: Product unknown to the catalog
            CrossTenantNotPermitted: Tenants are not linked
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidTransfer("Quantity must be a positive integer")
        if destination_tenant_id == tenant_id:
            destination_tenant_id = None

        # Same location id under two tenants is two different stock keys
        try:
            source_key = StockKey(tenant_id, product_id, source, variant_id)
            destination_key = StockKey(destination_tenant_id or tenant_id, product_id, destination, variant_id)
        except ValueError as exc:
            raise InvalidTransfer(str(exc)) from exc
        if source_key == destination_key:
            raise InvalidTransfer("Source and destination must be different locations")
        transfer_type = TRANSFER_TYPE_CROSS_TENANT if destination_tenant_id else TRANSFER_TYPE_INTRA_TENANT

        if not self.catalog.exists(tenant_id, product_id, variant_id):
            raise ProductNotFound(tenant_id, product_id, variant_id)

        batch_number = normalize_batch_number(batch_number)
        if batch_number is None and self.catalog.is_controlled(tenant_id, product_id):
            raise InvalidTransfer("Batch number required for controlled substances")

        if transfer_type == TRANSFER_TYPE_CROSS_TENANT:
            if not self.tenant_links.allows_transfer(tenant_id, destination_tenant_id):
                raise CrossTenantNotPermitted(tenant_id, destination_tenant_id)

        expiry = parse_iso_date(expiry_date)

        def _op(effects):
            now = self.clock()
            transfer = self.repos.transfers.add(
                tenant_id=tenant_id,
                source=source,
                destination=destination,
                destination_tenant_id=destination_tenant_id,
                product_id=product_id,
                variant_id=variant_id,
                quantity=quantity,
                transfer_type=transfer_type,
                status=TRANSFER_STATUS_PENDING,
                requested_by=requested_by,
                batch_number=batch_number,
                expiry_date=expiry,
                notes=notes,
                created_at=now,
                updated_at=now,
            )
            effects.audit_entry(
                action="STOCK_TRANSFER_CREATED",
                entity_type="stock_transfer",
                entity_id=transfer.id,
                tenant_id=tenant_id,
                actor_id=requested_by,
                details={
                    "product_id": product_id,
                    "quantity": quantity,
                    "source": str(source),
                    "destination": str(destination),
                    "transfer_type": transfer_type,
                },
            )
            effects.event("transfer.created", transfer.to_dict())
            effects.invalidate(transfers_key(tenant_id), transfers_key(transfer.receiving_tenant_id))
            return transfer

        return self._transact(_op)

    def approve(self, transfer_id: int, tenant_id: int, approved_by: int) -> TransferRecord:
        """
        Approve a PENDING transfer and move the stock.

        Both StockLevel rows are locked in canonical key order before any
        batch is read. Insufficient stock aborts the whole approval and
        leaves the transfer PENDING.

        Raises:
            TransferNotFound, TransferNotPending, TransferNotPermitted,
            CrossTenantNotPermitted, InsufficientStock
        """
        def _op(effects):
            transfer = self._load_pending(transfer_id, tenant_id)
            if tenant_id != transfer.receiving_tenant_id:
                raise TransferNotPermitted("Only the receiving tenant can approve this transfer")
            self._check_link(transfer)

            source_key = transfer.source_key
            destination_key = transfer.destination_key
            self.repos.levels.lock([source_key, destination_key])

            reference = transfer_reference(transfer.id)
            if transfer.batch_number is not None:
                allocation = self.allocator.deduct_batch(
                    effects, source_key, transfer.batch_number, transfer.quantity,
                    MOVEMENT_TRANSFER_OUT, reference=reference, created_by=approved_by,
                )
            else:
                allocation = self.allocator.deduct(
                    effects, source_key, transfer.quantity, MOVEMENT_TRANSFER_OUT,
                    reference=reference, created_by=approved_by,
                )

            # Mirror each consumed portion so batch and expiry travel with the stock
            for portion in allocation.consumptions:
                self.ledger.append(
                    effects,
                    destination_key,
                    quantity=portion.quantity,
                    movement_type=MOVEMENT_TRANSFER_IN,
                    batch_number=portion.batch_number,
                    expiry_date=portion.expiry_date,
                    reference=reference,
                    created_by=approved_by,
                )

            return self._close(
                effects, transfer,
                status=TRANSFER_STATUS_COMPLETED,
                action="STOCK_TRANSFER_APPROVED",
                actor_id=approved_by,
                event_name="transfer.approved",
                approved_by=approved_by,
            )

        return self._transact(_op)

    def reject(self, transfer_id: int, tenant_id: int, rejected_by: int, notes: Optional[str] = None) -> TransferRecord:
        def _op(effects):
            transfer = self._load_pending(transfer_id, tenant_id)
            if tenant_id != transfer.receiving_tenant_id:
                raise TransferNotPermitted("Only the receiving tenant can reject this transfer")
            return self._close(
                effects, transfer,
                status=TRANSFER_STATUS_REJECTED,
                action="STOCK_TRANSFER_REJECTED",
                actor_id=rejected_by,
                event_name="transfer.rejected",
                rejected_by=rejected_by,
                notes=notes if notes is not None else transfer.notes,
            )

        return self._transact(_op)

    def cancel(self, transfer_id: int, tenant_id: int, cancelled_by: int, notes: Optional[str] = None) -> TransferRecord:
        def _op(effects):
            transfer = self._load_pending(transfer_id, tenant_id)
            if tenant_id != transfer.tenant_id:
                raise TransferNotPermitted("Only the requesting tenant can cancel this transfer")
            return self._close(
                effects, transfer,
                status=TRANSFER_STATUS_CANCELLED,
                action="STOCK_TRANSFER_CANCELLED",
                actor_id=cancelled_by,
                event_name="transfer.cancelled",
                cancelled_by=cancelled_by,
                notes=notes if notes is not None else transfer.notes,
            )

        return self._transact(_op)

    def delete(self, transfer_id: int, tenant_id: int, deleted_by: Optional[int] = None) -> None:
        """Delete a transfer that never completed. COMPLETED transfers are permanent."""
        def _op(effects):
            transfer = self._visible(self.repos.transfers.lock(transfer_id), transfer_id, tenant_id)
            if tenant_id != transfer.tenant_id:
                raise TransferNotPermitted("Only the requesting tenant can delete this transfer")
            if transfer.status == TRANSFER_STATUS_COMPLETED:
                raise TransferNotPermitted("Completed transfers cannot be deleted")
            self.repos.transfers.delete(transfer_id)

            effects.audit_entry(
                action="STOCK_TRANSFER_DELETED",
                entity_type="stock_transfer",
                entity_id=transfer.id,
                tenant_id=transfer.tenant_id,
                actor_id=deleted_by,
                details={"status": transfer.status},
            )
            effects.event("transfer.deleted", transfer.to_dict())
            effects.invalidate(transfers_key(transfer.tenant_id), transfers_key(transfer.receiving_tenant_id))

        self._transact(_op)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, transfer_id: int, tenant_id: int) -> TransferRecord:
        return self._visible(self.repos.transfers.get(transfer_id), transfer_id, tenant_id)

    def list(
        self,
        tenant_id: int,
        *,
        status: Optional[str] = None,
        product_id: Optional[int] = None,
        location=None,
        transfer_type: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page:
        page = max(1, int(page))
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        return self.repos.transfers.list(
            tenant_id,
            status=status,
            product_id=product_id,
            location=location,
            transfer_type=transfer_type,
            page=page,
            limit=limit,
        )
