# Overview: Wires repositories, collaborators and services into one StockEngine.

from __future__ import annotations

from typing import Optional

from flask import current_app

from .repos import Repositories
from .services.allocation_service import BatchAllocator
from .services.audit_service import SqlAuditLog
from .services.ledger_service import MovementLedger
from .services.pos_service import POSTransactionEngine
from .services.reconciliation_service import SessionReconciler
from .services.settings_service import NEAR_EXPIRY_DAYS, RECONCILIATION_TOLERANCE_CENTS, TenantSettings
from .services.side_effects import PostCommitEffects
from .services.stock_service import StockService
from .services.transfer_service import TransferWorkflow
from .time_utils import utcnow

ENGINE_EXTENSION_KEY = "stockledger.engine"


class OpenCatalog:
    """ProductCatalog used when no catalog is wired in: every product exists."""

    def exists(self, tenant_id: int, product_id: int, variant_id: Optional[int] = None) -> bool:
        return True

    def is_controlled(self, tenant_id: int, product_id: int) -> bool:
        return False


class AllowAllTenantLinks:
    """TenantRelationships used when no B2B directory is wired in."""

    def allows_transfer(self, source_tenant_id: int, destination_tenant_id: int) -> bool:
        return True


class StockEngine:
    """
    Entry point for callers.

    ledger      record_movement, get_movement, search_movements, verify_consistency
    stock       increment/adjust stock, thresholds, level reads, availability
    allocator   list_batches, plan, allocate
    transfers   create, approve, reject, cancel, delete, get, list
    pos         create_sale, create_return
    reconciler  reconcile, payments_breakdown
    settings    per-tenant thresholds
    """

    def __init__(
        self,
        repos: Repositories,
        *,
        audit_log,
        publisher=None,
        cache=None,
        catalog=None,
        tenant_links=None,
        clock=utcnow,
        defaults: Optional[dict] = None,
    ):
        self.repos = repos
        self.clock = clock
        self.catalog = catalog or OpenCatalog()
        self.tenant_links = tenant_links or AllowAllTenantLinks()
        self.effects = PostCommitEffects(audit_log=audit_log, publisher=publisher, cache=cache)

        self.settings = TenantSettings(repos, defaults)
        self.ledger = MovementLedger(repos, self.effects, clock)
        self.allocator = BatchAllocator(repos, self.effects, self.ledger, self.settings)
        self.stock = StockService(repos, self.effects, self.ledger, self.allocator)
        self.transfers = TransferWorkflow(
            repos, self.effects, self.ledger, self.allocator, self.catalog, self.tenant_links,
        )
        self.pos = POSTransactionEngine(repos, self.effects, self.ledger, self.allocator, self.catalog)
        self.reconciler = SessionReconciler(repos, self.settings, clock)


def config_defaults(config) -> dict:
    return {
        NEAR_EXPIRY_DAYS: int(config.get("NEAR_EXPIRY_DAYS", 30)),
        RECONCILIATION_TOLERANCE_CENTS: int(config.get("RECONCILIATION_TOLERANCE_CENTS", 0)),
    }


def build_sql_engine(config, **collaborators) -> StockEngine:
    from .repos.sql import build_sql_repositories

    attempts = int(config.get("DB_RETRY_ATTEMPTS", 3))
    return StockEngine(
        build_sql_repositories(attempts=attempts),
        audit_log=collaborators.pop("audit_log", None) or SqlAuditLog(attempts=attempts),
        defaults=config_defaults(config),
        **collaborators,
    )


def get_engine() -> StockEngine:
    """SQL-backed engine for the current app, built once per app."""
    app = current_app._get_current_object()
    engine = app.extensions.get(ENGINE_EXTENSION_KEY)
    if engine is None:
        engine = build_sql_engine(app.config)
        app.extensions[ENGINE_EXTENSION_KEY] = engine
    return engine
