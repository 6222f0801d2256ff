from .base import (
    MovementLedgerRepo,
    PaymentLedger,
    Repositories,
    SaleRepo,
    SessionDirectory,
    SettingsRepo,
    StockLevelRepo,
    TransferRepo,
    UnitOfWork,
)
from .memory import MemoryStore, build_memory_repositories

__all__ = [
    'MovementLedgerRepo', 'StockLevelRepo', 'TransferRepo', 'SaleRepo',
    'PaymentLedger', 'SessionDirectory', 'SettingsRepo', 'UnitOfWork',
    'Repositories',
    'MemoryStore', 'build_memory_repositories',
]
