from .inventory import StockMovement, StockLevel
from .transfers import StockTransfer
from .pos import POSSession, SessionPayment, CashDrop, POSSale, POSSaleLine, SalesReturn
from .settings import TenantSetting
from .audit import AuditEvent

__all__ = [
    'StockMovement', 'StockLevel',
    'StockTransfer',
    'POSSession', 'SessionPayment', 'CashDrop', 'POSSale', 'POSSaleLine', 'SalesReturn',
    'TenantSetting',
    'AuditEvent',
]
