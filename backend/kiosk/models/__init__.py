from .catalog import Product
from .inventory import StockAdjustment, InventorySnapshot, ImmutableRecordError
from .transactions import Transaction, TransactionItem
from .notifications import NotificationAttempt, NotificationDeliveryLog, AdminAlert
from .audit import AuditEvent
from .settings import SystemConfig

__all__ = [
    'Product',
    'StockAdjustment', 'InventorySnapshot', 'ImmutableRecordError',
    'Transaction', 'TransactionItem',
    'NotificationAttempt', 'NotificationDeliveryLog', 'AdminAlert',
    'AuditEvent',
    'SystemConfig',
]
