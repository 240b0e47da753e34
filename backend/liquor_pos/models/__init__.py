from .catalog import Category, Product
from .auth import User, SessionToken
from .ledger import DailyStock
from .logs import StockMovement, StockAudit
from .reconciliation import StockReconciliation, ReconciliationItem, DocumentSequence
from .references import ReferenceKind, StockReference

__all__ = [
    'Category', 'Product',
    'User', 'SessionToken',
    'DailyStock',
    'StockMovement', 'StockAudit',
    'StockReconciliation', 'ReconciliationItem', 'DocumentSequence',
    'ReferenceKind', 'StockReference',
]
