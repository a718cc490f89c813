from .connection import engine, AsyncSessionLocal, init_db, Base, build_engine, build_session_factory

# Import ledger mirror models to ensure they are registered with Base
from .ledger_models import (
    VoucherDB, VoucherHistoryDB, VoucherChangeLogDB, ReceiptDB,
    SyncStateDB, StockItemDB, PartyDB, PendingInvoiceDB,
    LedgerEntryDB, BankTransactionDB, GatewayTransactionDB, ReconciliationMatchDB,
    LifecycleStatus, PaymentStatus, SyncDomain, SyncStatus, HistoryChangeType,
    PendingInvoiceStatus, ReconMatchStatus
)

__all__ = [
    'engine', 'AsyncSessionLocal', 'init_db', 'Base',
    'build_engine', 'build_session_factory',
    # Voucher mirror
    'VoucherDB', 'VoucherHistoryDB', 'VoucherChangeLogDB', 'ReceiptDB',
    # Sync state and masters
    'SyncStateDB', 'StockItemDB', 'PartyDB', 'PendingInvoiceDB',
    # Reconciliation
    'LedgerEntryDB', 'BankTransactionDB', 'GatewayTransactionDB', 'ReconciliationMatchDB',
    # Enums
    'LifecycleStatus', 'PaymentStatus', 'SyncDomain', 'SyncStatus', 'HistoryChangeType',
    'PendingInvoiceStatus', 'ReconMatchStatus',
]
