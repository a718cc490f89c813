"""
Tally Connector Package

XML-over-HTTP client for the Tally accounting engine:
- Throttled single-channel transport
- Shape-tolerant field decoding
- Incremental (AlterID cursor) and date-range reads
- Multi-strategy voucher writes
"""

from tally.client import TallyConnector
from tally.exceptions import TallyError, TallyConnectionError, TallyProtocolError
from tally.fields import FieldShape, FieldValue, decode_field
from tally.records import (
    BankVoucherRecord,
    ConnectionStatus,
    InvoiceLine,
    LedgerRecord,
    PaymentModes,
    PendingBillPayment,
    SalesInvoice,
    StockItemRecord,
    VoucherIdentity,
    VoucherRecord,
    WriteResult,
)

__all__ = [
    'TallyConnector',
    # Errors
    'TallyError',
    'TallyConnectionError',
    'TallyProtocolError',
    # Field decoding
    'FieldShape',
    'FieldValue',
    'decode_field',
    # Records
    'BankVoucherRecord',
    'ConnectionStatus',
    'InvoiceLine',
    'LedgerRecord',
    'PaymentModes',
    'PendingBillPayment',
    'SalesInvoice',
    'StockItemRecord',
    'VoucherIdentity',
    'VoucherRecord',
    'WriteResult',
]
