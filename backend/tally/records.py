"""
Typed records produced by the Tally connector.

Everything the connector returns is one of these; amounts are plain floats
and dates are datetime.date, never raw XML text.
"""

from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Any, Dict, List, Optional


@dataclass
class PaymentModes:
    """
    Payment split across the seven collection ledgers.

    Field order matches the SFL1..SFL7 UDFs on Tally vouchers.
    """
    cash_teller1: float = 0.0
    cash_teller2: float = 0.0
    cheque: float = 0.0
    qr: float = 0.0
    discount: float = 0.0
    bank_deposit: float = 0.0
    esewa: float = 0.0

    @property
    def total(self) -> float:
        return round(sum(self.as_list()), 2)

    def as_list(self) -> List[float]:
        return [
            self.cash_teller1, self.cash_teller2, self.cheque, self.qr,
            self.discount, self.bank_deposit, self.esewa,
        ]

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class VoucherRecord:
    guid: str
    master_id: Optional[int]
    alter_id: int
    voucher_type: str
    voucher_number: str
    voucher_date: Optional[date]
    party_name: str
    amount: float                 # unsigned magnitude
    raw_amount: float             # as Tally printed it, sign included
    narration: str = ""
    created_date: Optional[date] = None
    altered_date: Optional[date] = None
    entry_time: str = ""
    udf_payment_total: float = 0.0
    payment_modes: PaymentModes = field(default_factory=PaymentModes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class VoucherIdentity:
    """Minimal voucher listing used by the full-reconciliation sweep."""
    guid: str
    master_id: Optional[int]
    voucher_type: str
    voucher_number: str


@dataclass
class StockItemRecord:
    name: str
    parent: str = ""
    base_units: str = ""
    opening_balance: float = 0.0
    closing_balance: float = 0.0
    closing_value: float = 0.0
    rate: float = 0.0
    alter_id: int = 0
    guid: str = ""


@dataclass
class LedgerRecord:
    name: str
    parent: str = ""
    closing_balance: float = 0.0
    address: str = ""
    state: str = ""
    gstin: str = ""
    alter_id: int = 0
    guid: str = ""


@dataclass
class BankVoucherRecord:
    """Voucher touching a given bank (or gateway) ledger."""
    guid: str
    master_id: Optional[int]
    voucher_type: str
    voucher_number: str
    voucher_date: Optional[date]
    party_name: str
    amount: float
    narration: str = ""


@dataclass
class ConnectionStatus:
    connected: bool
    companies: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class InvoiceLine:
    stock_item: str
    quantity: float
    rate: float
    unit: str = "Nos"
    godown: Optional[str] = None

    @property
    def amount(self) -> float:
        return round(abs(self.quantity) * abs(self.rate), 2)


@dataclass
class SalesInvoice:
    """Invoice pushed from the local workflow into Tally."""
    invoice_number: str
    invoice_date: date
    party_name: str
    lines: List[InvoiceLine] = field(default_factory=list)
    voucher_type: str = "Sales"
    sales_ledger: str = "Sales Account"
    narration: str = ""
    godown: str = "Main Location"
    total_amount: Optional[float] = None

    @property
    def total(self) -> float:
        if self.lines:
            return round(sum(line.amount for line in self.lines), 2)
        return round(self.total_amount or 0.0, 2)


@dataclass
class PendingBillPayment:
    """Payment recorded against a Pending Sales Bill."""
    master_id: Optional[int]
    guid: Optional[str]
    voucher_number: str
    party_name: str
    bill_amount: float
    payment: PaymentModes
    voucher_date: Optional[date] = None

    @property
    def target_voucher_type(self) -> str:
        """Fully paid bills become Sales, partially paid ones Credit Sales."""
        return "Sales" if self.payment.total >= self.bill_amount else "Credit Sales"


@dataclass
class ImportOutcome:
    """
    Counters parsed from a Tally import response.

    inferred is set when Tally sent no counters and a new last-voucher id
    is the only sign the write landed.
    """
    created: int = 0
    altered: int = 0
    errors: int = 0
    exceptions: int = 0
    voucher_id: Optional[str] = None
    error: Optional[str] = None
    inferred: bool = False

    @property
    def confirmed(self) -> bool:
        return self.error is None and (self.created > 0 or self.altered > 0)


@dataclass
class WriteAttempt:
    strategy: str
    success: bool
    error: Optional[str] = None


@dataclass
class WriteResult:
    """
    Outcome of a write to Tally.

    success is only True when Tally reported a created or altered count
    above zero. inferred marks a count read from the last-voucher id
    rather than from explicit counters.
    """
    success: bool
    operation: str
    method: Optional[str] = None
    created: int = 0
    altered: int = 0
    voucher_id: Optional[str] = None
    error: Optional[str] = None
    inferred: bool = False
    attempts: List[WriteAttempt] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
