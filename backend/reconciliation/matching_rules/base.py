"""
Row and decision types shared by the matchers.

Matchers are pure: they take plain rows and return MatchDecisions, one per
source record (or gateway batch), matched or not. Persistence happens in
the reconciliation service.
"""

from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any, Dict, Optional

from reconciliation.source_registry import ReconType, SourceType


@dataclass
class LedgerRow:
    """Tally voucher posted to a bank or gateway ledger."""
    id: str
    voucher_date: date
    amount: float
    description: str = ""


@dataclass
class BankRow:
    id: str
    transaction_date: date
    debit: float = 0.0
    credit: float = 0.0
    description: str = ""

    @property
    def signed_amount(self) -> float:
        """Credit if any, else the debit as a negative number."""
        return self.credit if self.credit > 0 else -self.debit


@dataclass
class GatewayRow:
    id: str
    transaction_at: datetime
    amount: float
    description: str = ""

    @property
    def day(self) -> date:
        return self.transaction_at.date()


@dataclass
class MatchDecision:
    recon_type: ReconType
    source_type: SourceType
    source_id: str
    source_date: Optional[date]
    source_amount: float
    source_description: Optional[str] = None
    target_type: Optional[SourceType] = None
    target_id: Optional[str] = None
    target_date: Optional[date] = None
    target_amount: float = 0.0
    target_description: Optional[str] = None
    confidence: float = 0.0

    @property
    def matched(self) -> bool:
        return self.target_id is not None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["recon_type"] = self.recon_type.value
        data["source_type"] = self.source_type.value
        data["target_type"] = self.target_type.value if self.target_type else None
        for key in ("source_date", "target_date"):
            data[key] = data[key].isoformat() if data[key] else None
        data["matched"] = self.matched
        return data


def amounts_match(a: float, b: float, epsilon: float) -> bool:
    return abs(abs(a) - abs(b)) < epsilon


def day_gap(a: date, b: date) -> int:
    return abs((a - b).days)
