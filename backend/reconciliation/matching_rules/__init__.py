"""
Matching Rules Module
"""

from .base import BankRow, GatewayRow, LedgerRow, MatchDecision
from .bank_ledger_rules import BankLedgerMatchingRules
from .gateway_bank_rules import GatewayBankMatchingRules
from .gateway_ledger_rules import GatewayLedgerMatchingRules

__all__ = [
    "BankRow", "GatewayRow", "LedgerRow", "MatchDecision",
    "BankLedgerMatchingRules", "GatewayBankMatchingRules", "GatewayLedgerMatchingRules",
]
