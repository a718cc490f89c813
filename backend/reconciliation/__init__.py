"""
Reconciliation Engine Module

Matches the Tally ledger against bank statements and payment-gateway
transactions:
- Bank statement vs bank ledger (1:1, date-gap confidence)
- Gateway daily batches vs bank settlement credits (T+/-1)
- Gateway transactions vs gateway ledger (1:1)
- Unmatched records persisted explicitly
- Manual matches preserved across runs
"""

from reconciliation.source_registry import (
    MatcherConfig,
    MatcherRegistry,
    ReconType,
    SourceType,
)
from reconciliation.matching_rules import (
    BankLedgerMatchingRules,
    BankRow,
    GatewayBankMatchingRules,
    GatewayLedgerMatchingRules,
    GatewayRow,
    LedgerRow,
    MatchDecision,
)
from reconciliation.services.reconciliation_service import (
    ReconciliationRunResult,
    ReconciliationService,
)

__all__ = [
    # Registry
    'MatcherConfig',
    'MatcherRegistry',
    'ReconType',
    'SourceType',
    # Matching Rules
    'BankLedgerMatchingRules',
    'GatewayBankMatchingRules',
    'GatewayLedgerMatchingRules',
    'BankRow',
    'GatewayRow',
    'LedgerRow',
    'MatchDecision',
    # Service
    'ReconciliationRunResult',
    'ReconciliationService',
]
