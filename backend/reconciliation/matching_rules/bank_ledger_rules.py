"""
Bank statement vs Tally bank ledger.

For each bank row, candidate ledger vouchers are those whose amount agrees
within epsilon; the one with the smallest date gap wins if that gap has a
confidence (0/1/2 days -> 1.0/0.9/0.8). A matched ledger voucher leaves the
pool so it cannot be claimed twice.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from reconciliation.matching_rules.base import (
    BankRow, LedgerRow, MatchDecision, amounts_match, day_gap,
)
from reconciliation.source_registry import MatcherConfig

logger = logging.getLogger(__name__)


class BankLedgerMatchingRules:

    def __init__(self, config: MatcherConfig):
        self.config = config

    def best_candidate(self, bank: BankRow, pool: Sequence[LedgerRow]) -> Optional[Tuple[LedgerRow, float]]:
        best: Optional[Tuple[LedgerRow, float]] = None
        best_gap = None
        for ledger in pool:
            if not amounts_match(bank.signed_amount, ledger.amount, self.config.amount_epsilon):
                continue
            gap = day_gap(bank.transaction_date, ledger.voucher_date)
            confidence = self.config.confidence_for_gap(gap)
            if confidence is None or confidence < self.config.min_confidence:
                continue
            if best_gap is None or gap < best_gap:
                best, best_gap = (ledger, confidence), gap
        return best

    def match(self, bank_rows: Sequence[BankRow], ledger_rows: Sequence[LedgerRow]) -> List[MatchDecision]:
        pool = list(ledger_rows)
        decisions = []
        for bank in bank_rows:
            decision = MatchDecision(
                recon_type=self.config.recon_type,
                source_type=self.config.source_type,
                source_id=bank.id,
                source_date=bank.transaction_date,
                source_amount=bank.signed_amount,
                source_description=bank.description or None,
            )
            found = self.best_candidate(bank, pool)
            if found is not None:
                ledger, confidence = found
                pool.remove(ledger)
                decision.target_type = self.config.target_type
                decision.target_id = ledger.id
                decision.target_date = ledger.voucher_date
                decision.target_amount = ledger.amount
                decision.target_description = ledger.description or None
                decision.confidence = confidence
            decisions.append(decision)

        matched = sum(1 for d in decisions if d.matched)
        logger.debug(f"Bank/ledger: {matched} of {len(decisions)} bank rows matched")
        return decisions
