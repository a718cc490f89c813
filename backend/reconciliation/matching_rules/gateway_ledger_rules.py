"""
Gateway transactions vs Tally gateway ledger.

Direct 1:1 match: amount within epsilon and at most one day apart
(confidence 1.0 same day, 0.9 next day). Matched ledger vouchers leave the
pool.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from reconciliation.matching_rules.base import (
    GatewayRow, LedgerRow, MatchDecision, amounts_match, day_gap,
)
from reconciliation.source_registry import MatcherConfig

logger = logging.getLogger(__name__)


class GatewayLedgerMatchingRules:

    def __init__(self, config: MatcherConfig):
        self.config = config

    def best_candidate(self, gateway: GatewayRow, pool: Sequence[LedgerRow]) -> Optional[Tuple[LedgerRow, float]]:
        best: Optional[Tuple[LedgerRow, float]] = None
        for ledger in pool:
            if not amounts_match(gateway.amount, ledger.amount, self.config.amount_epsilon):
                continue
            confidence = self.config.confidence_for_gap(day_gap(gateway.day, ledger.voucher_date))
            if confidence is None or confidence < self.config.min_confidence:
                continue
            if best is None or confidence > best[1]:
                best = (ledger, confidence)
        return best

    def match(self, gateway_rows: Sequence[GatewayRow], ledger_rows: Sequence[LedgerRow]) -> List[MatchDecision]:
        pool = list(ledger_rows)
        decisions = []
        for gateway in gateway_rows:
            decision = MatchDecision(
                recon_type=self.config.recon_type,
                source_type=self.config.source_type,
                source_id=gateway.id,
                source_date=gateway.day,
                source_amount=gateway.amount,
                source_description=gateway.description or None,
            )
            found = self.best_candidate(gateway, pool)
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

        logger.debug(f"Gateway/ledger: {sum(1 for d in decisions if d.matched)} of {len(decisions)} matched")
        return decisions
