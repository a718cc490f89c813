"""
Gateway batches vs bank settlement credits.

The gateway settles a whole day's transactions as one bank credit, usually
the same day or the next. Unmatched gateway transactions are grouped by
calendar day; each settlement credit (a credit whose description carries a
settlement marker) tries the batches for its own day, the day before and
the day after, in that order. A batch matches when its sum is within
epsilon of the credit and is then consumed.

Decisions come back as one row per matched batch, then one per leftover
gateway transaction, then one per unmatched settlement credit.
"""

import logging
from collections import OrderedDict
from datetime import date, timedelta
from typing import Dict, List, Sequence

from reconciliation.matching_rules.base import (
    BankRow, GatewayRow, MatchDecision, amounts_match,
)
from reconciliation.source_registry import MatcherConfig, SourceType

logger = logging.getLogger(__name__)


def group_by_day(rows: Sequence[GatewayRow]) -> "OrderedDict[date, List[GatewayRow]]":
    groups: "OrderedDict[date, List[GatewayRow]]" = OrderedDict()
    for row in sorted(rows, key=lambda r: (r.transaction_at, r.id)):
        groups.setdefault(row.day, []).append(row)
    return groups


class GatewayBankMatchingRules:

    def __init__(self, config: MatcherConfig):
        self.config = config

    def is_settlement(self, bank: BankRow) -> bool:
        if bank.credit <= 0:
            return False
        description = (bank.description or "").upper()
        return any(marker in description for marker in self.config.settlement_markers)

    def match(self, gateway_rows: Sequence[GatewayRow], bank_rows: Sequence[BankRow]) -> List[MatchDecision]:
        groups: Dict[date, List[GatewayRow]] = group_by_day(gateway_rows)
        settlements = [b for b in bank_rows if self.is_settlement(b)]

        decisions: List[MatchDecision] = []
        unmatched_credits: List[BankRow] = []

        for bank in sorted(settlements, key=lambda b: (b.transaction_date, b.id)):
            matched = False
            for offset in self.config.day_offsets:
                day = bank.transaction_date + timedelta(days=offset)
                batch = groups.get(day)
                if not batch:
                    continue
                total = round(sum(row.amount for row in batch), 2)
                if not amounts_match(total, bank.credit, self.config.amount_epsilon):
                    continue
                confidence = self.config.confidence_for_gap(offset)
                if confidence is None or confidence < self.config.min_confidence:
                    continue

                decisions.append(MatchDecision(
                    recon_type=self.config.recon_type,
                    source_type=SourceType.GATEWAY_BATCH,
                    source_id=",".join(row.id for row in batch),
                    source_date=day,
                    source_amount=total,
                    source_description=f"{len(batch)} gateway transactions on {day.isoformat()}",
                    target_type=self.config.target_type,
                    target_id=bank.id,
                    target_date=bank.transaction_date,
                    target_amount=bank.credit,
                    target_description=bank.description or None,
                    confidence=confidence,
                ))
                del groups[day]
                matched = True
                break

            if not matched:
                unmatched_credits.append(bank)

        for day, batch in groups.items():
            for row in batch:
                decisions.append(MatchDecision(
                    recon_type=self.config.recon_type,
                    source_type=SourceType.GATEWAY,
                    source_id=row.id,
                    source_date=day,
                    source_amount=row.amount,
                    source_description=row.description or None,
                ))

        for bank in unmatched_credits:
            decisions.append(MatchDecision(
                recon_type=self.config.recon_type,
                source_type=SourceType.BANK,
                source_id=bank.id,
                source_date=bank.transaction_date,
                source_amount=bank.credit,
                source_description=bank.description or None,
            ))

        logger.debug(
            f"Gateway/bank: {len(settlements) - len(unmatched_credits)} of {len(settlements)} settlements matched"
        )
        return decisions
