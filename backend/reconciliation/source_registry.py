"""
Reconciliation Matcher Registry

Central registry of the three pairwise matchers. The ledger, bank statement
and payment gateway share no common key, so each pair has its own matcher
with its own tolerances:

- BANK_LEDGER: bank statement rows against the Tally bank ledger (1:1)
- GATEWAY_BANK: daily gateway batches against bank settlement credits (N:1)
- GATEWAY_LEDGER: gateway transactions against the Tally gateway ledger (1:1)
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ReconType(str, Enum):
    BANK_LEDGER = "bank_ledger"
    GATEWAY_BANK = "gateway_bank"
    GATEWAY_LEDGER = "gateway_ledger"


class SourceType(str, Enum):
    """What a match row's source or target refers to."""
    BANK = "bank"
    GATEWAY = "gateway"
    GATEWAY_BATCH = "gateway_batch"   # comma-joined gateway transaction ids
    LEDGER = "ledger"


@dataclass
class MatcherConfig:
    """
    Tolerances for one matcher.

    confidence_by_day_gap maps an absolute day gap to a confidence; gaps
    not listed are not matchable. Matches below min_confidence are rejected.
    """
    recon_type: ReconType
    display_name: str
    source_type: SourceType
    target_type: SourceType
    amount_epsilon: float
    confidence_by_day_gap: Dict[int, float]
    min_confidence: float
    settlement_markers: List[str] = field(default_factory=list)
    day_offsets: Tuple[int, ...] = (0,)

    @property
    def max_day_gap(self) -> int:
        return max(self.confidence_by_day_gap)

    def confidence_for_gap(self, gap_days: int) -> Optional[float]:
        return self.confidence_by_day_gap.get(abs(gap_days))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recon_type": self.recon_type.value,
            "display_name": self.display_name,
            "source_type": self.source_type.value,
            "target_type": self.target_type.value,
            "amount_epsilon": self.amount_epsilon,
            "confidence_by_day_gap": self.confidence_by_day_gap,
            "min_confidence": self.min_confidence,
            "settlement_markers": self.settlement_markers,
            "day_offsets": list(self.day_offsets),
        }


class MatcherRegistry:
    """
    Matcher configurations keyed by ReconType.

    Defaults mirror the documented tolerances; from_settings() overrides the
    epsilons, day windows and settlement markers from configuration.
    """

    _default_configs: Dict[ReconType, MatcherConfig] = {
        ReconType.BANK_LEDGER: MatcherConfig(
            recon_type=ReconType.BANK_LEDGER,
            display_name="Bank statement vs Tally bank ledger",
            source_type=SourceType.BANK,
            target_type=SourceType.LEDGER,
            amount_epsilon=0.01,
            confidence_by_day_gap={0: 1.0, 1: 0.9, 2: 0.8},
            min_confidence=0.8,
        ),
        ReconType.GATEWAY_BANK: MatcherConfig(
            recon_type=ReconType.GATEWAY_BANK,
            display_name="Gateway batches vs bank settlements",
            source_type=SourceType.GATEWAY_BATCH,
            target_type=SourceType.BANK,
            amount_epsilon=1.0,
            confidence_by_day_gap={0: 1.0, 1: 0.85},
            min_confidence=0.85,
            settlement_markers=["FONEPAY", "ESEWASTLMT"],
            day_offsets=(0, -1, 1),
        ),
        ReconType.GATEWAY_LEDGER: MatcherConfig(
            recon_type=ReconType.GATEWAY_LEDGER,
            display_name="Gateway transactions vs Tally gateway ledger",
            source_type=SourceType.GATEWAY,
            target_type=SourceType.LEDGER,
            amount_epsilon=0.01,
            confidence_by_day_gap={0: 1.0, 1: 0.9},
            min_confidence=0.9,
        ),
    }

    def __init__(self, configs: Optional[Dict[ReconType, MatcherConfig]] = None):
        self._configs = dict(configs or {k: replace(v) for k, v in self._default_configs.items()})

    @classmethod
    def from_settings(cls, settings) -> "MatcherRegistry":
        registry = cls()
        bank = registry._configs[ReconType.BANK_LEDGER]
        registry._configs[ReconType.BANK_LEDGER] = replace(
            bank,
            amount_epsilon=settings.RECON_AMOUNT_EPSILON,
            confidence_by_day_gap={
                gap: conf for gap, conf in bank.confidence_by_day_gap.items()
                if gap <= settings.RECON_BANK_LEDGER_MAX_DAYS
            },
        )
        registry._configs[ReconType.GATEWAY_BANK] = replace(
            registry._configs[ReconType.GATEWAY_BANK],
            amount_epsilon=settings.RECON_BATCH_EPSILON,
            settlement_markers=settings.gateway_settlement_markers,
        )
        gateway = registry._configs[ReconType.GATEWAY_LEDGER]
        registry._configs[ReconType.GATEWAY_LEDGER] = replace(
            gateway,
            amount_epsilon=settings.RECON_AMOUNT_EPSILON,
            confidence_by_day_gap={
                gap: conf for gap, conf in gateway.confidence_by_day_gap.items()
                if gap <= settings.RECON_GATEWAY_LEDGER_MAX_DAYS
            },
        )
        return registry

    def get_config(self, recon_type: ReconType) -> MatcherConfig:
        return self._configs[ReconType(recon_type)]

    def get_all_configs(self) -> List[MatcherConfig]:
        return list(self._configs.values())

    def to_dict(self) -> Dict[str, Any]:
        return {recon_type.value: cfg.to_dict() for recon_type, cfg in self._configs.items()}
