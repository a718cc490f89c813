"""
Voucher lifecycle classification.

A voucher that disappears from Tally was either deleted or re-entered as a
different voucher type (a Pending Sales Bill that became a Sales invoice).
classify_missing_voucher is the single place that decides which.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from database.ledger_models import LifecycleStatus, VoucherDB

CONVERTIBLE_TYPES = ("Pending Sales Bill",)

DELETED_FROM_TALLY = "Deleted from Tally"


@dataclass(frozen=True)
class Lifecycle:
    """Active, Converted(target_type) or Deleted(reason)."""
    status: LifecycleStatus
    target_type: Optional[str] = None
    target_guid: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def active(cls) -> "Lifecycle":
        return cls(LifecycleStatus.ACTIVE)

    @classmethod
    def converted(cls, target_type: str, target_guid: Optional[str] = None) -> "Lifecycle":
        return cls(LifecycleStatus.CONVERTED, target_type=target_type, target_guid=target_guid)

    @classmethod
    def deleted(cls, reason: str = DELETED_FROM_TALLY) -> "Lifecycle":
        return cls(LifecycleStatus.DELETED, reason=reason)

    @property
    def is_terminal(self) -> bool:
        return self.status != LifecycleStatus.ACTIVE


def amounts_within(a: float, b: float, tolerance: float) -> bool:
    """True when b is within `tolerance` (a ratio) of a."""
    base = abs(a)
    if base == 0:
        return abs(b) == 0
    return abs(abs(b) - base) <= base * tolerance


def find_conversion_target(
    voucher: VoucherDB,
    candidates: Iterable[VoucherDB],
    allowed_target_types: Sequence[str],
    amount_tolerance: float = 0.05,
) -> Optional[VoucherDB]:
    """
    Newest active voucher that plausibly replaced `voucher`.

    Same party, amount within tolerance, an allowed type, dated on or after
    the original. Best effort: two same-party bills of similar value can be
    confused.
    """
    allowed = set(allowed_target_types)
    matches = [
        c for c in candidates
        if c.tally_guid != voucher.tally_guid
        and c.lifecycle_status == LifecycleStatus.ACTIVE
        and c.voucher_type in allowed
        and (c.party_name or "") == (voucher.party_name or "")
        and amounts_within(voucher.amount, c.amount, amount_tolerance)
        and (voucher.voucher_date is None or c.voucher_date is None or c.voucher_date >= voucher.voucher_date)
    ]
    if not matches:
        return None

    matches.sort(key=lambda c: (c.voucher_date is not None, c.voucher_date, c.alter_id or 0), reverse=True)
    return matches[0]


def classify_missing_voucher(
    voucher: VoucherDB,
    candidates: Iterable[VoucherDB],
    allowed_target_types: Sequence[str],
    amount_tolerance: float = 0.05,
    convertible_types: Sequence[str] = CONVERTIBLE_TYPES,
) -> Lifecycle:
    """Lifecycle for a locally active voucher absent from Tally's current listing."""
    if voucher.voucher_type in convertible_types:
        target = find_conversion_target(voucher, candidates, allowed_target_types, amount_tolerance)
        if target is not None:
            return Lifecycle.converted(target.voucher_type, target.tally_guid)
    return Lifecycle.deleted()
