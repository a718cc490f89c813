"""
Voucher Change Tracker

Runs inside every upsert of a version-counted voucher:
- Snapshots the pre-mutation row into voucher_history (sequence per GUID)
- Diffs the tracked fields into voucher_change_log
- Re-derives the critical flag and its reason set

Critical reasons are recomputed on each mutation: a reason whose condition
no longer holds is dropped while the others are kept.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from database.ledger_models import (
    HistoryChangeType, VoucherChangeLogDB, VoucherDB, VoucherHistoryDB,
)

logger = logging.getLogger(__name__)

DEFAULT_TRACKED_FIELDS = [
    "voucher_number", "voucher_type", "voucher_date", "party_name",
    "amount", "narration", "udf_payment_total",
]

_MONEY_FIELDS = {"amount", "udf_payment_total", "amount_received"}


class CriticalReason(str, Enum):
    UDF_CHANGE = "udf_change"          # payment total edited to a value that doesn't match the bill
    AUDITED_EDIT = "audited_edit"      # altered in Tally after being marked audited
    POST_DATED = "post_dated"          # voucher date after the processing date


@dataclass
class FieldChange:
    field_name: str
    old_value: str
    new_value: str


@dataclass
class TrackedUpdate:
    """What one version-incrementing upsert did."""
    version_number: int
    old_alter_id: int
    new_alter_id: int
    changes: List[FieldChange] = field(default_factory=list)
    critical_reasons: List[str] = field(default_factory=list)


def _json_safe(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def snapshot_voucher(voucher: VoucherDB) -> Dict[str, Any]:
    """Full column snapshot of a voucher row."""
    mapper = inspect(VoucherDB)
    return {
        attr.key: _json_safe(getattr(voucher, attr.key))
        for attr in mapper.column_attrs
    }


def normalize_field(name: str, value: Any) -> str:
    """Comparable text form of a tracked field."""
    if value is None:
        return ""
    if name in _MONEY_FIELDS:
        return f"{abs(float(value)):.2f}"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value).strip()


def diff_tracked_fields(
    before: Dict[str, Any],
    after: Dict[str, Any],
    tracked_fields: Iterable[str],
) -> List[FieldChange]:
    changes = []
    for name in tracked_fields:
        if name not in after:
            continue
        old = normalize_field(name, before.get(name))
        new = normalize_field(name, after.get(name))
        if old != new:
            changes.append(FieldChange(field_name=name, old_value=old, new_value=new))
    return changes


def payment_reconciles(udf_payment_total: float, amount: float, tolerance: float) -> bool:
    return udf_payment_total > 0 and abs(udf_payment_total - abs(amount)) <= tolerance


def evaluate_critical_reasons(
    previous_reasons: Iterable[str],
    *,
    amount: float,
    new_udf: float,
    old_udf: Optional[float],
    voucher_date: Optional[date],
    today: date,
    audited_and_altered: bool = False,
    udf_tolerance: float = 1.0,
) -> List[str]:
    """
    Derive the critical reason set for a voucher about to be written.

    old_udf is None for a first insert; a payment total seen for the first
    time is not treated as a change.
    """
    reasons = [r for r in previous_reasons if r]

    def _set(reason: CriticalReason, active: bool):
        if active and reason.value not in reasons:
            reasons.append(reason.value)
        elif not active and reason.value in reasons:
            reasons.remove(reason.value)

    udf_changed = old_udf is not None and abs(new_udf - old_udf) > 0.005
    if new_udf <= 0 or payment_reconciles(new_udf, amount, udf_tolerance):
        _set(CriticalReason.UDF_CHANGE, False)
    elif udf_changed:
        _set(CriticalReason.UDF_CHANGE, True)

    if audited_and_altered:
        _set(CriticalReason.AUDITED_EDIT, True)

    _set(CriticalReason.POST_DATED, voucher_date is not None and voucher_date > today)

    return reasons


class ChangeTracker:
    """
    History, change log and criticality for voucher upserts.

    The tracker flushes but never commits; the caller owns the transaction.
    """

    def __init__(
        self,
        db: AsyncSession,
        tracked_fields: Optional[List[str]] = None,
        udf_tolerance: float = 1.0,
        today: Optional[Callable[[], date]] = None,
    ):
        self.db = db
        self.tracked_fields = tracked_fields or list(DEFAULT_TRACKED_FIELDS)
        self.udf_tolerance = udf_tolerance
        self._today = today or date.today

    def today(self) -> date:
        return self._today()

    async def next_version_number(self, tally_guid: str) -> int:
        result = await self.db.execute(
            select(func.max(VoucherHistoryDB.version_number))
            .where(VoucherHistoryDB.tally_guid == tally_guid)
        )
        return (result.scalar() or 0) + 1

    async def snapshot(
        self,
        voucher: VoucherDB,
        change_type: HistoryChangeType,
        new_alter_id: Optional[int] = None,
    ) -> VoucherHistoryDB:
        """Append an immutable copy of the voucher as it is right now."""
        history = VoucherHistoryDB(
            voucher_id=voucher.id,
            tally_guid=voucher.tally_guid,
            tally_master_id=voucher.tally_master_id,
            version_number=await self.next_version_number(voucher.tally_guid),
            old_alter_id=voucher.alter_id,
            new_alter_id=new_alter_id if new_alter_id is not None else voucher.alter_id,
            change_type=change_type,
            snapshot=snapshot_voucher(voucher),
        )
        self.db.add(history)
        await self.db.flush()
        return history

    def record_changes(
        self,
        voucher: VoucherDB,
        changes: List[FieldChange],
        old_alter_id: Optional[int],
        new_alter_id: Optional[int],
    ) -> None:
        for change in changes:
            self.db.add(VoucherChangeLogDB(
                voucher_id=voucher.id,
                tally_guid=voucher.tally_guid,
                old_alter_id=old_alter_id,
                new_alter_id=new_alter_id,
                field_name=change.field_name,
                old_value=change.old_value,
                new_value=change.new_value,
            ))

    def initial_reasons(self, values: Dict[str, Any]) -> List[str]:
        return evaluate_critical_reasons(
            [],
            amount=values.get("amount", 0.0),
            new_udf=values.get("udf_payment_total", 0.0),
            old_udf=None,
            voucher_date=values.get("voucher_date"),
            today=self.today(),
            udf_tolerance=self.udf_tolerance,
        )

    async def apply_update(self, voucher: VoucherDB, values: Dict[str, Any]) -> TrackedUpdate:
        """
        Snapshot, diff and overwrite `voucher` with `values`.

        Only call when the incoming alter_id is strictly greater than the stored one.
        """
        old_alter_id = voucher.alter_id
        new_alter_id = values["alter_id"]

        history = await self.snapshot(voucher, HistoryChangeType.MODIFIED, new_alter_id=new_alter_id)

        before = {name: getattr(voucher, name) for name in self.tracked_fields if hasattr(voucher, name)}
        changes = diff_tracked_fields(before, values, self.tracked_fields)
        self.record_changes(voucher, changes, old_alter_id, new_alter_id)

        reasons = evaluate_critical_reasons(
            voucher.critical_reasons or [],
            amount=values.get("amount", voucher.amount),
            new_udf=values.get("udf_payment_total", 0.0),
            old_udf=voucher.udf_payment_total or 0.0,
            voucher_date=values.get("voucher_date", voucher.voucher_date),
            today=self.today(),
            audited_and_altered=voucher.audit_status == "audited",
            udf_tolerance=self.udf_tolerance,
        )

        for name, value in values.items():
            setattr(voucher, name, value)
        voucher.critical_reasons = reasons
        voucher.is_critical = bool(reasons)

        await self.db.flush()

        if changes:
            logger.info(
                f"Voucher {voucher.tally_guid} v{history.version_number}: "
                + ", ".join(f"{c.field_name}: {c.old_value!r} -> {c.new_value!r}" for c in changes)
            )

        return TrackedUpdate(
            version_number=history.version_number,
            old_alter_id=old_alter_id,
            new_alter_id=new_alter_id,
            changes=changes,
            critical_reasons=reasons,
        )
