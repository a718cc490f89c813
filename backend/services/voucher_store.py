"""
Tally Sync Core - Voucher Store

Persistence for mirrored vouchers:
- Version-gated upsert keyed by Tally GUID (history + change log via ChangeTracker)
- Lifecycle transitions (type change, conversion, deletion) as soft updates
- Receipts and bill payment status
- Audit flag

Methods flush but never commit; the sync cycle that owns the session commits
once per batch.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from database.ledger_models import (
    HistoryChangeType, LifecycleStatus, PaymentStatus, ReceiptDB, VoucherDB,
)
from services.change_tracker import ChangeTracker, FieldChange, normalize_field
from services.lifecycle import Lifecycle
from tally.records import VoucherRecord

logger = logging.getLogger(__name__)

DEFAULT_SALES_TYPES = ["Sales", "Credit Sales", "Pending Sales Bill", "A Pto Bill"]
DEFAULT_RECEIPT_TYPES = ["Bank Receipt", "Counter Receipt", "Receipt", "Dashboard Receipt"]

PAYMENT_MODE_COLUMNS = {
    "cash_teller1": "pay_cash_teller1",
    "cash_teller2": "pay_cash_teller2",
    "cheque": "pay_cheque",
    "qr": "pay_qr",
    "discount": "pay_discount",
    "bank_deposit": "pay_bank_deposit",
    "esewa": "pay_esewa",
}


def voucher_direction(voucher_type: str, receipt_types: Iterable[str] = DEFAULT_RECEIPT_TYPES) -> str:
    """Money direction of a voucher, derived from its type only."""
    if voucher_type in set(receipt_types) or "receipt" in (voucher_type or "").lower():
        return "inflow"
    if "payment" in (voucher_type or "").lower():
        return "outflow"
    return "sale"


def voucher_values(record: VoucherRecord) -> Dict[str, Any]:
    """Column values for a voucher row built from a connector record."""
    values = {
        "tally_master_id": record.master_id,
        "alter_id": record.alter_id,
        "voucher_number": record.voucher_number or None,
        "voucher_type": record.voucher_type,
        "voucher_date": record.voucher_date,
        "party_name": record.party_name or None,
        "amount": round(abs(record.amount), 2),
        "narration": record.narration or None,
        "entry_time": record.entry_time or None,
        "udf_payment_total": round(abs(record.udf_payment_total), 2),
    }
    for mode, column in PAYMENT_MODE_COLUMNS.items():
        values[column] = round(getattr(record.payment_modes, mode), 2)
    return values


@dataclass
class UpsertOutcome:
    voucher: VoucherDB
    created: bool = False
    updated: bool = False
    version_number: Optional[int] = None
    changes: List[FieldChange] = field(default_factory=list)
    critical_reasons: List[str] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return not self.created and not self.updated


class VoucherStore:
    """Service for reading and writing mirrored vouchers."""

    def __init__(self, db: AsyncSession, tracker: Optional[ChangeTracker] = None):
        self.db = db
        self.tracker = tracker or ChangeTracker(db)

    # ==================== LOOKUPS ====================

    async def get_by_guid(self, tally_guid: str) -> Optional[VoucherDB]:
        result = await self.db.execute(select(VoucherDB).where(VoucherDB.tally_guid == tally_guid))
        return result.scalar_one_or_none()

    async def get_by_id(self, voucher_id: str) -> Optional[VoucherDB]:
        return await self.db.get(VoucherDB, voucher_id)

    async def active_vouchers(self, voucher_types: Optional[Iterable[str]] = None) -> List[VoucherDB]:
        query = select(VoucherDB).where(VoucherDB.lifecycle_status == LifecycleStatus.ACTIVE)
        if voucher_types:
            query = query.where(VoucherDB.voucher_type.in_(list(voucher_types)))
        result = await self.db.execute(query.order_by(VoucherDB.voucher_date, VoucherDB.alter_id))
        return list(result.scalars().all())

    async def conversion_candidates(self, voucher: VoucherDB, target_types: Iterable[str]) -> List[VoucherDB]:
        """Active same-party vouchers of a target type; final filtering is done by the lifecycle classifier."""
        query = select(VoucherDB).where(
            VoucherDB.lifecycle_status == LifecycleStatus.ACTIVE,
            VoucherDB.voucher_type.in_(list(target_types)),
            VoucherDB.tally_guid != voucher.tally_guid,
        )
        if voucher.party_name:
            query = query.where(VoucherDB.party_name == voucher.party_name)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ==================== UPSERT ====================

    async def upsert_voucher(self, record: VoucherRecord) -> UpsertOutcome:
        """
        Insert or update a voucher by GUID.

        An existing row is only touched when the incoming AlterID is strictly
        greater than the stored one; replaying the same version is a no-op.
        """
        values = voucher_values(record)
        existing = await self.get_by_guid(record.guid)

        if existing is None:
            reasons = self.tracker.initial_reasons(values)
            voucher = VoucherDB(
                tally_guid=record.guid,
                payment_status=PaymentStatus.PENDING,
                amount_received=0.0,
                lifecycle_status=LifecycleStatus.ACTIVE,
                critical_reasons=reasons,
                is_critical=bool(reasons),
                **values,
            )
            self.db.add(voucher)
            await self.db.flush()
            return UpsertOutcome(voucher=voucher, created=True, critical_reasons=reasons)

        if record.alter_id <= (existing.alter_id or 0):
            return UpsertOutcome(voucher=existing)

        if existing.lifecycle_status != LifecycleStatus.ACTIVE:
            # Reappeared in Tally with a newer version
            logger.warning(
                f"Voucher {record.guid} was {existing.lifecycle_status.value}; reactivating at AlterID {record.alter_id}"
            )
            values.update(
                lifecycle_status=LifecycleStatus.ACTIVE,
                converted_to_type=None,
                converted_to_guid=None,
                delete_reason=None,
            )

        tracked = await self.tracker.apply_update(existing, values)
        return UpsertOutcome(
            voucher=existing,
            updated=True,
            version_number=tracked.version_number,
            changes=tracked.changes,
            critical_reasons=tracked.critical_reasons,
        )

    async def upsert_vouchers(self, records: Iterable[VoucherRecord]) -> List[UpsertOutcome]:
        outcomes = []
        for record in records:
            outcomes.append(await self.upsert_voucher(record))
        return outcomes

    # ==================== LIFECYCLE ====================

    async def record_type_change(self, voucher: VoucherDB, new_type: str) -> None:
        """Tally re-typed a voucher in place (same GUID)."""
        if not new_type or new_type == voucher.voucher_type:
            return
        await self.tracker.snapshot(voucher, HistoryChangeType.TYPE_CHANGED)
        self.tracker.record_changes(
            voucher,
            [FieldChange("voucher_type", normalize_field("voucher_type", voucher.voucher_type), new_type)],
            voucher.alter_id, voucher.alter_id,
        )
        logger.info(f"Voucher {voucher.tally_guid} type changed: {voucher.voucher_type} -> {new_type}")
        voucher.voucher_type = new_type
        await self.db.flush()

    async def apply_lifecycle(self, voucher: VoucherDB, lifecycle: Lifecycle) -> bool:
        """
        Move an active voucher to a terminal lifecycle state.

        Returns False when the voucher was already in that state.
        """
        if lifecycle.status == voucher.lifecycle_status:
            return False

        if lifecycle.status == LifecycleStatus.CONVERTED:
            await self.tracker.snapshot(voucher, HistoryChangeType.CONVERTED)
            voucher.converted_to_type = lifecycle.target_type
            voucher.converted_to_guid = lifecycle.target_guid
            voucher.delete_reason = None
        elif lifecycle.status == LifecycleStatus.DELETED:
            await self.tracker.snapshot(voucher, HistoryChangeType.DELETED)
            voucher.delete_reason = lifecycle.reason
        else:
            voucher.converted_to_type = None
            voucher.converted_to_guid = None
            voucher.delete_reason = None

        self.tracker.record_changes(
            voucher,
            [FieldChange("lifecycle_status", voucher.lifecycle_status.value, lifecycle.status.value)],
            voucher.alter_id, voucher.alter_id,
        )
        voucher.lifecycle_status = lifecycle.status
        await self.db.flush()
        return True

    # ==================== AUDIT ====================

    async def mark_audited(self, tally_guid: str) -> Optional[VoucherDB]:
        """Human sign-off; clears a pending audited_edit flag."""
        voucher = await self.get_by_guid(tally_guid)
        if voucher is None:
            return None
        voucher.audit_status = "audited"
        reasons = [r for r in (voucher.critical_reasons or []) if r != "audited_edit"]
        voucher.critical_reasons = reasons
        voucher.is_critical = bool(reasons)
        await self.db.flush()
        return voucher

    # ==================== RECEIPTS / PAYMENT STATUS ====================

    async def add_receipt(
        self,
        bill: VoucherDB,
        amount: float,
        payment_mode: Optional[str] = None,
        tally_guid: Optional[str] = None,
    ) -> ReceiptDB:
        receipt = ReceiptDB(bill_id=bill.id, amount=round(abs(amount), 2), payment_mode=payment_mode, tally_guid=tally_guid)
        self.db.add(receipt)
        await self.db.flush()
        return receipt

    async def receipts_for(self, bill: VoucherDB) -> List[ReceiptDB]:
        result = await self.db.execute(
            select(ReceiptDB).where(ReceiptDB.bill_id == bill.id).order_by(ReceiptDB.received_at)
        )
        return list(result.scalars().all())

    async def recompute_payment_statuses(
        self,
        sales_types: Iterable[str] = DEFAULT_SALES_TYPES,
    ) -> List[Dict[str, Any]]:
        """
        Re-derive paid/partial/pending for every open bill from its receipts.

        Returns one entry per bill whose status changed.
        """
        totals_query = (
            select(ReceiptDB.bill_id, func.sum(ReceiptDB.amount))
            .group_by(ReceiptDB.bill_id)
        )
        totals = {bill_id: float(total or 0) for bill_id, total in (await self.db.execute(totals_query)).all()}

        bills_query = select(VoucherDB).where(
            VoucherDB.lifecycle_status == LifecycleStatus.ACTIVE,
            VoucherDB.voucher_type.in_(list(sales_types)),
            VoucherDB.payment_status != PaymentStatus.PAID,
        )
        bills = (await self.db.execute(bills_query)).scalars().all()

        changed = []
        for bill in bills:
            received = round(totals.get(bill.id, 0.0), 2)
            status = payment_status_for(bill.amount, received)
            bill.amount_received = received
            if status != bill.payment_status:
                changed.append({
                    "guid": bill.tally_guid,
                    "voucher_number": bill.voucher_number,
                    "party_name": bill.party_name,
                    "old_status": bill.payment_status.value,
                    "new_status": status.value,
                    "amount": bill.amount,
                    "amount_received": received,
                })
                bill.payment_status = status

        await self.db.flush()
        return changed


def payment_status_for(amount: float, received: float) -> PaymentStatus:
    if received > 0 and received >= round(abs(amount), 2):
        return PaymentStatus.PAID
    if received > 0:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PENDING
