"""
Read-side queries over mirrored vouchers, their history and change log.

Returns plain dicts ready for JSON serialization.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from database.ledger_models import (
    LifecycleStatus, VoucherChangeLogDB, VoucherDB, VoucherHistoryDB,
)
from services.voucher_store import voucher_direction

logger = logging.getLogger(__name__)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def voucher_to_dict(voucher: VoucherDB) -> Dict[str, Any]:
    return {
        "id": voucher.id,
        "guid": voucher.tally_guid,
        "master_id": voucher.tally_master_id,
        "alter_id": voucher.alter_id,
        "voucher_number": voucher.voucher_number,
        "voucher_type": voucher.voucher_type,
        "direction": voucher_direction(voucher.voucher_type),
        "voucher_date": _iso(voucher.voucher_date),
        "party_name": voucher.party_name,
        "amount": voucher.amount,
        "narration": voucher.narration,
        "udf_payment_total": voucher.udf_payment_total,
        "payment_modes": {
            "cash_teller1": voucher.pay_cash_teller1,
            "cash_teller2": voucher.pay_cash_teller2,
            "cheque": voucher.pay_cheque,
            "qr": voucher.pay_qr,
            "discount": voucher.pay_discount,
            "bank_deposit": voucher.pay_bank_deposit,
            "esewa": voucher.pay_esewa,
        },
        "payment_status": voucher.payment_status.value if voucher.payment_status else None,
        "amount_received": voucher.amount_received,
        "audit_status": voucher.audit_status,
        "is_critical": voucher.is_critical,
        "critical_reasons": list(voucher.critical_reasons or []),
        "lifecycle_status": voucher.lifecycle_status.value,
        "converted_to_type": voucher.converted_to_type,
        "converted_to_guid": voucher.converted_to_guid,
        "delete_reason": voucher.delete_reason,
        "updated_at": _iso(voucher.updated_at),
    }


def history_to_dict(history: VoucherHistoryDB) -> Dict[str, Any]:
    return {
        "id": history.id,
        "guid": history.tally_guid,
        "version_number": history.version_number,
        "old_alter_id": history.old_alter_id,
        "new_alter_id": history.new_alter_id,
        "change_type": history.change_type.value,
        "snapshot": history.snapshot,
        "created_at": _iso(history.created_at),
    }


def change_to_dict(change: VoucherChangeLogDB) -> Dict[str, Any]:
    return {
        "guid": change.tally_guid,
        "old_alter_id": change.old_alter_id,
        "new_alter_id": change.new_alter_id,
        "field_name": change.field_name,
        "old_value": change.old_value,
        "new_value": change.new_value,
        "changed_at": _iso(change.changed_at),
    }


class VoucherQueryService:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_voucher(self, tally_guid: str) -> Optional[Dict[str, Any]]:
        result = await self.db.execute(select(VoucherDB).where(VoucherDB.tally_guid == tally_guid))
        voucher = result.scalar_one_or_none()
        return voucher_to_dict(voucher) if voucher else None

    async def list_vouchers(
        self,
        voucher_type: Optional[str] = None,
        lifecycle_status: Optional[LifecycleStatus] = LifecycleStatus.ACTIVE,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        query = select(VoucherDB)
        if voucher_type:
            query = query.where(VoucherDB.voucher_type == voucher_type)
        if lifecycle_status:
            query = query.where(VoucherDB.lifecycle_status == lifecycle_status)
        query = query.order_by(desc(VoucherDB.voucher_date), desc(VoucherDB.alter_id)).limit(limit).offset(offset)
        result = await self.db.execute(query)
        return [voucher_to_dict(v) for v in result.scalars().all()]

    async def get_history(self, tally_guid: str) -> List[Dict[str, Any]]:
        """Snapshots for one voucher, newest first."""
        result = await self.db.execute(
            select(VoucherHistoryDB)
            .where(VoucherHistoryDB.tally_guid == tally_guid)
            .order_by(desc(VoucherHistoryDB.version_number))
        )
        return [history_to_dict(h) for h in result.scalars().all()]

    async def get_change_log(self, tally_guid: str) -> List[Dict[str, Any]]:
        result = await self.db.execute(
            select(VoucherChangeLogDB)
            .where(VoucherChangeLogDB.tally_guid == tally_guid)
            .order_by(VoucherChangeLogDB.changed_at, VoucherChangeLogDB.field_name)
        )
        return [change_to_dict(c) for c in result.scalars().all()]

    async def recent_changes(self, limit: int = 50) -> List[Dict[str, Any]]:
        result = await self.db.execute(
            select(VoucherChangeLogDB).order_by(desc(VoucherChangeLogDB.changed_at)).limit(limit)
        )
        return [change_to_dict(c) for c in result.scalars().all()]

    async def critical_vouchers(self, limit: int = 100) -> List[Dict[str, Any]]:
        result = await self.db.execute(
            select(VoucherDB)
            .where(VoucherDB.is_critical.is_(True))
            .order_by(desc(VoucherDB.updated_at))
            .limit(limit)
        )
        return [voucher_to_dict(v) for v in result.scalars().all()]

    async def history_stats(self) -> Dict[str, int]:
        async def _count(query) -> int:
            return (await self.db.execute(query)).scalar() or 0

        return {
            "snapshots": await _count(select(func.count()).select_from(VoucherHistoryDB)),
            "changes": await _count(select(func.count()).select_from(VoucherChangeLogDB)),
            "vouchers_with_history": await _count(select(func.count(func.distinct(VoucherHistoryDB.tally_guid)))),
            "critical": await _count(select(func.count()).select_from(VoucherDB).where(VoucherDB.is_critical.is_(True))),
            "converted": await _count(
                select(func.count()).select_from(VoucherDB).where(VoucherDB.lifecycle_status == LifecycleStatus.CONVERTED)
            ),
            "deleted": await _count(
                select(func.count()).select_from(VoucherDB).where(VoucherDB.lifecycle_status == LifecycleStatus.DELETED)
            ),
        }
