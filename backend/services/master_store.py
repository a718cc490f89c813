"""
Master data persistence: stock items, parties and locally created
invoices waiting to be pushed to Tally.
"""

import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from database.ledger_models import (
    PartyDB, PendingInvoiceDB, PendingInvoiceStatus, StockItemDB, utc_now,
)
from tally.records import InvoiceLine, LedgerRecord, SalesInvoice, StockItemRecord

logger = logging.getLogger(__name__)


class MasterStore:

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== STOCK ITEMS ====================

    async def count_stock_items(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(StockItemDB))
        return result.scalar() or 0

    async def upsert_stock_items(self, items: Iterable[StockItemRecord]) -> int:
        seen: Dict[str, StockItemDB] = {}
        for item in items:
            existing = seen.get(item.name)
            if existing is None:
                existing = (await self.db.execute(
                    select(StockItemDB).where(StockItemDB.name == item.name)
                )).scalar_one_or_none()
            if existing is None:
                existing = StockItemDB(name=item.name)
                self.db.add(existing)
            seen[item.name] = existing
            existing.tally_guid = item.guid or existing.tally_guid
            existing.parent = item.parent or None
            existing.base_units = item.base_units or None
            existing.opening_balance = item.opening_balance
            existing.closing_balance = item.closing_balance
            existing.closing_value = item.closing_value
            existing.rate = item.rate
            existing.alter_id = item.alter_id
        await self.db.flush()
        return len(seen)

    # ==================== PARTIES ====================

    async def upsert_parties(self, ledgers: Iterable[LedgerRecord], group_type: str = "debtor") -> int:
        seen: Dict[str, PartyDB] = {}
        for ledger in ledgers:
            existing = seen.get(ledger.name)
            if existing is None:
                existing = (await self.db.execute(
                    select(PartyDB).where(PartyDB.name == ledger.name)
                )).scalar_one_or_none()
            if existing is None:
                existing = PartyDB(name=ledger.name)
                self.db.add(existing)
            seen[ledger.name] = existing
            existing.tally_guid = ledger.guid or existing.tally_guid
            existing.parent = ledger.parent or None
            existing.group_type = group_type
            existing.closing_balance = ledger.closing_balance
            existing.address = ledger.address or None
            existing.state = ledger.state or None
            existing.gstin = ledger.gstin or None
            existing.alter_id = ledger.alter_id
        await self.db.flush()
        return len(seen)

    # ==================== PENDING INVOICES ====================

    async def queue_invoice(
        self,
        invoice_number: str,
        invoice_date: date,
        party_name: str,
        items: List[Dict[str, Any]],
        voucher_type: str = "Sales",
        narration: Optional[str] = None,
        sales_ledger: Optional[str] = None,
    ) -> PendingInvoiceDB:
        total = round(sum(abs(float(i.get("quantity", 0))) * abs(float(i.get("rate", 0))) for i in items), 2)
        invoice = PendingInvoiceDB(
            invoice_number=invoice_number,
            invoice_date=invoice_date,
            party_name=party_name,
            voucher_type=voucher_type,
            items=items,
            total_amount=total,
            narration=narration,
            sales_ledger=sales_ledger,
            status=PendingInvoiceStatus.PENDING,
        )
        self.db.add(invoice)
        await self.db.flush()
        return invoice

    async def invoices_to_push(self, max_attempts: int = 5) -> List[PendingInvoiceDB]:
        result = await self.db.execute(
            select(PendingInvoiceDB)
            .where(
                or_(
                    PendingInvoiceDB.status == PendingInvoiceStatus.PENDING,
                    PendingInvoiceDB.status == PendingInvoiceStatus.FAILED,
                ),
                PendingInvoiceDB.sync_attempts < max_attempts,
            )
            .order_by(PendingInvoiceDB.created_at, PendingInvoiceDB.invoice_number)
        )
        return list(result.scalars().all())

    async def mark_invoice_synced(self, invoice: PendingInvoiceDB, voucher_id: Optional[str]) -> None:
        invoice.status = PendingInvoiceStatus.SYNCED
        invoice.sync_attempts = (invoice.sync_attempts or 0) + 1
        invoice.sync_error = None
        invoice.synced_at = utc_now()
        if voucher_id and str(voucher_id).isdigit():
            invoice.tally_master_id = int(voucher_id)
        await self.db.flush()

    async def mark_invoice_failed(self, invoice: PendingInvoiceDB, error: Optional[str]) -> None:
        invoice.status = PendingInvoiceStatus.FAILED
        invoice.sync_attempts = (invoice.sync_attempts or 0) + 1
        invoice.sync_error = error
        await self.db.flush()


def invoice_from_row(invoice: PendingInvoiceDB, default_sales_ledger: str = "Sales Account") -> SalesInvoice:
    lines = [
        InvoiceLine(
            stock_item=item["stock_item"],
            quantity=float(item.get("quantity", 0)),
            rate=float(item.get("rate", 0)),
            unit=item.get("unit") or "Nos",
            godown=item.get("godown"),
        )
        for item in (invoice.items or [])
    ]
    return SalesInvoice(
        invoice_number=invoice.invoice_number,
        invoice_date=invoice.invoice_date,
        party_name=invoice.party_name,
        lines=lines,
        voucher_type=invoice.voucher_type or "Sales",
        sales_ledger=invoice.sales_ledger or default_sales_ledger,
        narration=invoice.narration or "",
        total_amount=invoice.total_amount,
    )
