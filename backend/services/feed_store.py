"""
Reconciliation inputs: Tally bank-ledger vouchers plus the bank statement
and payment-gateway feeds. All three are idempotent upserts keyed by their
external identifier.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from dateutil import parser as date_parser
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.ledger_models import BankTransactionDB, GatewayTransactionDB, LedgerEntryDB
from tally.records import BankVoucherRecord

logger = logging.getLogger(__name__)


@dataclass
class BankStatementRow:
    transaction_id: str
    transaction_date: date
    description: str = ""
    debit: float = 0.0
    credit: float = 0.0
    balance: Optional[float] = None
    reference_number: Optional[str] = None
    value_date: Optional[date] = None


@dataclass
class GatewayFeedRow:
    transaction_id: str
    transaction_at: datetime
    amount: float
    description: str = ""
    status: Optional[str] = None
    issuer_name: Optional[str] = None


def _parse_feed_text(text: str) -> datetime:
    """ISO 8601 first; anything else is read day-first, as bank statements print it."""
    text = text.strip()
    try:
        return date_parser.isoparse(text)
    except ValueError:
        return date_parser.parse(text, dayfirst=True)


def parse_feed_date(value) -> Optional[date]:
    """Statement dates arrive as date objects, ISO strings or day-first strings."""
    if value is None or (isinstance(value, date) and not isinstance(value, datetime)):
        return value
    if isinstance(value, datetime):
        return value.date()
    return _parse_feed_text(str(value)).date()


def parse_feed_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    return _parse_feed_text(str(value)).replace(tzinfo=None)


class FeedStore:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def upsert_ledger_entries(self, ledger_name: str, records: Iterable[BankVoucherRecord]) -> int:
        seen: Dict[str, LedgerEntryDB] = {}
        for record in records:
            if record.voucher_date is None:
                logger.warning(f"Skipping {ledger_name} voucher {record.guid} without a date")
                continue
            entry = seen.get(record.guid)
            if entry is None:
                entry = (await self.db.execute(
                    select(LedgerEntryDB).where(
                        LedgerEntryDB.ledger_name == ledger_name,
                        LedgerEntryDB.tally_guid == record.guid,
                    )
                )).scalar_one_or_none()
            if entry is None:
                entry = LedgerEntryDB(ledger_name=ledger_name, tally_guid=record.guid)
                self.db.add(entry)
            seen[record.guid] = entry
            entry.tally_master_id = record.master_id
            entry.voucher_number = record.voucher_number or None
            entry.voucher_type = record.voucher_type or None
            entry.voucher_date = record.voucher_date
            entry.party_name = record.party_name or None
            entry.amount = record.amount
            entry.narration = record.narration or None
        await self.db.flush()
        return len(seen)

    async def ingest_bank_transactions(self, rows: Iterable[BankStatementRow]) -> int:
        """Upsert statement rows; a repeated transaction id keeps the last row seen."""
        seen: Dict[str, BankTransactionDB] = {}
        for row in rows:
            txn = seen.get(row.transaction_id)
            if txn is None:
                txn = (await self.db.execute(
                    select(BankTransactionDB).where(BankTransactionDB.transaction_id == row.transaction_id)
                )).scalar_one_or_none()
            if txn is None:
                txn = BankTransactionDB(transaction_id=row.transaction_id)
                self.db.add(txn)
            seen[row.transaction_id] = txn
            txn.transaction_date = parse_feed_date(row.transaction_date)
            txn.value_date = parse_feed_date(row.value_date)
            txn.description = row.description or None
            txn.reference_number = row.reference_number
            txn.debit = abs(row.debit or 0.0)
            txn.credit = abs(row.credit or 0.0)
            txn.balance = row.balance
        await self.db.flush()
        return len(seen)

    async def ingest_gateway_transactions(self, rows: Iterable[GatewayFeedRow]) -> int:
        seen: Dict[str, GatewayTransactionDB] = {}
        for row in rows:
            txn = seen.get(row.transaction_id)
            if txn is None:
                txn = (await self.db.execute(
                    select(GatewayTransactionDB).where(GatewayTransactionDB.transaction_id == row.transaction_id)
                )).scalar_one_or_none()
            if txn is None:
                txn = GatewayTransactionDB(transaction_id=row.transaction_id)
                self.db.add(txn)
            seen[row.transaction_id] = txn
            txn.transaction_at = parse_feed_timestamp(row.transaction_at)
            txn.amount = abs(row.amount or 0.0)
            txn.description = row.description or None
            txn.status = row.status
            txn.issuer_name = row.issuer_name
        await self.db.flush()
        return len(seen)

    async def ledger_entries(
        self,
        ledger_name: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> List[LedgerEntryDB]:
        query = select(LedgerEntryDB).where(LedgerEntryDB.ledger_name == ledger_name)
        if from_date:
            query = query.where(LedgerEntryDB.voucher_date >= from_date)
        if to_date:
            query = query.where(LedgerEntryDB.voucher_date <= to_date)
        result = await self.db.execute(query.order_by(LedgerEntryDB.voucher_date, LedgerEntryDB.tally_guid))
        return list(result.scalars().all())

    async def bank_transactions(self, from_date: Optional[date] = None, to_date: Optional[date] = None) -> List[BankTransactionDB]:
        query = select(BankTransactionDB)
        if from_date:
            query = query.where(BankTransactionDB.transaction_date >= from_date)
        if to_date:
            query = query.where(BankTransactionDB.transaction_date <= to_date)
        result = await self.db.execute(query.order_by(BankTransactionDB.transaction_date, BankTransactionDB.transaction_id))
        return list(result.scalars().all())

    async def gateway_transactions(self, from_date: Optional[date] = None, to_date: Optional[date] = None) -> List[GatewayTransactionDB]:
        query = select(GatewayTransactionDB)
        if from_date:
            query = query.where(GatewayTransactionDB.transaction_at >= datetime.combine(from_date, datetime.min.time()))
        if to_date:
            query = query.where(GatewayTransactionDB.transaction_at <= datetime.combine(to_date, datetime.max.time()))
        result = await self.db.execute(query.order_by(GatewayTransactionDB.transaction_at, GatewayTransactionDB.transaction_id))
        return list(result.scalars().all())
