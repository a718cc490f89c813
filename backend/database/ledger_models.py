"""
Tally Sync Core - Ledger Mirror Database Models

Local mirror of the Tally company plus the raw feeds reconciled against it.
Vouchers are never physically removed; every in-place mutation is preceded
by an immutable history snapshot.

Tables:
- vouchers: Mirrored vouchers (bills, receipts, ...) keyed by Tally GUID
- voucher_history: Append-only pre-mutation snapshots
- voucher_change_log: One row per changed tracked field per mutation
- receipts: Payments collected against bills
- sync_state: Per-domain AlterID cursor and status
- stock_items / parties: Master data
- pending_invoices: Outbound invoices awaiting push to Tally
- ledger_entries: Bank-ledger vouchers fetched for reconciliation
- bank_transactions / gateway_transactions: Bank statement and payment-gateway feeds
- reconciliation_matches: Confidence-scored match and unmatched records
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Text, Float, Boolean, Date, DateTime, Integer,
    ForeignKey, Index, UniqueConstraint, Enum as SQLEnum, JSON
)

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== ENUMS ====================

class LifecycleStatus(str, PyEnum):
    """Lifecycle of a mirrored voucher"""
    ACTIVE = "active"
    CONVERTED = "converted"    # Repurposed by Tally into another voucher type
    DELETED = "deleted"        # No longer present in Tally


class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class SyncDomain(str, PyEnum):
    """Sync domains that keep an AlterID cursor"""
    VOUCHERS = "vouchers"
    STOCK_ITEMS = "stock_items"
    PARTIES = "parties"


class SyncStatus(str, PyEnum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class HistoryChangeType(str, PyEnum):
    MODIFIED = "modified"
    TYPE_CHANGED = "type_changed"
    CONVERTED = "converted"
    DELETED = "deleted"


class PendingInvoiceStatus(str, PyEnum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class ReconMatchStatus(str, PyEnum):
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    MANUAL_MATCH = "manual_match"


# ==================== VOUCHERS ====================

class VoucherDB(Base):
    """
    Mirrored Tally voucher.

    amount is always the unsigned magnitude; debit/credit direction is
    derived from voucher_type.
    """
    __tablename__ = "vouchers"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    # Identity and version
    tally_guid = Column(String(100), nullable=False, unique=True)
    tally_master_id = Column(Integer, nullable=True, index=True)
    alter_id = Column(Integer, nullable=False, default=0)

    # Core fields
    voucher_number = Column(String(100), nullable=True)
    voucher_type = Column(String(100), nullable=False, index=True)
    voucher_date = Column(Date, nullable=True, index=True)
    party_name = Column(String(255), nullable=True, index=True)
    amount = Column(Float, nullable=False, default=0.0)
    narration = Column(Text, nullable=True)
    entry_time = Column(String(50), nullable=True)

    # Payment-mode sub-amounts (UDF fields on pending bills)
    udf_payment_total = Column(Float, nullable=False, default=0.0)
    pay_cash_teller1 = Column(Float, nullable=False, default=0.0)
    pay_cash_teller2 = Column(Float, nullable=False, default=0.0)
    pay_cheque = Column(Float, nullable=False, default=0.0)
    pay_qr = Column(Float, nullable=False, default=0.0)
    pay_discount = Column(Float, nullable=False, default=0.0)
    pay_bank_deposit = Column(Float, nullable=False, default=0.0)
    pay_esewa = Column(Float, nullable=False, default=0.0)

    # Collection workflow
    payment_status = Column(
        SQLEnum(PaymentStatus, name="payment_status_enum", create_constraint=False, native_enum=False),
        nullable=False,
        default=PaymentStatus.PENDING
    )
    amount_received = Column(Float, nullable=False, default=0.0)
    audit_status = Column(String(20), nullable=True)

    # Criticality (derived on every upsert)
    is_critical = Column(Boolean, nullable=False, default=False, index=True)
    critical_reasons = Column(JSON, nullable=False, default=list)

    # Lifecycle
    lifecycle_status = Column(
        SQLEnum(LifecycleStatus, name="lifecycle_status_enum", create_constraint=False, native_enum=False),
        nullable=False,
        default=LifecycleStatus.ACTIVE,
        index=True
    )
    converted_to_type = Column(String(100), nullable=True)
    converted_to_guid = Column(String(100), nullable=True)
    delete_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_vouchers_type_date", "voucher_type", "voucher_date"),
    )


class VoucherHistoryDB(Base):
    """
    Immutable pre-mutation snapshot of a voucher.

    version_number is sequential per tally_guid starting at 1.
    """
    __tablename__ = "voucher_history"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    voucher_id = Column(String(36), ForeignKey("vouchers.id", ondelete="CASCADE"), nullable=False, index=True)
    tally_guid = Column(String(100), nullable=False, index=True)
    tally_master_id = Column(Integer, nullable=True)
    version_number = Column(Integer, nullable=False)
    old_alter_id = Column(Integer, nullable=True)
    new_alter_id = Column(Integer, nullable=True)
    change_type = Column(
        SQLEnum(HistoryChangeType, name="history_change_type_enum", create_constraint=False, native_enum=False),
        nullable=False
    )
    snapshot = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)

    __table_args__ = (
        UniqueConstraint("tally_guid", "version_number", name="uq_voucher_history_version"),
    )


class VoucherChangeLogDB(Base):
    """One row per tracked field that differs between two versions."""
    __tablename__ = "voucher_change_log"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    voucher_id = Column(String(36), ForeignKey("vouchers.id", ondelete="CASCADE"), nullable=False, index=True)
    tally_guid = Column(String(100), nullable=False, index=True)
    old_alter_id = Column(Integer, nullable=True)
    new_alter_id = Column(Integer, nullable=True)
    field_name = Column(String(50), nullable=False)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    changed_at = Column(DateTime(timezone=True), default=utc_now, index=True)


class ReceiptDB(Base):
    """Payment collected locally against a bill."""
    __tablename__ = "receipts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    bill_id = Column(String(36), ForeignKey("vouchers.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    payment_mode = Column(String(30), nullable=True)
    tally_guid = Column(String(100), nullable=True)
    received_at = Column(DateTime(timezone=True), default=utc_now)


# ==================== SYNC STATE ====================

class SyncStateDB(Base):
    """High-water-mark AlterID per sync domain."""
    __tablename__ = "sync_state"

    domain = Column(
        SQLEnum(SyncDomain, name="sync_domain_enum", create_constraint=False, native_enum=False),
        primary_key=True
    )
    last_alter_id = Column(Integer, nullable=False, default=0)
    status = Column(
        SQLEnum(SyncStatus, name="sync_status_enum", create_constraint=False, native_enum=False),
        nullable=False,
        default=SyncStatus.IDLE
    )
    error_message = Column(Text, nullable=True)
    last_started_at = Column(DateTime(timezone=True), nullable=True)
    last_completed_at = Column(DateTime(timezone=True), nullable=True)


# ==================== MASTERS ====================

class StockItemDB(Base):
    __tablename__ = "stock_items"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False, unique=True)
    tally_guid = Column(String(100), nullable=True)
    parent = Column(String(255), nullable=True)
    base_units = Column(String(50), nullable=True)
    opening_balance = Column(Float, nullable=False, default=0.0)
    closing_balance = Column(Float, nullable=False, default=0.0)
    closing_value = Column(Float, nullable=False, default=0.0)
    rate = Column(Float, nullable=False, default=0.0)
    alter_id = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class PartyDB(Base):
    __tablename__ = "parties"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False, unique=True)
    tally_guid = Column(String(100), nullable=True)
    parent = Column(String(255), nullable=True)
    group_type = Column(String(20), nullable=False, default="debtor")
    closing_balance = Column(Float, nullable=False, default=0.0)
    address = Column(Text, nullable=True)
    state = Column(String(100), nullable=True)
    gstin = Column(String(50), nullable=True)
    alter_id = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class PendingInvoiceDB(Base):
    """Invoice created locally and pushed to Tally by the retry sync."""
    __tablename__ = "pending_invoices"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    invoice_number = Column(String(100), nullable=False, unique=True)
    invoice_date = Column(Date, nullable=False)
    party_name = Column(String(255), nullable=False)
    voucher_type = Column(String(100), nullable=False, default="Sales")
    items = Column(JSON, nullable=False, default=list)
    total_amount = Column(Float, nullable=False)
    narration = Column(Text, nullable=True)
    sales_ledger = Column(String(255), nullable=True)
    status = Column(
        SQLEnum(PendingInvoiceStatus, name="pending_invoice_status_enum", create_constraint=False, native_enum=False),
        nullable=False,
        default=PendingInvoiceStatus.PENDING,
        index=True
    )
    sync_attempts = Column(Integer, nullable=False, default=0)
    sync_error = Column(Text, nullable=True)
    tally_master_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    synced_at = Column(DateTime(timezone=True), nullable=True)


# ==================== RECONCILIATION SOURCES ====================

class LedgerEntryDB(Base):
    """Voucher touching a bank or gateway ledger in Tally."""
    __tablename__ = "ledger_entries"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    ledger_name = Column(String(255), nullable=False, index=True)
    tally_guid = Column(String(100), nullable=False)
    tally_master_id = Column(Integer, nullable=True)
    voucher_number = Column(String(100), nullable=True)
    voucher_type = Column(String(100), nullable=True)
    voucher_date = Column(Date, nullable=False, index=True)
    party_name = Column(String(255), nullable=True)
    amount = Column(Float, nullable=False, default=0.0)
    narration = Column(Text, nullable=True)
    fetched_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        UniqueConstraint("ledger_name", "tally_guid", name="uq_ledger_entry"),
    )


class BankTransactionDB(Base):
    """Bank statement row. Debits and credits are separate positive columns."""
    __tablename__ = "bank_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    transaction_id = Column(String(100), nullable=False, unique=True)
    transaction_date = Column(Date, nullable=False, index=True)
    value_date = Column(Date, nullable=True)
    description = Column(Text, nullable=True)
    reference_number = Column(String(100), nullable=True)
    debit = Column(Float, nullable=False, default=0.0)
    credit = Column(Float, nullable=False, default=0.0)
    balance = Column(Float, nullable=True)
    imported_at = Column(DateTime(timezone=True), default=utc_now)


class GatewayTransactionDB(Base):
    """Payment-gateway transaction, timestamped to the second."""
    __tablename__ = "gateway_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    transaction_id = Column(String(100), nullable=False, unique=True)
    transaction_at = Column(DateTime, nullable=False, index=True)
    description = Column(Text, nullable=True)
    amount = Column(Float, nullable=False, default=0.0)
    status = Column(String(30), nullable=True)
    issuer_name = Column(String(100), nullable=True)
    imported_at = Column(DateTime(timezone=True), default=utc_now)


class ReconciliationMatchDB(Base):
    """
    Outcome of a matcher for one source record (or gateway batch).

    Unmatched source records are stored with target fields empty and
    confidence 0 so gaps stay queryable.
    """
    __tablename__ = "reconciliation_matches"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    recon_type = Column(String(30), nullable=False, index=True)

    source_type = Column(String(30), nullable=False)
    source_id = Column(Text, nullable=False)
    source_date = Column(Date, nullable=True)
    source_amount = Column(Float, nullable=False, default=0.0)
    source_description = Column(Text, nullable=True)

    target_type = Column(String(30), nullable=True)
    target_id = Column(Text, nullable=True)
    target_date = Column(Date, nullable=True)
    target_amount = Column(Float, nullable=False, default=0.0)
    target_description = Column(Text, nullable=True)

    match_status = Column(
        SQLEnum(ReconMatchStatus, name="recon_match_status_enum", create_constraint=False, native_enum=False),
        nullable=False,
        index=True
    )
    match_confidence = Column(Float, nullable=False, default=0.0)
    matched_by = Column(String(50), nullable=False, default="system")
    matched_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index("ix_recon_matches_type_status", "recon_type", "match_status"),
    )
