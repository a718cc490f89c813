"""
Tally Sync Orchestrator

Runs the sync cycles that keep the local mirror current:
- Incremental voucher sync (AlterID cursor)
- Master data sync: stock items, parties, pending bills, pending-invoice push
- Payment status recomputation
- Full identity sweep (type changes, conversions, deletions)
- Bank/gateway ledger fetch followed by reconciliation

Each sync domain is single-flight: a trigger that arrives while the same
domain is running gets an ALREADY_RUNNING result immediately and nothing
is queued. Timer and manual triggers share the same guard.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings
from database.ledger_models import LifecycleStatus, SyncDomain
from logging_config import set_sync_domain
from reconciliation.services.reconciliation_service import ReconciliationService
from sentry_integration import capture_sync_failure
from services.change_tracker import ChangeTracker
from services.feed_store import FeedStore
from services.lifecycle import classify_missing_voucher
from services.master_store import MasterStore, invoice_from_row
from services.sync_state import SyncStateRepository
from services.voucher_store import UpsertOutcome, VoucherStore
from sync.events import EventBus, SyncEvent
from tally.client import TallyConnector
from tally.records import ConnectionStatus, VoucherRecord

logger = logging.getLogger(__name__)

PARTY_GROUPS = (("Sundry Debtors", "debtor"), ("Sundry Creditors", "creditor"))


class SyncOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    ALREADY_RUNNING = "already_running"


@dataclass
class SyncResult:
    """Outcome of one sync cycle. Never raised; always returned."""
    domain: str
    success: bool
    status: SyncOutcome
    processed: int = 0
    created: int = 0
    updated: int = 0
    cursor_before: Optional[int] = None
    cursor_after: Optional[int] = None
    error: Optional[str] = None
    duration_ms: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def already_running(cls, domain: str) -> "SyncResult":
        return cls(domain=domain, success=False, status=SyncOutcome.ALREADY_RUNNING, error="Sync already in progress")

    @classmethod
    def failed(cls, domain: str, error: str, **kwargs) -> "SyncResult":
        return cls(domain=domain, success=False, status=SyncOutcome.FAILED, error=error, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class MasterSyncSummary:
    """One entry per master data step; a failed step does not stop the others."""
    steps: Dict[str, SyncResult] = field(default_factory=dict)
    status: SyncOutcome = SyncOutcome.COMPLETED

    @property
    def success(self) -> bool:
        return self.status == SyncOutcome.COMPLETED and all(r.success for r in self.steps.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status.value,
            "steps": {name: result.to_dict() for name, result in self.steps.items()},
        }


def voucher_event_payload(record: VoucherRecord) -> Dict[str, Any]:
    return {
        "guid": record.guid,
        "master_id": record.master_id,
        "alter_id": record.alter_id,
        "voucher_type": record.voucher_type,
        "voucher_number": record.voucher_number,
        "voucher_date": record.voucher_date.isoformat() if record.voucher_date else None,
        "party_name": record.party_name,
        "amount": record.amount,
        "narration": record.narration,
    }


class SyncOrchestrator:
    """
    Owns the Tally connector and drives every sync cycle.

    Construct one per process; the connector and session factory are
    passed in, nothing is module-global.
    """

    def __init__(
        self,
        connector: TallyConnector,
        session_factory: async_sessionmaker,
        settings: Settings,
        events: Optional[EventBus] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.connector = connector
        self.session_factory = session_factory
        self.settings = settings
        self.events = events or EventBus()
        self._today = today or date.today

        self._active: set = set()
        self._tasks: List[asyncio.Task] = []
        self.last_results: Dict[str, SyncResult] = {}

    # ==================== SINGLE-FLIGHT ====================

    def is_running(self, domain: str) -> bool:
        return domain in self._active

    async def _single_flight(self, domain: str, cycle: Callable[[], Awaitable[SyncResult]]) -> SyncResult:
        if domain in self._active:
            logger.info(f"{domain} sync already in progress; trigger rejected")
            return SyncResult.already_running(domain)

        self._active.add(domain)
        set_sync_domain(domain)
        started = time.monotonic()
        try:
            result = await cycle()
        finally:
            self._active.discard(domain)
            set_sync_domain(None)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        self.last_results[domain] = result
        return result

    def _tracker(self, db: AsyncSession) -> ChangeTracker:
        return ChangeTracker(
            db,
            tracked_fields=self.settings.tracked_fields,
            udf_tolerance=self.settings.CRITICAL_UDF_TOLERANCE,
            today=self._today,
        )

    async def _report_failure(self, domain: str, error: Exception, **context) -> SyncResult:
        logger.error(f"{domain} sync failed: {error}", extra={"event": "sync.cycle_failed", "domain": domain})
        capture_sync_failure(domain, error, **context)
        await self.events.emit(SyncEvent.SYNC_ERROR, {"domain": domain, "error": str(error)})
        return SyncResult.failed(domain, str(error), **context)

    async def _mark_domain_error(self, db: AsyncSession, domain: SyncDomain, error: Exception) -> None:
        """Persist Error status after a rollback. A database that is down stays reported through the result."""
        try:
            await SyncStateRepository(db).mark_error(domain, str(error))
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(f"Could not record {domain.value} error state: {e}")

    # ==================== LIFECYCLE ====================

    async def start(self) -> ConnectionStatus:
        """Check connectivity, run an initial master sync, then schedule timers."""
        status = await self.connector.check_connection()
        if status.connected:
            logger.info(f"Connected to Tally; companies: {', '.join(status.companies) or '(none reported)'}")
            await self.run_master_data_sync()
        else:
            logger.warning(f"Tally not reachable at startup: {status.error}; timers will keep retrying")

        self.start_continuous(self.settings.SYNC_INTERVAL_MS)
        return status

    def start_continuous(self, interval_ms: int) -> None:
        """Schedule repeating voucher sync and the slower master sync. 0 = manual only."""
        if interval_ms <= 0:
            logger.info("Sync interval is 0; running in manual mode")
            return
        if self._tasks:
            logger.warning("Continuous sync already scheduled")
            return

        self._tasks = [
            asyncio.create_task(
                self._repeat(self.run_incremental_voucher_sync, interval_ms / 1000.0, run_first=True),
                name="tally-voucher-sync",
            ),
            asyncio.create_task(
                self._repeat(self.run_master_data_sync, self.settings.MASTER_SYNC_INTERVAL_MS / 1000.0, run_first=False),
                name="tally-master-sync",
            ),
        ]
        logger.info(
            f"Continuous sync started (vouchers every {interval_ms}ms, "
            f"masters every {self.settings.MASTER_SYNC_INTERVAL_MS}ms)"
        )

    async def _repeat(self, cycle: Callable[[], Awaitable[Any]], interval: float, run_first: bool) -> None:
        if not run_first:
            await asyncio.sleep(interval)
        while True:
            try:
                await cycle()
            except Exception as e:
                logger.error(f"Scheduled sync error: {e}")
            await asyncio.sleep(interval)

    async def stop(self) -> None:
        """Cancel timers. A cycle already inside a transaction is cancelled with it."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Continuous sync stopped")

    @property
    def is_scheduled(self) -> bool:
        return bool(self._tasks)

    # ==================== VOUCHERS ====================

    async def run_incremental_voucher_sync(self) -> SyncResult:
        return await self._single_flight(SyncDomain.VOUCHERS.value, self._incremental_voucher_cycle)

    async def _incremental_voucher_cycle(self) -> SyncResult:
        domain = SyncDomain.VOUCHERS
        cursor = None
        async with self.session_factory() as db:
            state = SyncStateRepository(db)
            try:
                cursor = await state.get_cursor(domain)
                await state.mark_syncing(domain)
                await db.commit()
                logger.info(f"Incremental voucher sync from AlterID {cursor}", extra={"event": "sync.cycle_started"})

                records = await self.connector.get_vouchers_incremental(cursor)
                store = VoucherStore(db, self._tracker(db))
                outcomes = await store.upsert_vouchers(records)
                new_cursor = await state.advance_cursor(domain, max([cursor] + [r.alter_id for r in records]))
                await state.mark_idle(domain)
                await db.commit()
            except Exception as e:
                await db.rollback()
                await self._mark_domain_error(db, domain, e)
                return await self._report_failure(domain.value, e, cursor_before=cursor, cursor_after=cursor)

        result = SyncResult(
            domain=domain.value,
            success=True,
            status=SyncOutcome.COMPLETED,
            processed=len(records),
            created=sum(1 for o in outcomes if o.created),
            updated=sum(1 for o in outcomes if o.updated),
            cursor_before=cursor,
            cursor_after=new_cursor,
        )
        logger.info(
            f"Voucher sync done: {result.created} new, {result.updated} updated, cursor {cursor} -> {new_cursor}",
            extra={"event": "sync.cycle_completed", "domain": domain.value},
        )
        await self._emit_voucher_events(records, outcomes)
        await self.events.emit(SyncEvent.SYNC_UPDATE, result.to_dict())
        return result

    async def _emit_voucher_events(self, records: List[VoucherRecord], outcomes: List[UpsertOutcome]) -> None:
        """One notification per net-new voucher; updates to known vouchers are silent."""
        sales_types = set(self.settings.sales_voucher_types)
        receipt_types = set(self.settings.receipt_voucher_types)
        for record, outcome in zip(records, outcomes):
            if not outcome.created:
                continue
            payload = voucher_event_payload(record)
            if record.voucher_type in receipt_types:
                await self.events.emit(SyncEvent.RECEIPT_NEW, payload)
            elif record.voucher_type in sales_types:
                await self.events.emit(SyncEvent.BILL_NEW, payload)
                if record.amount >= self.settings.LARGE_BILL_THRESHOLD:
                    await self.events.emit(SyncEvent.BILL_LARGE, payload)
            else:
                await self.events.emit(SyncEvent.VOUCHER_NEW, payload)

    async def sync_date_range(self, from_date: date, to_date: date) -> SyncResult:
        """Backfill vouchers in a date range. The cursor is left alone."""
        async def _cycle() -> SyncResult:
            async with self.session_factory() as db:
                try:
                    records = await self.connector.get_vouchers(from_date, to_date)
                    store = VoucherStore(db, self._tracker(db))
                    outcomes = await store.upsert_vouchers(records)
                    await db.commit()
                except Exception as e:
                    await db.rollback()
                    return await self._report_failure(
                        SyncDomain.VOUCHERS.value, e,
                        details={"from_date": from_date.isoformat(), "to_date": to_date.isoformat()},
                    )
            await self._emit_voucher_events(records, outcomes)
            return SyncResult(
                domain=SyncDomain.VOUCHERS.value,
                success=True,
                status=SyncOutcome.COMPLETED,
                processed=len(records),
                created=sum(1 for o in outcomes if o.created),
                updated=sum(1 for o in outcomes if o.updated),
                details={"from_date": from_date.isoformat(), "to_date": to_date.isoformat()},
            )

        result = await self._single_flight(SyncDomain.VOUCHERS.value, _cycle)
        if result.success:
            status_result = await self.update_payment_statuses()
            result.details["payment_status_changes"] = status_result.updated
        return result

    async def run_full_reconciliation_sweep(self) -> SyncResult:
        """
        Compare every locally active voucher against Tally's complete listing.

        Present vouchers get type changes recorded; missing ones are
        classified as converted or deleted and soft-marked.
        """
        return await self._single_flight(SyncDomain.VOUCHERS.value, self._sweep_cycle)

    async def _sweep_cycle(self) -> SyncResult:
        domain = SyncDomain.VOUCHERS.value
        tracked_types = self.settings.sales_voucher_types + self.settings.receipt_voucher_types
        deleted: List[Dict[str, Any]] = []
        converted: List[Dict[str, Any]] = []
        type_changes = 0

        async with self.session_factory() as db:
            try:
                identities = await self.connector.get_all_voucher_guids(tracked_types)
                store = VoucherStore(db, self._tracker(db))
                local = await store.active_vouchers(tracked_types)

                if not identities and local:
                    raise RuntimeError(
                        f"Tally listed no vouchers; refusing to mark {len(local)} local vouchers deleted"
                    )

                remote = {identity.guid: identity for identity in identities}
                for voucher in local:
                    identity = remote.get(voucher.tally_guid)
                    if identity is not None:
                        if identity.voucher_type and identity.voucher_type != voucher.voucher_type:
                            await store.record_type_change(voucher, identity.voucher_type)
                            type_changes += 1
                        continue

                    candidates = await store.conversion_candidates(voucher, self.settings.conversion_target_types)
                    lifecycle = classify_missing_voucher(
                        voucher,
                        candidates,
                        self.settings.conversion_target_types,
                        self.settings.CONVERSION_AMOUNT_TOLERANCE,
                    )
                    if not await store.apply_lifecycle(voucher, lifecycle):
                        continue

                    entry = {
                        "guid": voucher.tally_guid,
                        "voucher_number": voucher.voucher_number,
                        "voucher_type": voucher.voucher_type,
                        "party_name": voucher.party_name,
                        "amount": voucher.amount,
                    }
                    if lifecycle.status == LifecycleStatus.CONVERTED:
                        entry.update(converted_to_type=lifecycle.target_type, converted_to_guid=lifecycle.target_guid)
                        converted.append(entry)
                    else:
                        entry["reason"] = lifecycle.reason
                        deleted.append(entry)

                await db.commit()
            except Exception as e:
                await db.rollback()
                return await self._report_failure(domain, e)

        logger.info(
            f"Full sweep: {len(identities)} in Tally, {type_changes} type changes, "
            f"{len(converted)} converted, {len(deleted)} deleted"
        )
        for entry in converted:
            await self.events.emit(SyncEvent.VOUCHER_CONVERTED, entry)
        if deleted:
            await self.events.emit(SyncEvent.VOUCHERS_DELETED, deleted)

        return SyncResult(
            domain=domain,
            success=True,
            status=SyncOutcome.COMPLETED,
            processed=len(identities),
            updated=type_changes + len(converted) + len(deleted),
            details={"type_changes": type_changes, "converted": len(converted), "deleted": len(deleted)},
        )

    # ==================== MASTER DATA ====================

    async def run_master_data_sync(self) -> MasterSyncSummary:
        """Stock, parties, pending bills and pending-invoice push, each independent."""
        if self.is_running("masters"):
            return MasterSyncSummary(status=SyncOutcome.ALREADY_RUNNING)

        self._active.add("masters")
        summary = MasterSyncSummary()
        try:
            steps = [
                ("stock_items", self.sync_stock_items),
                ("parties", self.sync_parties),
                ("pending_bills", self.sync_pending_bills),
                ("pending_invoices", self.sync_pending_invoices),
                ("payment_status", self.update_payment_statuses),
            ]
            for name, step in steps:
                try:
                    summary.steps[name] = await step()
                except Exception as e:
                    logger.error(f"Master sync step {name} crashed: {e}")
                    summary.steps[name] = SyncResult.failed(name, str(e))
        finally:
            self._active.discard("masters")

        logger.info(
            "Master sync: " + ", ".join(
                f"{name}={'ok' if r.success else r.status.value}" for name, r in summary.steps.items()
            )
        )
        return summary

    async def sync_stock_items(self) -> SyncResult:
        """Full fetch when nothing is stored yet, otherwise incremental from the cursor."""
        async def _cycle() -> SyncResult:
            domain = SyncDomain.STOCK_ITEMS
            cursor = None
            async with self.session_factory() as db:
                state = SyncStateRepository(db)
                masters = MasterStore(db)
                try:
                    cursor = await state.get_cursor(domain)
                    await state.mark_syncing(domain)
                    await db.commit()
                    full = cursor == 0 or await masters.count_stock_items() == 0
                    if full:
                        items = await self.connector.get_stock_items()
                    else:
                        items = await self.connector.get_stock_items_incremental(cursor)
                    count = await masters.upsert_stock_items(items)
                    new_cursor = await state.advance_cursor(domain, max([cursor] + [i.alter_id for i in items]))
                    await state.mark_idle(domain)
                    await db.commit()
                except Exception as e:
                    await db.rollback()
                    await self._mark_domain_error(db, domain, e)
                    return await self._report_failure(domain.value, e, cursor_before=cursor, cursor_after=cursor)

            return SyncResult(
                domain=domain.value, success=True, status=SyncOutcome.COMPLETED,
                processed=count, cursor_before=cursor, cursor_after=new_cursor,
                details={"mode": "full" if full else "incremental"},
            )

        return await self._single_flight(SyncDomain.STOCK_ITEMS.value, _cycle)

    async def sync_parties(self) -> SyncResult:
        async def _cycle() -> SyncResult:
            domain = SyncDomain.PARTIES
            cursor = None
            async with self.session_factory() as db:
                state = SyncStateRepository(db)
                masters = MasterStore(db)
                try:
                    cursor = await state.get_cursor(domain)
                    await state.mark_syncing(domain)
                    await db.commit()
                    counts = {}
                    max_alter_id = cursor
                    for parent_group, group_type in PARTY_GROUPS:
                        ledgers = await self.connector.get_ledgers(parent_group)
                        counts[group_type] = await masters.upsert_parties(ledgers, group_type)
                        max_alter_id = max([max_alter_id] + [l.alter_id for l in ledgers])
                    new_cursor = await state.advance_cursor(domain, max_alter_id)
                    await state.mark_idle(domain)
                    await db.commit()
                except Exception as e:
                    await db.rollback()
                    await self._mark_domain_error(db, domain, e)
                    return await self._report_failure(domain.value, e, cursor_before=cursor, cursor_after=cursor)

            return SyncResult(
                domain=domain.value, success=True, status=SyncOutcome.COMPLETED,
                processed=sum(counts.values()), cursor_before=cursor, cursor_after=new_cursor,
                details=counts,
            )

        return await self._single_flight(SyncDomain.PARTIES.value, _cycle)

    async def sync_pending_bills(self) -> SyncResult:
        async def _cycle() -> SyncResult:
            async with self.session_factory() as db:
                try:
                    records = await self.connector.get_pending_sales_bills()
                    store = VoucherStore(db, self._tracker(db))
                    outcomes = await store.upsert_vouchers(records)
                    await db.commit()
                except Exception as e:
                    await db.rollback()
                    return await self._report_failure("pending_bills", e)

            await self._emit_voucher_events(records, outcomes)
            return SyncResult(
                domain="pending_bills", success=True, status=SyncOutcome.COMPLETED,
                processed=len(records),
                created=sum(1 for o in outcomes if o.created),
                updated=sum(1 for o in outcomes if o.updated),
            )

        return await self._single_flight("pending_bills", _cycle)

    async def sync_pending_invoices(self) -> SyncResult:
        """
        Push locally created invoices to Tally.

        Each invoice's outcome is committed on its own so a later failure
        cannot cause an already accepted invoice to be pushed twice.
        """
        async def _cycle() -> SyncResult:
            synced = failed = 0
            async with self.session_factory() as db:
                masters = MasterStore(db)
                invoices = await masters.invoices_to_push(self.settings.PENDING_INVOICE_MAX_ATTEMPTS)
                for invoice in invoices:
                    result = await self.connector.create_sales_invoice(
                        invoice_from_row(invoice, self.settings.DEFAULT_SALES_LEDGER)
                    )
                    if result.success:
                        await masters.mark_invoice_synced(invoice, result.voucher_id)
                        synced += 1
                    else:
                        await masters.mark_invoice_failed(invoice, result.error)
                        failed += 1
                        logger.warning(f"Invoice {invoice.invoice_number} push failed: {result.error}")
                    await db.commit()

            return SyncResult(
                domain="pending_invoices", success=True, status=SyncOutcome.COMPLETED,
                processed=len(invoices), created=synced, details={"synced": synced, "failed": failed},
            )

        return await self._single_flight("pending_invoices", _cycle)

    # ==================== PAYMENT STATUS ====================

    async def update_payment_statuses(self) -> SyncResult:
        async def _cycle() -> SyncResult:
            async with self.session_factory() as db:
                try:
                    store = VoucherStore(db, self._tracker(db))
                    changed = await store.recompute_payment_statuses(self.settings.sales_voucher_types)
                    await db.commit()
                except Exception as e:
                    await db.rollback()
                    return await self._report_failure("payment_status", e)

            for change in changed:
                await self.events.emit(SyncEvent.BILL_STATUS_CHANGED, change)
            return SyncResult(
                domain="payment_status", success=True, status=SyncOutcome.COMPLETED,
                processed=len(changed), updated=len(changed),
            )

        return await self._single_flight("payment_status", _cycle)

    # ==================== RECONCILIATION ====================

    async def sync_ledger_entries(self, ledger_name: str, from_date: date, to_date: date) -> SyncResult:
        """Fetch vouchers posted to a bank or gateway ledger for reconciliation."""
        domain = f"ledger:{ledger_name}"

        async def _cycle() -> SyncResult:
            async with self.session_factory() as db:
                try:
                    records = await self.connector.get_bank_vouchers(ledger_name, from_date, to_date)
                    count = await FeedStore(db).upsert_ledger_entries(ledger_name, records)
                    await db.commit()
                except Exception as e:
                    await db.rollback()
                    return await self._report_failure(domain, e)
            return SyncResult(domain=domain, success=True, status=SyncOutcome.COMPLETED, processed=count)

        return await self._single_flight(domain, _cycle)

    async def run_reconciliation(self, from_date: Optional[date] = None, to_date: Optional[date] = None) -> SyncResult:
        """Refresh bank and gateway ledger entries, then run every matcher."""
        to_date = to_date or self._today()
        from_date = from_date or to_date - timedelta(days=self.settings.RECON_LOOKBACK_DAYS)

        fetches = {}
        for ledger_name in (self.settings.BANK_LEDGER_NAME, self.settings.GATEWAY_LEDGER_NAME):
            fetches[ledger_name] = await self.sync_ledger_entries(ledger_name, from_date, to_date)

        async def _cycle() -> SyncResult:
            async with self.session_factory() as db:
                try:
                    runs = await ReconciliationService(db, settings=self.settings).run_all(from_date, to_date)
                except Exception as e:
                    await db.rollback()
                    return await self._report_failure("reconciliation", e)

            details = {run.recon_type: run.to_dict() for run in runs}
            await self.events.emit(SyncEvent.RECONCILIATION_COMPLETED, details)
            return SyncResult(
                domain="reconciliation", success=True, status=SyncOutcome.COMPLETED,
                processed=sum(run.total_sources for run in runs),
                created=sum(run.matched for run in runs),
                details={
                    "runs": details,
                    "ledger_fetches": {name: r.success for name, r in fetches.items()},
                },
            )

        return await self._single_flight("reconciliation", _cycle)

    # ==================== STATUS ====================

    async def status(self) -> Dict[str, Any]:
        async with self.session_factory() as db:
            states = await SyncStateRepository(db).all_states()
        return {
            "scheduled": self.is_scheduled,
            "running": sorted(self._active),
            "domains": states,
            "last_results": {name: r.to_dict() for name, r in self.last_results.items()},
        }
