"""
Unit Tests for the sync orchestrator

Tests:
- Single-flight per domain (overlapping triggers rejected, nothing queued)
- Cursor monotonicity and transactional advance
- Event emission for net-new vouchers only
- Payment status recomputed after backfill and master sync
- Error status on failed cycles
- Master sync step isolation and pending invoice push
- Full sweep conversion and deletion
- Event bus delivery

Run with: pytest tests/test_sync_orchestrator.py -v
"""

import asyncio
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from database.ledger_models import (
    LifecycleStatus, PartyDB, StockItemDB, SyncDomain, SyncStatus, VoucherDB,
)
from services.master_store import MasterStore
from services.sync_state import SyncStateRepository
from services.voucher_store import VoucherStore
from sync.events import EventBus, SyncEvent
from sync.orchestrator import SyncOrchestrator, SyncOutcome
from tally.client import TallyConnector
from tally.exceptions import TallyConnectionError
from tally.records import (
    ConnectionStatus, LedgerRecord, StockItemRecord, VoucherIdentity, VoucherRecord, WriteResult,
)

TODAY = date(2024, 4, 15)


def _voucher(guid, alter_id, voucher_type="Sales", amount=1000.0, party="Ram Traders",
             voucher_date=date(2024, 4, 10)):
    return VoucherRecord(
        guid=guid,
        master_id=alter_id,
        alter_id=alter_id,
        voucher_type=voucher_type,
        voucher_number=f"V-{alter_id}",
        voucher_date=voucher_date,
        party_name=party,
        amount=amount,
        raw_amount=-amount,
    )


@pytest.fixture
def connector():
    connector = MagicMock(spec=TallyConnector)
    connector.check_connection.return_value = ConnectionStatus(connected=True, companies=["Demo Co"])
    connector.get_vouchers_incremental.return_value = []
    connector.get_stock_items.return_value = []
    connector.get_stock_items_incremental.return_value = []
    connector.get_ledgers.return_value = []
    connector.get_pending_sales_bills.return_value = []
    connector.get_all_voucher_guids.return_value = []
    connector.get_bank_vouchers.return_value = []
    return connector


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def received(bus):
    events = []
    bus.subscribe(SyncEvent.ALL, lambda event, payload: events.append((event, payload)))
    return events


@pytest.fixture
def orchestrator(connector, session_factory, settings, bus):
    return SyncOrchestrator(connector, session_factory, settings, events=bus, today=lambda: TODAY)


async def _cursor(session_factory, domain=SyncDomain.VOUCHERS):
    async with session_factory() as db:
        return await SyncStateRepository(db).get(domain)


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_overlapping_trigger_is_rejected(self, orchestrator, connector, session_factory):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_fetch(cursor, voucher_types=None):
            started.set()
            await release.wait()
            return [_voucher("g-1", 101)]

        connector.get_vouchers_incremental.side_effect = slow_fetch

        first = asyncio.create_task(orchestrator.run_incremental_voucher_sync())
        await started.wait()

        second = await orchestrator.run_incremental_voucher_sync()
        assert second.status == SyncOutcome.ALREADY_RUNNING
        assert second.error == "Sync already in progress"
        assert not second.success

        release.set()
        result = await first

        assert result.success
        assert connector.get_vouchers_incremental.await_count == 1
        assert (await _cursor(session_factory)).last_alter_id == 101
        assert not orchestrator.is_running("vouchers")

    @pytest.mark.asyncio
    async def test_sweep_shares_voucher_domain(self, orchestrator, connector):
        release = asyncio.Event()

        async def slow_fetch(cursor, voucher_types=None):
            await release.wait()
            return []

        connector.get_vouchers_incremental.side_effect = slow_fetch
        task = asyncio.create_task(orchestrator.run_incremental_voucher_sync())
        await asyncio.sleep(0.01)

        sweep = await orchestrator.run_full_reconciliation_sweep()
        assert sweep.status == SyncOutcome.ALREADY_RUNNING

        release.set()
        await task

    @pytest.mark.asyncio
    async def test_other_domains_run_concurrently(self, orchestrator, connector):
        release = asyncio.Event()

        async def slow_fetch(cursor, voucher_types=None):
            await release.wait()
            return []

        connector.get_vouchers_incremental.side_effect = slow_fetch
        task = asyncio.create_task(orchestrator.run_incremental_voucher_sync())
        await asyncio.sleep(0.01)

        stock = await orchestrator.sync_stock_items()
        assert stock.success

        release.set()
        await task


class TestIncrementalVoucherSync:

    @pytest.mark.asyncio
    async def test_cursor_advances_to_max_alter_id(self, orchestrator, connector, session_factory):
        connector.get_vouchers_incremental.return_value = [_voucher("g-1", 105), _voucher("g-2", 103)]

        result = await orchestrator.run_incremental_voucher_sync()

        assert result.success
        assert (result.cursor_before, result.cursor_after) == (0, 105)
        assert result.created == 2
        state = await _cursor(session_factory)
        assert state.last_alter_id == 105
        assert state.status == SyncStatus.IDLE

    @pytest.mark.asyncio
    async def test_next_cycle_uses_stored_cursor(self, orchestrator, connector):
        connector.get_vouchers_incremental.return_value = [_voucher("g-1", 105)]
        await orchestrator.run_incremental_voucher_sync()

        connector.get_vouchers_incremental.return_value = []
        result = await orchestrator.run_incremental_voucher_sync()

        connector.get_vouchers_incremental.assert_awaited_with(105)
        assert result.cursor_after == 105

    @pytest.mark.asyncio
    async def test_cursor_never_moves_backwards(self, orchestrator, connector, session_factory):
        async with session_factory() as db:
            await SyncStateRepository(db).advance_cursor(SyncDomain.VOUCHERS, 200)
            await db.commit()

        connector.get_vouchers_incremental.return_value = [_voucher("g-1", 150)]
        result = await orchestrator.run_incremental_voucher_sync()

        assert result.cursor_after == 200

    @pytest.mark.asyncio
    async def test_failure_sets_error_and_keeps_cursor(self, orchestrator, connector, session_factory, received):
        connector.get_vouchers_incremental.return_value = [_voucher("g-1", 101)]
        await orchestrator.run_incremental_voucher_sync()

        connector.get_vouchers_incremental.side_effect = TallyConnectionError("Cannot connect to Tally on port 9000")
        result = await orchestrator.run_incremental_voucher_sync()

        assert not result.success
        assert result.status == SyncOutcome.FAILED
        assert "Cannot connect" in result.error
        state = await _cursor(session_factory)
        assert state.last_alter_id == 101
        assert state.status == SyncStatus.ERROR
        assert "Cannot connect" in state.error_message
        assert any(event == SyncEvent.SYNC_ERROR for event, _ in received)

    @pytest.mark.asyncio
    async def test_failed_batch_is_not_partially_stored(self, orchestrator, connector, session_factory, monkeypatch):
        connector.get_vouchers_incremental.return_value = [_voucher("g-1", 101), _voucher("g-2", 102)]
        original = VoucherStore.upsert_vouchers

        async def explode(self, records):
            await original(self, records[:1])
            raise RuntimeError("disk full")

        monkeypatch.setattr(VoucherStore, "upsert_vouchers", explode)
        result = await orchestrator.run_incremental_voucher_sync()

        assert not result.success
        async with session_factory() as db:
            assert (await db.execute(select(VoucherDB))).scalars().all() == []
        assert (await _cursor(session_factory)).last_alter_id == 0

    @pytest.mark.asyncio
    async def test_state_read_failure_is_returned(self, orchestrator, connector, session_factory, monkeypatch):
        async def locked(self, domain):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(SyncStateRepository, "get_cursor", locked)
        result = await orchestrator.run_incremental_voucher_sync()

        assert not result.success
        assert result.status == SyncOutcome.FAILED
        assert "database is locked" in result.error
        assert not orchestrator.is_running("vouchers")
        connector.get_vouchers_incremental.assert_not_awaited()
        monkeypatch.undo()
        assert (await _cursor(session_factory)).status == SyncStatus.ERROR

    @pytest.mark.asyncio
    async def test_new_vouchers_notify_once(self, orchestrator, connector, received):
        bill = _voucher("g-1", 101, amount=60000.0)
        receipt = _voucher("g-2", 102, voucher_type="Counter Receipt", amount=500.0)
        connector.get_vouchers_incremental.return_value = [bill, receipt]

        await orchestrator.run_incremental_voucher_sync()

        names = [event for event, _ in received]
        assert names.count(SyncEvent.BILL_NEW) == 1
        assert names.count(SyncEvent.BILL_LARGE) == 1
        assert names.count(SyncEvent.RECEIPT_NEW) == 1
        assert names[-1] == SyncEvent.SYNC_UPDATE

        # same GUID, newer version: an update, not a new bill
        received.clear()
        connector.get_vouchers_incremental.return_value = [_voucher("g-1", 103, amount=61000.0)]
        result = await orchestrator.run_incremental_voucher_sync()

        assert result.updated == 1
        assert [event for event, _ in received] == [SyncEvent.SYNC_UPDATE]

    @pytest.mark.asyncio
    async def test_other_voucher_types_get_generic_event(self, orchestrator, connector, received):
        connector.get_vouchers_incremental.return_value = [_voucher("j-1", 101, voucher_type="Journal")]

        await orchestrator.run_incremental_voucher_sync()

        [(event, payload)] = [(e, p) for e, p in received if e != SyncEvent.SYNC_UPDATE]
        assert event == SyncEvent.VOUCHER_NEW
        assert payload["guid"] == "j-1"

    @pytest.mark.asyncio
    async def test_date_range_backfill_leaves_cursor(self, orchestrator, connector, session_factory):
        connector.get_vouchers.return_value = [_voucher("g-1", 500)]

        result = await orchestrator.sync_date_range(date(2024, 4, 1), date(2024, 4, 30))

        assert result.success
        assert result.created == 1
        assert (await _cursor(session_factory)).last_alter_id == 0


class TestFullSweep:

    async def _seed(self, session_factory, records):
        async with session_factory() as db:
            await VoucherStore(db).upsert_vouchers(records)
            await db.commit()

    @pytest.mark.asyncio
    async def test_conversion_and_deletion(self, orchestrator, connector, session_factory, received):
        await self._seed(session_factory, [
            _voucher("psb-1", 100, voucher_type="Pending Sales Bill", amount=1000.0),
            _voucher("sal-1", 101, voucher_type="Sales", amount=1020.0, voucher_date=date(2024, 4, 11)),
            _voucher("rc-1", 102, voucher_type="Counter Receipt", amount=300.0),
        ])
        connector.get_all_voucher_guids.return_value = [
            VoucherIdentity(guid="sal-1", master_id=101, voucher_type="Sales", voucher_number="V-101"),
        ]

        result = await orchestrator.run_full_reconciliation_sweep()

        assert result.success
        assert result.details == {"type_changes": 0, "converted": 1, "deleted": 1}

        async with session_factory() as db:
            store = VoucherStore(db)
            pending = await store.get_by_guid("psb-1")
            receipt = await store.get_by_guid("rc-1")
        assert pending.lifecycle_status == LifecycleStatus.CONVERTED
        assert pending.converted_to_guid == "sal-1"
        assert receipt.lifecycle_status == LifecycleStatus.DELETED
        assert receipt.delete_reason == "Deleted from Tally"

        converted = [p for e, p in received if e == SyncEvent.VOUCHER_CONVERTED]
        deleted = [p for e, p in received if e == SyncEvent.VOUCHERS_DELETED]
        assert converted[0]["converted_to_type"] == "Sales"
        assert [d["guid"] for d in deleted[0]] == ["rc-1"]

    @pytest.mark.asyncio
    async def test_type_change_recorded(self, orchestrator, connector, session_factory):
        await self._seed(session_factory, [_voucher("g-1", 100, voucher_type="Sales")])
        connector.get_all_voucher_guids.return_value = [
            VoucherIdentity(guid="g-1", master_id=100, voucher_type="Credit Sales", voucher_number="V-100"),
        ]

        result = await orchestrator.run_full_reconciliation_sweep()

        assert result.details["type_changes"] == 1
        async with session_factory() as db:
            voucher = await VoucherStore(db).get_by_guid("g-1")
        assert voucher.voucher_type == "Credit Sales"
        assert voucher.lifecycle_status == LifecycleStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_empty_listing_does_not_delete_everything(self, orchestrator, connector, session_factory):
        await self._seed(session_factory, [_voucher("g-1", 100)])
        connector.get_all_voucher_guids.return_value = []

        result = await orchestrator.run_full_reconciliation_sweep()

        assert not result.success
        async with session_factory() as db:
            voucher = await VoucherStore(db).get_by_guid("g-1")
        assert voucher.lifecycle_status == LifecycleStatus.ACTIVE


class TestMasterDataSync:

    @pytest.mark.asyncio
    async def test_failed_step_does_not_stop_others(self, orchestrator, connector, session_factory):
        connector.get_stock_items.side_effect = TallyConnectionError("refused")
        connector.get_ledgers.side_effect = lambda group: [
            LedgerRecord(name=f"{group} party", parent=group, alter_id=7)
        ]

        summary = await orchestrator.run_master_data_sync()

        assert not summary.success
        assert summary.steps["stock_items"].status == SyncOutcome.FAILED
        assert summary.steps["parties"].success
        assert summary.steps["parties"].details == {"debtor": 1, "creditor": 1}
        assert summary.steps["pending_bills"].success
        assert summary.steps["pending_invoices"].success
        assert (await _cursor(session_factory, SyncDomain.STOCK_ITEMS)).status == SyncStatus.ERROR

    @pytest.mark.asyncio
    async def test_stock_items_full_then_incremental(self, orchestrator, connector, session_factory):
        connector.get_stock_items.return_value = [StockItemRecord(name="Rice 25kg", alter_id=40)]
        first = await orchestrator.sync_stock_items()

        connector.get_stock_items_incremental.return_value = [
            StockItemRecord(name="Rice 25kg", alter_id=45, closing_balance=12.0),
        ]
        second = await orchestrator.sync_stock_items()

        assert first.details["mode"] == "full"
        assert second.details["mode"] == "incremental"
        connector.get_stock_items_incremental.assert_awaited_with(40)
        assert second.cursor_after == 45
        async with session_factory() as db:
            items = (await db.execute(select(StockItemDB))).scalars().all()
        assert len(items) == 1

    @pytest.mark.asyncio
    async def test_repeated_names_in_one_fetch(self, orchestrator, connector, session_factory):
        connector.get_stock_items.return_value = [
            StockItemRecord(name="Rice 25kg", alter_id=40, closing_balance=10.0),
            StockItemRecord(name="Rice 25kg", alter_id=41, closing_balance=8.0),
        ]
        connector.get_ledgers.side_effect = lambda group: [
            LedgerRecord(name="Ram Traders", parent=group, alter_id=7),
            LedgerRecord(name="Ram Traders", parent=group, alter_id=8),
        ]

        stock = await orchestrator.sync_stock_items()
        parties = await orchestrator.sync_parties()

        assert stock.success and stock.processed == 1
        assert parties.success
        async with session_factory() as db:
            [item] = (await db.execute(select(StockItemDB))).scalars().all()
            [party] = (await db.execute(select(PartyDB))).scalars().all()
        assert item.closing_balance == 8.0
        assert parties.details == {"debtor": 1, "creditor": 1}
        assert party.alter_id == 8

    @pytest.mark.asyncio
    async def test_pending_invoices_pushed_once(self, orchestrator, connector, session_factory):
        async with session_factory() as db:
            masters = MasterStore(db)
            await masters.queue_invoice("INV-1", date(2024, 4, 14), "Ram Traders", [{"stock_item": "Rice", "quantity": 2, "rate": 100}])
            await masters.queue_invoice("INV-2", date(2024, 4, 14), "Ram Traders", [{"stock_item": "Dal", "quantity": 1, "rate": 50}])
            await db.commit()

        connector.create_sales_invoice.side_effect = [
            WriteResult(success=True, operation="create_sales_invoice", created=1, voucher_id="9001"),
            WriteResult(success=False, operation="create_sales_invoice", error="Ledger not found"),
        ]

        result = await orchestrator.sync_pending_invoices()
        assert result.details == {"synced": 1, "failed": 1}

        connector.create_sales_invoice.side_effect = [
            WriteResult(success=True, operation="create_sales_invoice", created=1, voucher_id="9002"),
        ]
        await orchestrator.sync_pending_invoices()

        assert connector.create_sales_invoice.await_count == 3
        pushed = [call.args[0].invoice_number for call in connector.create_sales_invoice.await_args_list]
        assert pushed == ["INV-1", "INV-2", "INV-2"]

        async with session_factory() as db:
            remaining = await MasterStore(db).invoices_to_push()
        assert remaining == []

    @pytest.mark.asyncio
    async def test_overlapping_master_sync_rejected(self, orchestrator):
        orchestrator._active.add("masters")
        summary = await orchestrator.run_master_data_sync()
        assert summary.status == SyncOutcome.ALREADY_RUNNING
        assert summary.steps == {}


class TestPaymentStatus:

    @pytest.mark.asyncio
    async def test_status_change_emits_event(self, orchestrator, session_factory, received):
        async with session_factory() as db:
            store = VoucherStore(db)
            bill = (await store.upsert_voucher(_voucher("g-1", 100, amount=1000.0))).voucher
            await store.add_receipt(bill, 400.0, payment_mode="cash")
            await db.commit()

        result = await orchestrator.update_payment_statuses()

        assert result.updated == 1
        [(event, payload)] = [(e, p) for e, p in received if e == SyncEvent.BILL_STATUS_CHANGED]
        assert (payload["old_status"], payload["new_status"]) == ("pending", "partial")

    async def _seed_part_paid_bill(self, session_factory):
        async with session_factory() as db:
            store = VoucherStore(db)
            bill = (await store.upsert_voucher(_voucher("g-1", 100, amount=1000.0))).voucher
            await store.add_receipt(bill, 1000.0, payment_mode="qr")
            await db.commit()

    @pytest.mark.asyncio
    async def test_backfill_recomputes_status(self, orchestrator, connector, session_factory, received):
        await self._seed_part_paid_bill(session_factory)
        connector.get_vouchers.return_value = []

        result = await orchestrator.sync_date_range(date(2024, 4, 1), date(2024, 4, 30))

        assert result.details["payment_status_changes"] == 1
        [payload] = [p for e, p in received if e == SyncEvent.BILL_STATUS_CHANGED]
        assert payload["new_status"] == "paid"

    @pytest.mark.asyncio
    async def test_master_sync_recomputes_status(self, orchestrator, session_factory, received):
        await self._seed_part_paid_bill(session_factory)

        summary = await orchestrator.run_master_data_sync()

        assert summary.steps["payment_status"].updated == 1
        assert any(e == SyncEvent.BILL_STATUS_CHANGED for e, _ in received)


class TestScheduling:

    @pytest.mark.asyncio
    async def test_manual_mode_schedules_nothing(self, orchestrator, connector):
        status = await orchestrator.start()
        assert status.connected
        assert not orchestrator.is_scheduled

    @pytest.mark.asyncio
    async def test_start_continuous_and_stop(self, orchestrator):
        orchestrator.start_continuous(60000)
        assert orchestrator.is_scheduled
        await orchestrator.stop()
        assert not orchestrator.is_scheduled


class TestEventBus:

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self):
        bus = EventBus()
        seen = []

        async def async_handler(event, payload):
            seen.append(("async", payload))

        bus.subscribe(SyncEvent.BILL_NEW, lambda event, payload: seen.append(("sync", payload)))
        bus.subscribe(SyncEvent.BILL_NEW, async_handler)

        delivered = await bus.emit(SyncEvent.BILL_NEW, {"guid": "g-1"})

        assert delivered == 2
        assert seen == [("sync", {"guid": "g-1"}), ("async", {"guid": "g-1"})]

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        bus = EventBus()
        seen = []

        def broken(event, payload):
            raise ValueError("boom")

        bus.subscribe(SyncEvent.SYNC_UPDATE, broken)
        bus.subscribe(SyncEvent.SYNC_UPDATE, lambda event, payload: seen.append(payload))

        assert await bus.emit(SyncEvent.SYNC_UPDATE, 1) == 1
        assert seen == [1]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        handler = AsyncMock()
        unsubscribe = bus.subscribe(SyncEvent.SYNC_ERROR, handler)
        unsubscribe()

        assert await bus.emit(SyncEvent.SYNC_ERROR, {}) == 0
        assert bus.handler_count(SyncEvent.SYNC_ERROR) == 0
        handler.assert_not_awaited()


class TestReconciliationCycle:

    @pytest.mark.asyncio
    async def test_fetches_ledgers_then_reconciles(self, orchestrator, connector, received):
        connector.get_bank_vouchers.return_value = []

        result = await orchestrator.run_reconciliation(date(2024, 4, 1), date(2024, 4, 15))

        assert result.success
        fetched = [call.args[0] for call in connector.get_bank_vouchers.await_args_list]
        assert fetched == ["RBB Bank", "Fonepay"]
        assert set(result.details["runs"]) == {"bank_ledger", "gateway_bank", "gateway_ledger"}
        assert any(event == SyncEvent.RECONCILIATION_COMPLETED for event, _ in received)
