"""
Unit Tests for voucher read queries and payment status

Run with: pytest tests/test_voucher_queries.py -v
"""

from datetime import date

import pytest

from database.ledger_models import LifecycleStatus, PaymentStatus
from services.change_tracker import ChangeTracker
from services.lifecycle import Lifecycle
from services.voucher_queries import VoucherQueryService
from services.voucher_store import VoucherStore, payment_status_for
from tally.records import PaymentModes, VoucherRecord

TODAY = date(2024, 4, 15)


def _record(guid, alter_id, voucher_type="Sales", amount=1000.0, **kwargs):
    return VoucherRecord(
        guid=guid,
        master_id=alter_id,
        alter_id=alter_id,
        voucher_type=voucher_type,
        voucher_number=kwargs.pop("voucher_number", f"V-{guid}"),
        voucher_date=kwargs.pop("voucher_date", date(2024, 4, 10)),
        party_name="Ram Traders",
        amount=amount,
        raw_amount=-amount,
        **kwargs,
    )


@pytest.fixture
def store(db):
    return VoucherStore(db, ChangeTracker(db, today=lambda: TODAY))


class TestPaymentStatusFor:

    def test_thresholds(self):
        assert payment_status_for(1000.0, 0.0) == PaymentStatus.PENDING
        assert payment_status_for(1000.0, 999.99) == PaymentStatus.PARTIAL
        assert payment_status_for(1000.0, 1000.0) == PaymentStatus.PAID
        assert payment_status_for(-1000.0, 1200.0) == PaymentStatus.PAID


class TestRecomputePaymentStatuses:

    @pytest.mark.asyncio
    async def test_receipts_drive_status(self, store, db):
        bill = (await store.upsert_voucher(_record("b-1", 100))).voucher
        other = (await store.upsert_voucher(_record("b-2", 101, amount=300.0))).voucher
        await store.add_receipt(bill, 600.0, payment_mode="qr")
        await store.add_receipt(bill, 400.0, payment_mode="cash")

        changed = await store.recompute_payment_statuses()

        assert [(c["guid"], c["new_status"]) for c in changed] == [("b-1", "paid")]
        assert bill.amount_received == 1000.0
        assert other.payment_status == PaymentStatus.PENDING
        assert await store.recompute_payment_statuses() == []

    @pytest.mark.asyncio
    async def test_receipts_and_inactive_bills_ignored(self, store, db):
        receipt = (await store.upsert_voucher(_record("r-1", 100, voucher_type="Counter Receipt"))).voucher
        bill = (await store.upsert_voucher(_record("b-1", 101))).voucher
        await store.add_receipt(bill, 100.0)
        await store.apply_lifecycle(bill, Lifecycle.deleted())

        assert await store.recompute_payment_statuses() == []
        assert receipt.payment_status == PaymentStatus.PENDING


class TestVoucherQueryService:

    @pytest.mark.asyncio
    async def test_get_voucher(self, store, db):
        modes = PaymentModes(cash_teller1=400.0, qr=600.0)
        await store.upsert_voucher(_record("g-1", 100, udf_payment_total=1000.0, payment_modes=modes))
        await db.commit()

        voucher = await VoucherQueryService(db).get_voucher("g-1")

        assert voucher["direction"] == "sale"
        assert voucher["payment_modes"]["qr"] == 600.0
        assert voucher["lifecycle_status"] == "active"
        assert voucher["voucher_date"] == "2024-04-10"
        assert await VoucherQueryService(db).get_voucher("missing") is None

    @pytest.mark.asyncio
    async def test_history_newest_first(self, store, db):
        for alter_id, amount in [(100, 1000.0), (101, 1100.0), (102, 1200.0)]:
            await store.upsert_voucher(_record("g-1", alter_id, amount=amount))
        await db.commit()
        queries = VoucherQueryService(db)

        history = await queries.get_history("g-1")
        changes = await queries.get_change_log("g-1")

        assert [h["version_number"] for h in history] == [2, 1]
        assert history[0]["snapshot"]["amount"] == 1100.0
        assert [(c["field_name"], c["new_value"]) for c in changes] == [("amount", "1100.00"), ("amount", "1200.00")]

    @pytest.mark.asyncio
    async def test_list_filters_by_lifecycle(self, store, db):
        await store.upsert_voucher(_record("g-1", 100))
        gone = (await store.upsert_voucher(_record("g-2", 101))).voucher
        await store.apply_lifecycle(gone, Lifecycle.deleted())
        await db.commit()
        queries = VoucherQueryService(db)

        active = await queries.list_vouchers()
        deleted = await queries.list_vouchers(lifecycle_status=LifecycleStatus.DELETED)

        assert [v["guid"] for v in active] == ["g-1"]
        assert [v["delete_reason"] for v in deleted] == ["Deleted from Tally"]

    @pytest.mark.asyncio
    async def test_critical_and_stats(self, store, db):
        await store.upsert_voucher(_record("g-1", 100, voucher_date=date(2024, 5, 1)))
        await store.upsert_voucher(_record("g-2", 101))
        await store.upsert_voucher(_record("g-2", 102, amount=900.0))
        await db.commit()
        queries = VoucherQueryService(db)

        critical = await queries.critical_vouchers()
        stats = await queries.history_stats()

        assert [(v["guid"], v["critical_reasons"]) for v in critical] == [("g-1", ["post_dated"])]
        assert stats == {
            "snapshots": 1,
            "changes": 1,
            "vouchers_with_history": 1,
            "critical": 1,
            "converted": 0,
            "deleted": 0,
        }
