"""
Unit Tests for the reconciliation engine

Tests:
- Bank vs ledger 1:1 matching with date-gap confidence
- Gateway daily batches vs bank settlement credits (T+/-1)
- Gateway vs gateway ledger
- Persistence: unmatched rows, idempotent reruns, manual match preservation

Run with: pytest tests/test_reconciliation.py -v
"""

from datetime import date, datetime

import pytest

from database.ledger_models import ReconMatchStatus
from reconciliation import (
    BankLedgerMatchingRules, BankRow, GatewayBankMatchingRules, GatewayLedgerMatchingRules,
    GatewayRow, LedgerRow, MatcherRegistry, ReconciliationService, ReconType, SourceType,
)
from services.feed_store import BankStatementRow, FeedStore, GatewayFeedRow
from tally.records import BankVoucherRecord

D = date(2024, 4, 10)


@pytest.fixture
def registry():
    return MatcherRegistry()


def _bank(id, day, credit=0.0, debit=0.0, description=""):
    return BankRow(id=id, transaction_date=day, credit=credit, debit=debit, description=description)


def _gateway(id, day, amount, hour=10):
    return GatewayRow(id=id, transaction_at=datetime(day.year, day.month, day.day, hour), amount=amount)


class TestBankLedgerRules:

    def _match(self, registry, bank, ledger):
        return BankLedgerMatchingRules(registry.get_config(ReconType.BANK_LEDGER)).match(bank, ledger)

    @pytest.mark.parametrize("gap,confidence", [(0, 1.0), (1, 0.9), (2, 0.8)])
    def test_confidence_by_day_gap(self, registry, gap, confidence):
        ledger_day = date(2024, 4, 10 + gap)
        [decision] = self._match(registry, [_bank("b1", D, credit=500.0)], [LedgerRow("l1", ledger_day, 500.0)])
        assert decision.target_id == "l1"
        assert decision.confidence == confidence

    def test_three_days_apart_is_unmatched(self, registry):
        [decision] = self._match(registry, [_bank("b1", D, credit=500.0)], [LedgerRow("l1", date(2024, 4, 13), 500.0)])
        assert not decision.matched
        assert decision.confidence == 0.0

    def test_debit_matches_negative_ledger_amount(self, registry):
        [decision] = self._match(registry, [_bank("b1", D, debit=250.0)], [LedgerRow("l1", D, -250.0)])
        assert decision.source_amount == -250.0
        assert decision.matched

    def test_amount_outside_epsilon(self, registry):
        [decision] = self._match(registry, [_bank("b1", D, credit=500.0)], [LedgerRow("l1", D, 500.02)])
        assert not decision.matched

    def test_ledger_voucher_claimed_once(self, registry):
        decisions = self._match(
            registry,
            [_bank("b1", D, credit=500.0), _bank("b2", D, credit=500.0)],
            [LedgerRow("l1", D, 500.0)],
        )
        assert [d.target_id for d in decisions] == ["l1", None]

    def test_closest_date_wins(self, registry):
        [decision] = self._match(
            registry,
            [_bank("b1", D, credit=500.0)],
            [LedgerRow("far", date(2024, 4, 12), 500.0), LedgerRow("near", date(2024, 4, 11), 500.0)],
        )
        assert decision.target_id == "near"
        assert decision.confidence == 0.9


class TestGatewayBankRules:

    def _match(self, registry, gateway, bank):
        return GatewayBankMatchingRules(registry.get_config(ReconType.GATEWAY_BANK)).match(gateway, bank)

    def test_next_day_settlement_batch(self, registry):
        gateway = [
            _gateway("g1", D, 5000.0, hour=9),
            _gateway("g2", D, 7000.0, hour=12),
            _gateway("g3", D, 3000.0, hour=18),
        ]
        credit = _bank("b1", date(2024, 4, 11), credit=15000.0, description="FONEPAY STLMT 0411")

        decisions = self._match(registry, gateway, [credit])

        assert len(decisions) == 1
        [batch] = decisions
        assert batch.source_type == SourceType.GATEWAY_BATCH
        assert batch.source_id == "g1,g2,g3"
        assert batch.source_amount == 15000.0
        assert batch.target_id == "b1"
        assert batch.confidence == 0.85

    def test_same_day_settlement(self, registry):
        [decision] = self._match(
            registry, [_gateway("g1", D, 999.5)], [_bank("b1", D, credit=1000.0, description="esewastlmt")]
        )
        assert decision.confidence == 1.0

    def test_credit_without_marker_is_ignored(self, registry):
        decisions = self._match(registry, [_gateway("g1", D, 1000.0)], [_bank("b1", D, credit=1000.0, description="NEFT")])
        assert [(d.source_type, d.source_id, d.matched) for d in decisions] == [(SourceType.GATEWAY, "g1", False)]

    def test_leftovers_and_unmatched_credits(self, registry):
        decisions = self._match(
            registry,
            [_gateway("g1", D, 1000.0), _gateway("g2", date(2024, 4, 1), 40.0)],
            [
                _bank("b1", D, credit=1000.0, description="FONEPAY"),
                _bank("b2", date(2024, 4, 20), credit=77.0, description="FONEPAY"),
            ],
        )
        summary = [(d.source_type, d.source_id, d.matched) for d in decisions]
        assert summary == [
            (SourceType.GATEWAY_BATCH, "g1", True),
            (SourceType.GATEWAY, "g2", False),
            (SourceType.BANK, "b2", False),
        ]

    def test_batch_consumed_once(self, registry):
        decisions = self._match(
            registry,
            [_gateway("g1", D, 1000.0)],
            [
                _bank("b1", D, credit=1000.0, description="FONEPAY"),
                _bank("b2", date(2024, 4, 11), credit=1000.0, description="FONEPAY"),
            ],
        )
        matched = [d for d in decisions if d.matched]
        assert [d.target_id for d in matched] == ["b1"]
        assert [d.source_id for d in decisions if not d.matched] == ["b2"]


class TestGatewayLedgerRules:

    def test_next_day_confidence(self, registry):
        rules = GatewayLedgerMatchingRules(registry.get_config(ReconType.GATEWAY_LEDGER))
        [decision] = rules.match([_gateway("g1", D, 450.0)], [LedgerRow("l1", date(2024, 4, 11), 450.0)])
        assert decision.target_id == "l1"
        assert decision.confidence == 0.9

    def test_two_days_apart_is_unmatched(self, registry):
        rules = GatewayLedgerMatchingRules(registry.get_config(ReconType.GATEWAY_LEDGER))
        [decision] = rules.match([_gateway("g1", D, 450.0)], [LedgerRow("l1", date(2024, 4, 12), 450.0)])
        assert not decision.matched


class TestRegistry:

    def test_settings_override_epsilon_and_markers(self, settings):
        settings.RECON_BATCH_EPSILON = 2.5
        settings.GATEWAY_SETTLEMENT_MARKERS = "khalti"
        registry = MatcherRegistry.from_settings(settings)

        config = registry.get_config(ReconType.GATEWAY_BANK)
        assert config.amount_epsilon == 2.5
        assert config.settlement_markers == ["KHALTI"]

    def test_defaults_are_not_shared(self):
        first = MatcherRegistry()
        first.get_config(ReconType.BANK_LEDGER).amount_epsilon = 9.0
        assert MatcherRegistry().get_config(ReconType.BANK_LEDGER).amount_epsilon == 0.01


async def _seed(db):
    feeds = FeedStore(db)
    await feeds.ingest_bank_transactions([
        BankStatementRow(transaction_id="b1", transaction_date=D, credit=500.0, description="Cash deposit"),
        BankStatementRow(transaction_id="b2", transaction_date=D, debit=120.0, description="Cheque 0012"),
        BankStatementRow(transaction_id="b3", transaction_date=date(2024, 4, 11), credit=15000.0, description="FONEPAY STLMT"),
    ])
    await feeds.ingest_gateway_transactions([
        GatewayFeedRow(transaction_id="g1", transaction_at=datetime(2024, 4, 10, 9), amount=5000.0),
        GatewayFeedRow(transaction_id="g2", transaction_at=datetime(2024, 4, 10, 12), amount=7000.0),
        GatewayFeedRow(transaction_id="g3", transaction_at=datetime(2024, 4, 10, 18), amount=3000.0),
    ])
    await feeds.upsert_ledger_entries("RBB Bank", [
        BankVoucherRecord(guid="l1", master_id=1, voucher_type="Receipt", voucher_number="R-1",
                          voucher_date=D, party_name="Ram Traders", amount=500.0),
    ])
    await feeds.upsert_ledger_entries("Fonepay", [
        BankVoucherRecord(guid="f1", master_id=2, voucher_type="Receipt", voucher_number="R-2",
                          voucher_date=D, party_name="Walk-in", amount=5000.0),
    ])
    await db.commit()


class TestReconciliationService:

    @pytest.mark.asyncio
    async def test_unmatched_rows_are_persisted(self, db):
        await _seed(db)
        service = ReconciliationService(db)

        result = await service.run_bank_ledger()

        assert (result.matched, result.unmatched) == (1, 2)
        unmatched = await service.get_matches(ReconType.BANK_LEDGER, ReconMatchStatus.UNMATCHED)
        assert sorted(m["source_id"] for m in unmatched) == ["b2", "b3"]
        assert all(m["match_confidence"] == 0.0 and m["target_id"] is None for m in unmatched)

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, db):
        await _seed(db)
        service = ReconciliationService(db)

        await service.run_all()
        first = await service.get_matches()
        second_runs = await service.run_all()
        second = await service.get_matches()

        def _key(rows):
            return sorted((m["recon_type"], m["source_id"], m["target_id"], m["match_status"]) for m in rows)

        assert _key(first) == _key(second)
        assert sum(run.cleared for run in second_runs) == len(first)

    @pytest.mark.asyncio
    async def test_gateway_batch_persisted_as_one_row(self, db):
        await _seed(db)
        service = ReconciliationService(db)

        result = await service.run_gateway_bank()

        assert result.matched == 1
        [match] = await service.get_matches(ReconType.GATEWAY_BANK, ReconMatchStatus.MATCHED)
        assert match["source_id"] == "g1,g2,g3"
        assert match["target_id"] == "b3"
        assert match["match_confidence"] == 0.85

    @pytest.mark.asyncio
    async def test_manual_match_survives_rerun_and_leaves_pool(self, db):
        await _seed(db)
        service = ReconciliationService(db)
        await service.run_bank_ledger()

        manual = await service.manual_match(ReconType.BANK_LEDGER, SourceType.BANK, "b2", SourceType.LEDGER, "l1")
        assert manual["match_status"] == "manual_match"
        assert manual["match_confidence"] == 1.0

        result = await service.run_bank_ledger()

        assert result.manual_excluded == 2
        rows = await service.get_matches(ReconType.BANK_LEDGER)
        by_source = {m["source_id"]: m for m in rows}
        assert by_source["b2"]["match_status"] == "manual_match"
        # l1 is claimed by the manual match, so b1 has nothing left to match
        assert by_source["b1"]["match_status"] == "unmatched"
        assert [m["source_id"] for m in rows].count("b2") == 1

    @pytest.mark.asyncio
    async def test_manual_match_requires_existing_records(self, db):
        await _seed(db)
        service = ReconciliationService(db)
        with pytest.raises(ValueError):
            await service.manual_match(ReconType.BANK_LEDGER, SourceType.BANK, "nope", SourceType.LEDGER, "l1")

    @pytest.mark.asyncio
    async def test_unmatch(self, db):
        await _seed(db)
        service = ReconciliationService(db)
        manual = await service.manual_match(ReconType.GATEWAY_LEDGER, SourceType.GATEWAY, "g2", SourceType.LEDGER, "f1")

        assert await service.unmatch(manual["id"])
        assert not await service.unmatch(manual["id"])
        assert await service.get_matches(status=ReconMatchStatus.MANUAL_MATCH) == []

    @pytest.mark.asyncio
    async def test_summary(self, db):
        await _seed(db)
        service = ReconciliationService(db)
        await service.run_gateway_ledger()

        summary = await service.summary(ReconType.GATEWAY_LEDGER)

        assert summary["gateway_ledger"]["matched"] == {"count": 1, "amount": 5000.0}
        assert summary["gateway_ledger"]["unmatched"]["count"] == 2
        assert summary["gateway_ledger"]["manual_match"]["count"] == 0

    @pytest.mark.asyncio
    async def test_date_limited_rerun_keeps_rows_outside_range(self, db):
        await _seed(db)
        service = ReconciliationService(db)
        await service.run_bank_ledger()

        await service.run_bank_ledger(from_date=date(2024, 4, 11), to_date=date(2024, 4, 11))

        rows = await service.get_matches(ReconType.BANK_LEDGER)
        assert sorted(m["source_id"] for m in rows) == ["b1", "b2", "b3"]
