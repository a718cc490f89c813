"""
Reconciliation Service

Core business logic for the reconciliation engine:
- Loading ledger, bank and gateway rows for a matcher
- Clearing the matcher's previous automatic results before recomputing
- Persisting every decision (matched and unmatched)
- Manual match / unmatch
- Summaries and audit logging

Manual matches are never touched by an automatic run, and the records they
reference are kept out of the automatic pools.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from database.ledger_models import (
    BankTransactionDB, GatewayTransactionDB, LedgerEntryDB,
    ReconciliationMatchDB, ReconMatchStatus,
)
from reconciliation.matching_rules import (
    BankLedgerMatchingRules, BankRow, GatewayBankMatchingRules,
    GatewayLedgerMatchingRules, GatewayRow, LedgerRow, MatchDecision,
)
from reconciliation.source_registry import MatcherRegistry, ReconType, SourceType

logger = logging.getLogger(__name__)

AUTOMATIC_STATUSES = (ReconMatchStatus.MATCHED, ReconMatchStatus.UNMATCHED)


@dataclass
class ReconciliationRunResult:
    """Result of a reconciliation run."""
    run_id: str
    recon_type: str
    total_sources: int
    matched: int
    unmatched: int
    cleared: int
    manual_excluded: int
    decisions: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self, include_decisions: bool = False) -> Dict[str, Any]:
        data = {
            "run_id": self.run_id,
            "recon_type": self.recon_type,
            "total_sources": self.total_sources,
            "matched": self.matched,
            "unmatched": self.unmatched,
            "cleared": self.cleared,
            "manual_excluded": self.manual_excluded,
        }
        if include_decisions:
            data["decisions"] = self.decisions
        return data


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    RUN_STARTED = "reconciliation.run_started"
    RUN_COMPLETED = "reconciliation.run_completed"
    MANUAL_MATCH = "reconciliation.manual_match"
    UNMATCHED = "reconciliation.unmatch"


def log_reconciliation_event(
    event_type: str,
    recon_type: str,
    details: Dict[str, Any],
    match_id: Optional[str] = None,
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "recon_type": recon_type,
        "match_id": match_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


def match_to_dict(match: ReconciliationMatchDB) -> Dict[str, Any]:
    return {
        "id": match.id,
        "recon_type": match.recon_type,
        "source_type": match.source_type,
        "source_id": match.source_id,
        "source_date": match.source_date.isoformat() if match.source_date else None,
        "source_amount": match.source_amount,
        "source_description": match.source_description,
        "target_type": match.target_type,
        "target_id": match.target_id,
        "target_date": match.target_date.isoformat() if match.target_date else None,
        "target_amount": match.target_amount,
        "target_description": match.target_description,
        "match_status": match.match_status.value,
        "match_confidence": match.match_confidence,
        "matched_by": match.matched_by,
        "matched_at": match.matched_at.isoformat() if match.matched_at else None,
    }


def _split_ids(value: Optional[str]) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


class ReconciliationService:
    """
    Service for reconciling the Tally ledger against bank and gateway feeds.

    Each run commits its own transaction.
    """

    def __init__(self, db: AsyncSession, settings=None, registry: Optional[MatcherRegistry] = None):
        self.db = db
        self.settings = settings
        self.registry = registry or (MatcherRegistry.from_settings(settings) if settings else MatcherRegistry())
        self.bank_ledger_name = settings.BANK_LEDGER_NAME if settings else "RBB Bank"
        self.gateway_ledger_name = settings.GATEWAY_LEDGER_NAME if settings else "Fonepay"

    # ==================== INPUTS ====================

    async def _ledger_rows(self, ledger_name: str, from_date: Optional[date], to_date: Optional[date]) -> List[LedgerRow]:
        query = select(LedgerEntryDB).where(LedgerEntryDB.ledger_name == ledger_name)
        if from_date:
            query = query.where(LedgerEntryDB.voucher_date >= from_date)
        if to_date:
            query = query.where(LedgerEntryDB.voucher_date <= to_date)
        result = await self.db.execute(query.order_by(LedgerEntryDB.voucher_date, LedgerEntryDB.tally_guid))
        return [
            LedgerRow(
                id=entry.tally_guid,
                voucher_date=entry.voucher_date,
                amount=entry.amount,
                description=" ".join(filter(None, [entry.voucher_type, entry.voucher_number, entry.party_name])),
            )
            for entry in result.scalars().all()
        ]

    async def _bank_rows(self, from_date: Optional[date], to_date: Optional[date]) -> List[BankRow]:
        query = select(BankTransactionDB)
        if from_date:
            query = query.where(BankTransactionDB.transaction_date >= from_date)
        if to_date:
            query = query.where(BankTransactionDB.transaction_date <= to_date)
        result = await self.db.execute(query.order_by(BankTransactionDB.transaction_date, BankTransactionDB.transaction_id))
        return [
            BankRow(
                id=txn.transaction_id,
                transaction_date=txn.transaction_date,
                debit=txn.debit or 0.0,
                credit=txn.credit or 0.0,
                description=txn.description or "",
            )
            for txn in result.scalars().all()
        ]

    async def _gateway_rows(self, from_date: Optional[date], to_date: Optional[date]) -> List[GatewayRow]:
        query = select(GatewayTransactionDB)
        if from_date:
            query = query.where(GatewayTransactionDB.transaction_at >= datetime.combine(from_date, datetime.min.time()))
        if to_date:
            query = query.where(GatewayTransactionDB.transaction_at <= datetime.combine(to_date, datetime.max.time()))
        result = await self.db.execute(query.order_by(GatewayTransactionDB.transaction_at, GatewayTransactionDB.transaction_id))
        return [
            GatewayRow(
                id=txn.transaction_id,
                transaction_at=txn.transaction_at,
                amount=txn.amount,
                description=" ".join(filter(None, [txn.description, txn.issuer_name])),
            )
            for txn in result.scalars().all()
        ]

    async def _manually_matched_ids(self, recon_type: ReconType) -> Tuple[Set[str], Set[str]]:
        """(source ids, target ids) claimed by manual matches of this type."""
        result = await self.db.execute(
            select(ReconciliationMatchDB.source_id, ReconciliationMatchDB.target_id).where(
                ReconciliationMatchDB.recon_type == recon_type.value,
                ReconciliationMatchDB.match_status == ReconMatchStatus.MANUAL_MATCH,
            )
        )
        sources: Set[str] = set()
        targets: Set[str] = set()
        for source_id, target_id in result.all():
            sources.update(_split_ids(source_id))
            targets.update(_split_ids(target_id))
        return sources, targets

    async def _clear_automatic(self, recon_type: ReconType, from_date: Optional[date], to_date: Optional[date]) -> int:
        conditions = [
            ReconciliationMatchDB.recon_type == recon_type.value,
            ReconciliationMatchDB.match_status.in_(AUTOMATIC_STATUSES),
        ]
        if from_date:
            conditions.append(ReconciliationMatchDB.source_date >= from_date)
        if to_date:
            conditions.append(ReconciliationMatchDB.source_date <= to_date)
        result = await self.db.execute(delete(ReconciliationMatchDB).where(*conditions))
        return result.rowcount or 0

    # ==================== RUNS ====================

    def _decide(
        self,
        recon_type: ReconType,
        bank: List[BankRow],
        gateway: List[GatewayRow],
        bank_ledger: List[LedgerRow],
        gateway_ledger: List[LedgerRow],
    ) -> List[MatchDecision]:
        config = self.registry.get_config(recon_type)
        if recon_type == ReconType.BANK_LEDGER:
            return BankLedgerMatchingRules(config).match(bank, bank_ledger)
        if recon_type == ReconType.GATEWAY_BANK:
            return GatewayBankMatchingRules(config).match(gateway, bank)
        return GatewayLedgerMatchingRules(config).match(gateway, gateway_ledger)

    async def run(
        self,
        recon_type: ReconType,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> ReconciliationRunResult:
        """
        Recompute one matcher's automatic results.

        Prior matched/unmatched rows of this type (within the date range, if
        given) are replaced; manual matches stay and their records are
        excluded from the pools. Running twice on unchanged input yields the
        same rows.
        """
        recon_type = ReconType(recon_type)
        run_id = str(uuid.uuid4())
        log_reconciliation_event(ReconciliationAuditEvent.RUN_STARTED, recon_type.value, {
            "run_id": run_id,
            "from_date": from_date.isoformat() if from_date else None,
            "to_date": to_date.isoformat() if to_date else None,
        })

        manual_sources, manual_targets = await self._manually_matched_ids(recon_type)
        claimed = manual_sources | manual_targets

        bank = gateway = bank_ledger = gateway_ledger = []
        if recon_type in (ReconType.BANK_LEDGER, ReconType.GATEWAY_BANK):
            bank = [r for r in await self._bank_rows(from_date, to_date) if r.id not in claimed]
        if recon_type in (ReconType.GATEWAY_BANK, ReconType.GATEWAY_LEDGER):
            gateway = [r for r in await self._gateway_rows(from_date, to_date) if r.id not in claimed]
        if recon_type == ReconType.BANK_LEDGER:
            bank_ledger = [r for r in await self._ledger_rows(self.bank_ledger_name, from_date, to_date) if r.id not in claimed]
        if recon_type == ReconType.GATEWAY_LEDGER:
            gateway_ledger = [r for r in await self._ledger_rows(self.gateway_ledger_name, from_date, to_date) if r.id not in claimed]

        decisions = self._decide(recon_type, bank, gateway, bank_ledger, gateway_ledger)

        try:
            cleared = await self._clear_automatic(recon_type, from_date, to_date)
            for decision in decisions:
                self.db.add(ReconciliationMatchDB(
                    recon_type=recon_type.value,
                    source_type=decision.source_type.value,
                    source_id=decision.source_id,
                    source_date=decision.source_date,
                    source_amount=decision.source_amount,
                    source_description=decision.source_description,
                    target_type=decision.target_type.value if decision.target_type else None,
                    target_id=decision.target_id,
                    target_date=decision.target_date,
                    target_amount=decision.target_amount,
                    target_description=decision.target_description,
                    match_status=ReconMatchStatus.MATCHED if decision.matched else ReconMatchStatus.UNMATCHED,
                    match_confidence=decision.confidence if decision.matched else 0.0,
                    matched_by="system",
                ))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        matched = sum(1 for d in decisions if d.matched)
        result = ReconciliationRunResult(
            run_id=run_id,
            recon_type=recon_type.value,
            total_sources=len(decisions),
            matched=matched,
            unmatched=len(decisions) - matched,
            cleared=cleared,
            manual_excluded=len(claimed),
            decisions=[d.to_dict() for d in decisions],
        )
        log_reconciliation_event(ReconciliationAuditEvent.RUN_COMPLETED, recon_type.value, result.to_dict())
        return result

    async def run_bank_ledger(self, from_date: Optional[date] = None, to_date: Optional[date] = None) -> ReconciliationRunResult:
        return await self.run(ReconType.BANK_LEDGER, from_date, to_date)

    async def run_gateway_bank(self, from_date: Optional[date] = None, to_date: Optional[date] = None) -> ReconciliationRunResult:
        return await self.run(ReconType.GATEWAY_BANK, from_date, to_date)

    async def run_gateway_ledger(self, from_date: Optional[date] = None, to_date: Optional[date] = None) -> ReconciliationRunResult:
        return await self.run(ReconType.GATEWAY_LEDGER, from_date, to_date)

    async def run_all(self, from_date: Optional[date] = None, to_date: Optional[date] = None) -> List[ReconciliationRunResult]:
        return [await self.run(recon_type, from_date, to_date) for recon_type in ReconType]

    # ==================== MANUAL ====================

    async def _describe(self, ref_type: SourceType, ref_id: str) -> Tuple[Optional[date], float, Optional[str]]:
        """(date, amount, description) of a referenced record. Raises ValueError if it doesn't exist."""
        if ref_type == SourceType.BANK:
            txn = (await self.db.execute(
                select(BankTransactionDB).where(BankTransactionDB.transaction_id == ref_id)
            )).scalar_one_or_none()
            if txn is None:
                raise ValueError(f"Bank transaction {ref_id} not found")
            return txn.transaction_date, (txn.credit if txn.credit > 0 else -txn.debit), txn.description

        if ref_type in (SourceType.GATEWAY, SourceType.GATEWAY_BATCH):
            ids = _split_ids(ref_id)
            rows = (await self.db.execute(
                select(GatewayTransactionDB).where(GatewayTransactionDB.transaction_id.in_(ids))
            )).scalars().all()
            missing = set(ids) - {r.transaction_id for r in rows}
            if not ids or missing:
                raise ValueError(f"Gateway transaction(s) not found: {', '.join(sorted(missing)) or ref_id}")
            first = min(r.transaction_at for r in rows)
            description = rows[0].description if len(rows) == 1 else f"{len(rows)} gateway transactions"
            return first.date(), round(sum(r.amount for r in rows), 2), description

        entry = (await self.db.execute(
            select(LedgerEntryDB).where(LedgerEntryDB.tally_guid == ref_id)
        )).scalars().first()
        if entry is None:
            raise ValueError(f"Ledger voucher {ref_id} not found")
        return entry.voucher_date, entry.amount, " ".join(filter(None, [entry.voucher_type, entry.voucher_number]))

    async def manual_match(
        self,
        recon_type: ReconType,
        source_type: SourceType,
        source_id: str,
        target_type: SourceType,
        target_id: str,
        matched_by: str = "user",
    ) -> Dict[str, Any]:
        """
        Record a user-confirmed match at confidence 1.0.

        Automatic rows of this type that mention either record are removed so
        the pair no longer shows up as unmatched.
        """
        recon_type = ReconType(recon_type)
        source_type = SourceType(source_type)
        target_type = SourceType(target_type)

        source_date, source_amount, source_description = await self._describe(source_type, source_id)
        target_date, target_amount, target_description = await self._describe(target_type, target_id)

        ids = _split_ids(source_id) + _split_ids(target_id)
        overlapping = [
            or_(ReconciliationMatchDB.source_id == ref, ReconciliationMatchDB.target_id == ref,
                ReconciliationMatchDB.source_id.like(f"{ref},%"),
                ReconciliationMatchDB.source_id.like(f"%,{ref}"),
                ReconciliationMatchDB.source_id.like(f"%,{ref},%"))
            for ref in ids
        ]
        await self.db.execute(delete(ReconciliationMatchDB).where(and_(
            ReconciliationMatchDB.recon_type == recon_type.value,
            ReconciliationMatchDB.match_status.in_(AUTOMATIC_STATUSES),
            or_(*overlapping),
        )))

        match = ReconciliationMatchDB(
            recon_type=recon_type.value,
            source_type=source_type.value,
            source_id=source_id,
            source_date=source_date,
            source_amount=source_amount,
            source_description=source_description,
            target_type=target_type.value,
            target_id=target_id,
            target_date=target_date,
            target_amount=target_amount,
            target_description=target_description,
            match_status=ReconMatchStatus.MANUAL_MATCH,
            match_confidence=1.0,
            matched_by=matched_by,
        )
        self.db.add(match)
        await self.db.commit()

        log_reconciliation_event(
            ReconciliationAuditEvent.MANUAL_MATCH, recon_type.value,
            {"source_id": source_id, "target_id": target_id},
            match_id=match.id, actor=matched_by,
        )
        return match_to_dict(match)

    async def unmatch(self, match_id: str, actor: str = "user") -> bool:
        match = await self.db.get(ReconciliationMatchDB, match_id)
        if match is None:
            return False
        recon_type = match.recon_type
        details = {"source_id": match.source_id, "target_id": match.target_id, "status": match.match_status.value}
        await self.db.delete(match)
        await self.db.commit()
        log_reconciliation_event(ReconciliationAuditEvent.UNMATCHED, recon_type, details, match_id=match_id, actor=actor)
        return True

    # ==================== QUERIES ====================

    async def get_matches(
        self,
        recon_type: Optional[ReconType] = None,
        status: Optional[ReconMatchStatus] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        query = select(ReconciliationMatchDB)
        if recon_type:
            query = query.where(ReconciliationMatchDB.recon_type == ReconType(recon_type).value)
        if status:
            query = query.where(ReconciliationMatchDB.match_status == ReconMatchStatus(status))
        query = query.order_by(ReconciliationMatchDB.source_date, ReconciliationMatchDB.source_id).limit(limit)
        result = await self.db.execute(query)
        return [match_to_dict(m) for m in result.scalars().all()]

    async def summary(self, recon_type: Optional[ReconType] = None) -> Dict[str, Any]:
        """Counts and summed source amounts per recon type and status."""
        query = select(
            ReconciliationMatchDB.recon_type,
            ReconciliationMatchDB.match_status,
            func.count(),
            func.sum(ReconciliationMatchDB.source_amount),
        ).group_by(ReconciliationMatchDB.recon_type, ReconciliationMatchDB.match_status)
        if recon_type:
            query = query.where(ReconciliationMatchDB.recon_type == ReconType(recon_type).value)

        summary: Dict[str, Any] = {}
        for rtype, status, count, total in (await self.db.execute(query)).all():
            entry = summary.setdefault(rtype, {s.value: {"count": 0, "amount": 0.0} for s in ReconMatchStatus})
            entry[status.value] = {"count": count, "amount": round(float(total or 0), 2)}
        return summary
