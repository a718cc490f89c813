"""
Tally Write Strategies

Tally accepts or ignores each import envelope shape depending on release
and voucher class, and never says which in advance. A write is therefore an
ordered list of strategies; each one makes a single attempt and the chain
stops at the first attempt whose response confirms a created or altered
record.
"""

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Sequence

from lxml import etree

from tally.exceptions import TallyError
from tally.records import WriteAttempt, WriteResult
from tally.responses import parse_import_response

logger = logging.getLogger(__name__)

SendFn = Callable[[str], Awaitable[etree._Element]]


class TallyWriteEvent:
    """Audit event types for Tally writes."""
    ATTEMPT = "tally.write_attempt"
    SUCCEEDED = "tally.write_succeeded"
    FAILED = "tally.write_failed"


def log_write_event(event_type: str, operation: str, details: dict):
    log_entry = {
        "event": event_type,
        "operation": operation,
        "details": details,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    logger.info(f"Tally write event: {event_type}", extra=log_entry)


class WriteStrategy:
    """One way of performing a write. attempt() never raises."""

    name = "strategy"

    def __init__(self, operation: str):
        self.operation = operation

    async def attempt(self) -> WriteResult:
        raise NotImplementedError


class EnvelopeStrategy(WriteStrategy):
    """Send one prebuilt import envelope and read the counters back."""

    def __init__(self, name: str, operation: str, envelope: str, send: SendFn):
        super().__init__(operation)
        self.name = name
        self.envelope = envelope
        self._send = send

    async def attempt(self) -> WriteResult:
        try:
            root = await self._send(self.envelope)
        except TallyError as e:
            return WriteResult(success=False, operation=self.operation, method=self.name, error=str(e))

        outcome = parse_import_response(root)
        return WriteResult(
            success=outcome.confirmed,
            operation=self.operation,
            method=self.name,
            created=outcome.created,
            altered=outcome.altered,
            voucher_id=outcome.voucher_id,
            error=None if outcome.confirmed else outcome.error,
            inferred=outcome.inferred,
        )


class DelegateStrategy(WriteStrategy):
    """Wrap another write (e.g. a receipt creation) as a fallback step."""

    def __init__(self, name: str, operation: str, write: Callable[[], Awaitable[WriteResult]]):
        super().__init__(operation)
        self.name = name
        self._write = write

    async def attempt(self) -> WriteResult:
        result = await self._write()
        return WriteResult(
            success=result.success,
            operation=self.operation,
            method=self.name,
            created=result.created,
            altered=result.altered,
            voucher_id=result.voucher_id,
            error=result.error,
            inferred=result.inferred,
        )


async def run_write_chain(operation: str, strategies: Sequence[WriteStrategy]) -> WriteResult:
    """Try strategies in order; return the first confirmed success or the last failure."""
    attempts: List[WriteAttempt] = []
    last_error = "No write strategy available"

    for strategy in strategies:
        result = await strategy.attempt()
        attempts.append(WriteAttempt(strategy=strategy.name, success=result.success, error=result.error))
        log_write_event(TallyWriteEvent.ATTEMPT, operation, {
            "strategy": strategy.name,
            "success": result.success,
            "created": result.created,
            "altered": result.altered,
            "error": result.error,
        })

        if result.success:
            result.attempts = attempts
            log_write_event(TallyWriteEvent.SUCCEEDED, operation, {"strategy": strategy.name})
            return result

        last_error = result.error or last_error

    log_write_event(TallyWriteEvent.FAILED, operation, {
        "strategies": [a.strategy for a in attempts],
        "error": last_error,
    })
    return WriteResult(success=False, operation=operation, error=last_error, attempts=attempts)
