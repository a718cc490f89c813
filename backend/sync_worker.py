"""
Tally Sync Worker

Standalone process that keeps the local mirror in step with Tally.

Usage:
- Standalone: python sync_worker.py (from backend/)
- Manual only: SYNC_INTERVAL_MS=0 python sync_worker.py runs one voucher
  and master sync, then exits

Startup:
1. Structured logging and Sentry
2. Database tables created if missing
3. Connection check, initial master sync, timers scheduled
"""

import asyncio
import logging
import signal

from config import get_settings, validate_environment
from database.connection import AsyncSessionLocal, init_db
from logging_config import setup_logging
from sentry_integration import init_sentry
from sync.events import EventBus, SyncEvent
from sync.orchestrator import SyncOrchestrator
from tally.client import TallyConnector

logger = logging.getLogger(__name__)


def _log_event(event: str, payload):
    logger.info(f"Sync event: {event}", extra={"event": event, "payload": payload})


async def run_worker():
    """Run the sync orchestrator until interrupted."""
    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    init_sentry(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        tally_endpoint=settings.tally_url,
        company=settings.TALLY_COMPANY or None,
    )

    for warning in validate_environment()["warnings"]:
        logger.warning(f"Config: {warning}")

    await init_db()

    events = EventBus()
    events.subscribe(SyncEvent.ALL, _log_event)

    async with TallyConnector.from_settings(settings) as connector:
        orchestrator = SyncOrchestrator(connector, AsyncSessionLocal, settings, events)
        status = await orchestrator.start()

        if settings.SYNC_INTERVAL_MS <= 0:
            if status.connected:
                result = await orchestrator.run_incremental_voucher_sync()
                logger.info(f"Manual sync finished: {result.to_dict()}")
            return

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt
                pass

        try:
            await stop_event.wait()
        finally:
            logger.info("Sync worker stopping...")
            await orchestrator.stop()


def main():
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
