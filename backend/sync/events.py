"""
In-process event bus for sync notifications.

Consumers (dashboard push, SMS/notification layers) subscribe by event name.
Handlers may be plain callables or coroutines; a failing handler is logged
and never interrupts the sync cycle that emitted the event.
"""

import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Handler = Callable[[str, Any], Any]


class SyncEvent:
    """Event names emitted by the orchestrator."""
    BILL_NEW = "bill:new"
    RECEIPT_NEW = "receipt:new"
    VOUCHER_NEW = "voucher:new"
    BILL_LARGE = "bill:large"
    BILL_STATUS_CHANGED = "bill:statusChanged"
    SYNC_UPDATE = "sync:update"
    SYNC_ERROR = "sync:error"
    VOUCHERS_DELETED = "vouchers:deleted"
    VOUCHER_CONVERTED = "voucher:converted"
    RECONCILIATION_COMPLETED = "reconciliation:completed"

    ALL = "*"


class EventBus:

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register handler(event, payload). Returns an unsubscribe callable."""
        self._handlers[event].append(handler)

        def _unsubscribe():
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)

        return _unsubscribe

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    async def emit(self, event: str, payload: Any = None) -> int:
        """Deliver to subscribers of `event` and of "*". Returns the number of handlers that succeeded."""
        handlers = list(self._handlers.get(event, [])) + list(self._handlers.get(SyncEvent.ALL, []))
        delivered = 0
        for handler in handlers:
            try:
                result = handler(event, payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                logger.exception(f"Event handler failed for {event}")
        return delivered
