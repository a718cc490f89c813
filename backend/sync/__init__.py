"""
Sync Module

Timer-driven and on-demand sync cycles between Tally and the local mirror.
"""

from sync.events import EventBus, SyncEvent
from sync.orchestrator import MasterSyncSummary, SyncOrchestrator, SyncOutcome, SyncResult

__all__ = [
    'EventBus',
    'SyncEvent',
    'MasterSyncSummary',
    'SyncOrchestrator',
    'SyncOutcome',
    'SyncResult',
]
