"""
Per-domain sync cursor and status.

The cursor is the highest AlterID durably stored for a domain. It only
moves forward, and only in the same transaction as the records it covers.
"""

import logging
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.ledger_models import SyncDomain, SyncStateDB, SyncStatus, utc_now

logger = logging.getLogger(__name__)


class SyncStateRepository:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, domain: SyncDomain) -> SyncStateDB:
        state = await self.db.get(SyncStateDB, domain)
        if state is None:
            state = SyncStateDB(domain=domain, last_alter_id=0, status=SyncStatus.IDLE)
            self.db.add(state)
            await self.db.flush()
        return state

    async def get_cursor(self, domain: SyncDomain) -> int:
        return (await self.get(domain)).last_alter_id or 0

    async def advance_cursor(self, domain: SyncDomain, alter_id: Optional[int]) -> int:
        """Move the cursor to alter_id if that is higher. Returns the resulting cursor."""
        state = await self.get(domain)
        current = state.last_alter_id or 0
        if alter_id is not None and alter_id > current:
            state.last_alter_id = alter_id
            await self.db.flush()
            return alter_id
        return current

    async def mark_syncing(self, domain: SyncDomain) -> None:
        state = await self.get(domain)
        state.status = SyncStatus.SYNCING
        state.error_message = None
        state.last_started_at = utc_now()
        await self.db.flush()

    async def mark_idle(self, domain: SyncDomain) -> None:
        state = await self.get(domain)
        state.status = SyncStatus.IDLE
        state.error_message = None
        state.last_completed_at = utc_now()
        await self.db.flush()

    async def mark_error(self, domain: SyncDomain, message: str) -> None:
        state = await self.get(domain)
        state.status = SyncStatus.ERROR
        state.error_message = message[:2000]
        await self.db.flush()

    async def all_states(self) -> Dict[str, Dict]:
        result = await self.db.execute(select(SyncStateDB))
        return {
            state.domain.value: {
                "last_alter_id": state.last_alter_id,
                "status": state.status.value,
                "error": state.error_message,
                "last_started_at": state.last_started_at.isoformat() if state.last_started_at else None,
                "last_completed_at": state.last_completed_at.isoformat() if state.last_completed_at else None,
            }
            for state in result.scalars().all()
        }
