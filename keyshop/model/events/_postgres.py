from __future__ import annotations
from typing import Optional
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_ts
from ...infra.sql import Gated


class EventStore:
    """Webhook event ids already processed, one row each."""

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        """True if evt_id is new (or absent), False on a replay."""
        if not evt_id:
            return True
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  INSERT INTO webhook_events_seen(event_id, created_at)
                  VALUES(:k, :now)
                  ON CONFLICT (event_id) DO NOTHING
                  RETURNING event_id
                """), {"k": evt_id, "now": now_ts()})).first()
        return row is not None

    async def forget_event(self, evt_id: Optional[str]) -> None:
        # let the gateway redeliver after a failed settlement
        if not evt_id:
            return
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("DELETE FROM webhook_events_seen WHERE event_id=:k"),
                    {"k": evt_id},
                )
