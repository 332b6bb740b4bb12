from __future__ import annotations
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_ts
from ...infra.sql import Gated, gated_tx
from ...infra.timings import Timings
from ..orm import WebhookEvent


class SqlEventLog:
    def __init__(self, *, db: AsyncSession, gated: Gated,
                 timings: Timings) -> None:
        self.db = db
        self.gated = gated
        self.timings = timings

    async def seen(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        async with gated_tx(self.db, self.gated, self.timings,
                            "eventlog.seen"):
            row = (await self.db.execute(text("""
              SELECT event_id FROM webhook_events WHERE event_id = :k
            """), {"k": event_id})).first()
        return row is not None

    async def mark(self, event_id: Optional[str], event_type: str,
                   outcome: str) -> bool:
        """True if this call recorded the event, False if it was there."""
        if not event_id:
            return False
        try:
            async with gated_tx(self.db, self.gated, self.timings,
                                "eventlog.mark"):
                self.db.add(WebhookEvent(
                    event_id=event_id,
                    event_type=event_type,
                    outcome=outcome,
                    processed_at=now_ts(),
                ))
        except IntegrityError:
            return False
        return True
