# eventlog/_redis.py
from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Optional
import redis.asyncio as redis

from ...errors import StorageFailure
from ...infra.timings import Timings


# ---- keys
def k_evt(event_id: str) -> str: return f"whevt:{event_id}"


class RedisEventLog:
    def __init__(self, *, r: redis.Redis, ttl_seconds: int,
                 timings: Timings) -> None:
        self.r = r
        self.ttl = ttl_seconds
        self.timings = timings

    @asynccontextmanager
    async def _op(self, kind: str):
        async with self.timings.timeit(kind):
            try:
                yield
            except redis.RedisError as e:
                raise StorageFailure(f"{kind} failed: {e}") from e

    async def seen(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        async with self._op("eventlog.seen"):
            return bool(await self.r.exists(k_evt(event_id)))

    async def mark(self, event_id: Optional[str], event_type: str,
                   outcome: str) -> bool:
        if not event_id:
            return False
        # NX: first writer wins, TTL bounds the key space
        async with self._op("eventlog.mark"):
            ok = await self.r.set(
                k_evt(event_id), f"{event_type}:{outcome}",
                nx=True, ex=self.ttl,
            )
        return bool(ok)
