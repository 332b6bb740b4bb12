# model/eventlog/__init__.py
"""Processed provider events.

Remembers which provider event ids already reached a terminal outcome so a
redelivery can be acknowledged without touching orders. The orders table
stays the only concurrency control; this log only saves work on replays.
"""
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ...infra.sql import Gated
from ...infra.timings import Timings
from ._redis import RedisEventLog
from ._sql import SqlEventLog

EventLog = Union[SqlEventLog, RedisEventLog]

BACKENDS = ("sql", "redis")


# Factory keeps server.py simple and constructor-agnostic:
def new_event_log(backend: str, *, timings: Timings,
                  db: Optional[AsyncSession] = None,
                  gated: Optional[Gated] = None,
                  r: Optional[redis.Redis] = None,
                  ttl_seconds: int = 7 * 24 * 3600) -> EventLog:
    if backend == "sql":
        if db is None or gated is None:
            raise RuntimeError(
                "EventLog(sql) requires db=AsyncSession and gated=Gated"
            )
        return SqlEventLog(db=db, gated=gated, timings=timings)
    if backend == "redis":
        if r is None:
            raise RuntimeError("EventLog(redis) requires r=redis.Redis")
        return RedisEventLog(r=r, ttl_seconds=ttl_seconds,
                             timings=timings)
    raise RuntimeError(f"unknown event log backend: {backend!r}")


__all__ = ["EventLog", "SqlEventLog", "RedisEventLog", "new_event_log",
           "BACKENDS"]
