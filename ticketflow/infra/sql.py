from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, Callable

from sqlalchemy import event
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

from ..config import Settings
from ..errors import StorageFailure
from .timings import Timings

Gated = Callable[[], AsyncContextManager[None]]


def normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        # Heroku-style URLs
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


# DB-GATE: bounds the number of sessions waiting on the pool at once
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


@asynccontextmanager
async def gated_tx(db: AsyncSession, gated: Gated, timings: Timings,
                   kind: str):
    """Timed, gated transaction. Driver errors surface as StorageFailure;
    IntegrityError passes through for callers that treat it as "lost the
    race"."""
    async with timings.timeit(kind):
        async with gated():
            try:
                async with db.begin():
                    yield
            except IntegrityError:
                raise
            except SQLAlchemyError as e:
                raise StorageFailure(f"{kind} failed: {e}") from e


@dataclass
class Database:
    engine: AsyncEngine
    sessions: async_sessionmaker[AsyncSession]
    gate: asyncio.Semaphore

    def gated(self) -> AsyncContextManager[None]:
        return _gated(self.gate)

    async def dispose(self) -> None:
        await self.engine.dispose()


def make_database(settings: Settings) -> Database:
    db_url = normalize_async_url(settings.database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = settings.db_pool_size
        kw.update(
            pool_size=pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.execute("PRAGMA foreign_keys=ON;")
            cur.close()

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # default the gate to the pool size (sqlite: 10)
    gate_limit = settings.db_gate_limit
    if gate_limit is None:
        gate_limit = pool_size if pool_size is not None else 10

    return Database(
        engine=engine,
        sessions=sessions,
        gate=asyncio.Semaphore(max(1, gate_limit)),
    )
