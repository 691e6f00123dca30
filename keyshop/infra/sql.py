import os
import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Callable, AsyncContextManager
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
)
from contextlib import asynccontextmanager

Gated = Callable[[], AsyncContextManager[None]]


def normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        # Heroku / Supabase style URLs
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


# DB-GATE: never queue more coroutines on the pool than it can serve
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


@dataclass
class GatedAsyncSession:
    session: AsyncSession
    gated: Gated

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Gate + explicit transaction in one:
            async with db.transaction() as s:
                await s.execute(...)
        Commits on exit, rolls back if the block raises.
        """
        async with self.gated():
            async with self.session.begin():
                yield self.session


@dataclass
class Database:
    engine: AsyncEngine
    sessionmaker: async_sessionmaker
    gate: asyncio.Semaphore

    def gated(self) -> AsyncContextManager[None]:
        return _gated(self.gate)

    async def dispose(self) -> None:
        await self.engine.dispose()


def make_async_engine(database_url: str) -> Database:
    db_url = normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.close()

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # sqlite: a single writer anyway; postgres: default to pool_size
    if pool_size is None:
        gate_limit = int(os.getenv("DB_GATE_LIMIT", "10"))
    else:
        gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size))

    return Database(
        engine=engine,
        sessionmaker=SessionAsync,
        gate=asyncio.Semaphore(max(1, gate_limit)),
    )
