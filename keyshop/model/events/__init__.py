# model/events/__init__.py
import os
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ...infra.sql import Gated

BACKEND = os.getenv("EVENTS_BACKEND", "pg").lower()  # 'pg' | 'redis'

if BACKEND == "redis":
    from ._redis import EventStore as _EventStore
else:
    from ._postgres import EventStore as _EventStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 7 * 24 * 3600,
              gated: Gated = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("EventStore(redis) requires r=redis.Redis")
        return _EventStore(r=r, ttl_seconds=ttl_seconds)
    if db is None:
        raise RuntimeError("EventStore(pg) requires db=AsyncSession")
    if gated is None:
        raise RuntimeError("EventStore(pg) requires gated=Gated")
    return _EventStore(db=db, gated=gated)


EventStore = _EventStore
__all__ = ["EventStore", "new_store", "BACKEND"]
