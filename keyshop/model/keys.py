# model/keys.py
"""
Key store. A key moves

    available --hold--> held --sell--> sold
        ^                 |
        +----release------+

and every transition is a conditional UPDATE whose RETURNING row tells the
caller whether it won. A hold past its `held_until` is claimable again, so
abandoned checkouts do not need a sweeper.

All functions here are UN-GATED: they run inside the caller's transaction
(see GatedAsyncSession.transaction()).
"""
from __future__ import annotations
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import DuplicateKey, KeyNotFound, ValidationError
from ..helpers import now_ts
from .db import Key, K_AVAILABLE

# how many candidate rows to try when a conditional update loses a race
CLAIM_ATTEMPTS = 5

# available, or held by an abandoned checkout
_CLAIMABLE = (
    "(status = 'available' "
    "OR (status = 'held' AND held_until IS NOT NULL AND held_until <= :now))"
)


async def _candidate_ids(
    s: AsyncSession, brand_id: int, plan: str, now: float, limit: int
) -> List[int]:
    rows = (await s.execute(text(f"""
        SELECT id FROM keys
        WHERE brand_id = :b AND plan = :p AND {_CLAIMABLE}
        ORDER BY id
        LIMIT :lim
    """), {"b": brand_id, "p": plan, "now": now, "lim": limit})).all()
    return [int(r[0]) for r in rows]


async def count_available(
    s: AsyncSession, brand_id: int, plan: Optional[str] = None
) -> int:
    params: Dict[str, Any] = {"b": brand_id, "now": now_ts()}
    plan_sql = ""
    if plan is not None:
        plan_sql = "AND plan = :p"
        params["p"] = plan
    return int((await s.execute(text(f"""
        SELECT COUNT(*) FROM keys
        WHERE brand_id = :b {plan_sql} AND {_CLAIMABLE}
    """), params)).scalar_one())


async def hold_key(
    s: AsyncSession, brand_id: int, plan: str, order_id: str,
    ttl_seconds: float,
) -> Optional[int]:
    """
    Reserve one claimable key for `order_id` until now + ttl_seconds.
    Returns the key id, or None if the pool is empty.
    """
    now = now_ts()
    for key_id in await _candidate_ids(s, brand_id, plan, now,
                                       CLAIM_ATTEMPTS):
        row = (await s.execute(text(f"""
            UPDATE keys
            SET status = 'held', order_id = :oid, held_until = :until
            WHERE id = :id AND {_CLAIMABLE}
            RETURNING id
        """), {
            "id": key_id, "oid": order_id, "until": now + ttl_seconds,
            "now": now,
        })).first()
        if row is not None:
            return int(row[0])
    return None


async def release_hold(s: AsyncSession, order_id: str) -> int:
    """Give a pending order's hold back to the pool. Returns rows released."""
    rows = (await s.execute(text("""
        UPDATE keys
        SET status = 'available', order_id = NULL, held_until = NULL
        WHERE order_id = :oid AND status = 'held'
        RETURNING id
    """), {"oid": order_id})).all()
    return len(rows)


async def find_sold_for_order(
    s: AsyncSession, order_id: str
) -> Optional[Tuple[int, str]]:
    row = (await s.execute(text("""
        SELECT id, key_value FROM keys
        WHERE order_id = :oid AND status = 'sold'
        ORDER BY id
        LIMIT 1
    """), {"oid": order_id})).first()
    return (int(row[0]), row[1]) if row else None


async def sell_held_key(
    s: AsyncSession, order_id: str
) -> Optional[Tuple[int, str]]:
    """
    Convert the order's own hold into a sale. An expired hold still works as
    long as nobody has re-claimed the row (order_id would have changed).
    """
    row = (await s.execute(text("""
        UPDATE keys
        SET status = 'sold', sold_at = :now, held_until = NULL
        WHERE id = (
            SELECT id FROM keys
            WHERE order_id = :oid AND status = 'held'
            ORDER BY id LIMIT 1
        )
          AND order_id = :oid AND status = 'held'
        RETURNING id, key_value
    """), {"oid": order_id, "now": now_ts()})).first()
    return (int(row[0]), row[1]) if row else None


async def sell_available_key(
    s: AsyncSession, brand_id: int, plan: str, order_id: str
) -> Optional[Tuple[int, str]]:
    """
    Compare-and-swap a claimable key straight to sold for `order_id`.
    Returns (id, key_value) or None when the pool is exhausted.
    """
    now = now_ts()
    for key_id in await _candidate_ids(s, brand_id, plan, now,
                                       CLAIM_ATTEMPTS):
        row = (await s.execute(text(f"""
            UPDATE keys
            SET status = 'sold', order_id = :oid, sold_at = :now,
                held_until = NULL
            WHERE id = :id AND {_CLAIMABLE}
            RETURNING id, key_value
        """), {"id": key_id, "oid": order_id, "now": now})).first()
        if row is not None:
            return int(row[0]), row[1]
    return None


# ------------------------------------------------------------------------------
# Admin
# ------------------------------------------------------------------------------

async def add_keys(
    s: AsyncSession, brand_id: int, plan: str, key_values: Iterable[str]
) -> List[Key]:
    values = [v.strip() for v in key_values if v and v.strip()]
    if not values:
        raise ValidationError("keyValues", "no key values given")
    if len(set(values)) != len(values):
        raise DuplicateKey("duplicate key values in request")

    created = now_ts()
    keys = [
        Key(brand_id=brand_id, plan=plan, key_value=v, status=K_AVAILABLE,
            created_at=created)
        for v in values
    ]
    s.add_all(keys)
    try:
        await s.flush()
    except IntegrityError:
        raise DuplicateKey("one or more key values already exist")
    return keys


async def add_key(
    s: AsyncSession, brand_id: int, plan: str, key_value: str
) -> Key:
    return (await add_keys(s, brand_id, plan, [key_value]))[0]


async def delete_key(s: AsyncSession, key_id: int) -> None:
    status = (await s.execute(
        text("SELECT status FROM keys WHERE id = :id"), {"id": key_id}
    )).scalar_one_or_none()
    if status is None:
        raise KeyNotFound(f"key {key_id} not found")
    if status != K_AVAILABLE:
        # sold keys are the record of a sale; held ones belong to a checkout
        raise ValidationError("keyId", f"key {key_id} is {status}")
    await s.execute(
        text("DELETE FROM keys WHERE id = :id AND status = 'available'"),
        {"id": key_id},
    )


async def list_keys(
    s: AsyncSession, limit: int = 500, brand_id: Optional[int] = None,
    status: Optional[str] = None,
) -> List[Dict[str, Any]]:
    where = []
    params: Dict[str, Any] = {"lim": limit}
    if brand_id is not None:
        where.append("k.brand_id = :b")
        params["b"] = brand_id
    if status is not None:
        where.append("k.status = :st")
        params["st"] = status
    where_sql = ("WHERE " + " AND ".join(where)) if where else ""
    rows = (await s.execute(text(f"""
        SELECT k.id, k.brand_id, b.name AS brand_name, k.plan, k.key_value,
               k.status, k.order_id, k.held_until, k.sold_at, k.created_at
        FROM keys AS k
        LEFT JOIN brands AS b ON b.id = k.brand_id
        {where_sql}
        ORDER BY k.created_at DESC, k.id DESC
        LIMIT :lim
    """), params)).mappings().all()
    return [dict(r) for r in rows]


async def key_stats(s: AsyncSession) -> Dict[str, int]:
    row = (await s.execute(text(f"""
        SELECT
            COUNT(*) AS total,
            COALESCE(SUM(CASE WHEN {_CLAIMABLE} THEN 1 ELSE 0 END), 0)
                AS available,
            COALESCE(SUM(CASE WHEN status = 'held'
                              AND NOT {_CLAIMABLE} THEN 1 ELSE 0 END), 0)
                AS held,
            COALESCE(SUM(CASE WHEN status = 'sold' THEN 1 ELSE 0 END), 0)
                AS sold
        FROM keys
    """), {"now": now_ts()})).mappings().one()
    return {k: int(v) for k, v in row.items()}


__all__ = [
    "K_AVAILABLE", "count_available", "hold_key",
    "release_hold", "find_sold_for_order", "sell_held_key",
    "sell_available_key", "add_key", "add_keys", "delete_key", "list_keys",
    "key_stats",
]
