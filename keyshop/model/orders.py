# model/orders.py
# Order ledger. UN-GATED: callers own the transaction.
from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import DuplicateOrder, PaymentMismatch, PersistenceError
from ..helpers import now_ts, to_iso
from .db import Order, O_PENDING, O_COMPLETED

_ORDER_COLUMNS = """
    order_id, brand_id, plan_name, amount, status, created_at,
    completed_at, gateway_order_id, payment_id, verification_method
"""


async def insert_order(
    s: AsyncSession, order_id: str, brand_id: int, plan_name: str,
    amount: float,
) -> Dict[str, Any]:
    """
    Insert a pending order. Never overwrites: an existing order_id raises
    DuplicateOrder, any other database failure raises PersistenceError with
    the driver's message.
    """
    # Core INSERT: a duplicate must hit the table constraint, not the
    # session identity map
    order = {
        "order_id": order_id,
        "brand_id": brand_id,
        "plan_name": plan_name,
        "amount": float(amount),
        "status": O_PENDING,
        "created_at": now_ts(),
        "completed_at": None,
        "gateway_order_id": None,
        "payment_id": None,
        "verification_method": None,
    }
    try:
        await s.execute(insert(Order).values(**order))
    except IntegrityError:
        raise DuplicateOrder(order_id)
    except SQLAlchemyError as e:
        raise PersistenceError(str(e.orig if hasattr(e, "orig") else e))
    return order


async def get_order(s: AsyncSession, order_id: str) -> Optional[Dict[str, Any]]:
    row = (await s.execute(text(f"""
        SELECT {_ORDER_COLUMNS} FROM orders WHERE order_id = :oid
    """), {"oid": order_id})).mappings().first()
    return dict(row) if row else None


async def attach_intent(
    s: AsyncSession, order_id: str, gateway_order_id: str
) -> bool:
    """
    Bind a pending order to the gateway order opened for it. A newer intent
    replaces an older one. False if the order is no longer pending.
    """
    row = (await s.execute(text("""
        UPDATE orders SET gateway_order_id = :gid
        WHERE order_id = :oid AND status = 'pending'
        RETURNING order_id
    """), {"oid": order_id, "gid": gateway_order_id})).first()
    return row is not None


async def complete_order(
    s: AsyncSession, order_id: str, gateway_order_id: Optional[str],
    payment_id: Optional[str], verification_method: str,
) -> bool:
    """pending -> completed. False if somebody else completed it first."""
    try:
        row = (await s.execute(text("""
            UPDATE orders
            SET status = 'completed', completed_at = :now,
                gateway_order_id = :gid, payment_id = :pid,
                verification_method = :vm
            WHERE order_id = :oid AND status = 'pending'
            RETURNING order_id
        """), {
            "oid": order_id, "now": now_ts(), "gid": gateway_order_id,
            "pid": payment_id, "vm": verification_method,
        })).first()
    except IntegrityError:
        raise PaymentMismatch(
            order_id, f"payment {payment_id} already settled another order"
        )
    return row is not None


async def list_orders(
    s: AsyncSession, limit: int = 200, status: Optional[str] = None
) -> List[Dict[str, Any]]:
    params: Dict[str, Any] = {"lim": limit}
    where_sql = ""
    if status is not None:
        where_sql = "WHERE status = :st"
        params["st"] = status
    rows = (await s.execute(text(f"""
        SELECT {_ORDER_COLUMNS} FROM orders
        {where_sql}
        ORDER BY created_at DESC
        LIMIT :lim
    """), params)).mappings().all()
    return [dict(r) for r in rows]


async def revenue(s: AsyncSession) -> float:
    return float((await s.execute(text("""
        SELECT COALESCE(SUM(amount), 0) FROM orders WHERE status = 'completed'
    """))).scalar_one())


def order_to_json(o: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "orderId": o["order_id"],
        "brandId": o["brand_id"],
        "planName": o["plan_name"],
        "amount": o["amount"],
        "status": o["status"],
        "createdAt": to_iso(o["created_at"]),
        "completedAt": to_iso(o["completed_at"]),
        "gatewayOrderId": o["gateway_order_id"],
        "paymentId": o["payment_id"],
        "verificationMethod": o["verification_method"],
    }


__all__ = [
    "O_PENDING", "O_COMPLETED", "insert_order", "get_order",
    "attach_intent", "complete_order", "list_orders", "revenue", "order_to_json",
]
