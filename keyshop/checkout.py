# checkout.py
"""
Order -> payment -> key sequence:
- create_order: write a pending order and reserve ("hold") one key for it,
  in one transaction; no key, no order
- open_payment_intent: ask the gateway for an intent for a pending order and
  bind the order to that gateway order
- verify_payment: signature check, binding check, gateway status check, then
  settle
- fulfill_order: complete the order and turn the hold (or, if it lapsed, any
  free key) into a sale, in one transaction
- cancel_order: give the hold back after a failed or dismissed payment

Nothing here is retried. Every error is a ShopError (see errors.py).
"""
from __future__ import annotations
import os
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import (
    AlreadyCompleted, InvalidSignature, NoKeysAvailable, OrderNotFound,
    PaymentMismatch, PaymentNotCaptured, PersistenceError, ValidationError,
)
from .gateway import CURRENCY, PaymentGateway
from .helpers import to_minor_units
from .infra.logs import get_logger
from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .model import catalog, keys, orders
from .model.db import O_COMPLETED

log = get_logger(__name__)

KEY_HOLD_TTL_SECONDS = int(os.environ.get("KEY_HOLD_TTL_SECONDS", 15 * 60))

# amounts are compared in major units; anything below a paisa is noise
_AMOUNT_EPSILON = 0.005


def _db_failure(e: SQLAlchemyError) -> PersistenceError:
    return PersistenceError(str(getattr(e, "orig", None) or e))


# ------------------------------------------------------------------------------
# Order creation
# ------------------------------------------------------------------------------

async def create_order(
    db: GatedAsyncSession,
    order_id: str,
    brand_id: int,
    plan_name: str,
    amount: float,
    hold_ttl: float = KEY_HOLD_TTL_SECONDS,
) -> Dict[str, Any]:
    try:
        async with timeit("checkout.create_order"):
            async with db.transaction() as s:
                brand = await catalog.get_brand(s, brand_id)
                if brand is not None:
                    price = catalog.plan_price(brand, plan_name)
                    if (price is not None
                            and abs(price - amount) > _AMOUNT_EPSILON):
                        raise ValidationError(
                            "amount",
                            f"amount {amount} does not match the price "
                            f"{price} of plan {plan_name!r}",
                        )

                # a reused order id is a duplicate even when the pool is dry
                order = await orders.insert_order(
                    s, order_id, brand_id, plan_name, amount
                )

                key_id = await keys.hold_key(
                    s, brand_id, plan_name, order_id, hold_ttl
                )
                if key_id is None:
                    # rolls the order row back
                    raise NoKeysAvailable(brand_id, plan_name)
    except SQLAlchemyError as e:
        raise _db_failure(e)

    log.info("order.created", order_id=order_id, brand_id=brand_id,
             plan=plan_name, amount=amount, held_key=key_id)
    return order


# ------------------------------------------------------------------------------
# Payment intent
# ------------------------------------------------------------------------------

async def _load_pending_order(
    s: AsyncSession, order_id: str
) -> Dict[str, Any]:
    order = await orders.get_order(s, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    if order["status"] == O_COMPLETED:
        raise AlreadyCompleted(order_id)
    return order


async def open_payment_intent(
    db: GatedAsyncSession,
    gateway: PaymentGateway,
    order_id: str,
    amount: float,
    brand_name: str,
    plan_name: str,
) -> Dict[str, Any]:
    try:
        async with db.transaction() as s:
            order = await _load_pending_order(s, order_id)
    except SQLAlchemyError as e:
        raise _db_failure(e)

    # the stored amount is authoritative, the client's is only a cross-check
    if abs(float(order["amount"]) - amount) > _AMOUNT_EPSILON:
        raise ValidationError(
            "amount", f"amount {amount} does not match order {order_id}"
        )

    amount_minor = to_minor_units(float(order["amount"]))
    async with timeit("gateway.create_intent"):
        intent = await gateway.create_intent(
            amount_minor,
            CURRENCY,
            receipt=order_id[:40],
            notes={
                "order_id": order_id,
                "brand": brand_name,
                "plan": plan_name,
            },
        )

    # from now on only a payment of this gateway order settles the order
    try:
        async with db.transaction() as s:
            if not await orders.attach_intent(s, order_id, intent["id"]):
                raise AlreadyCompleted(order_id)
    except SQLAlchemyError as e:
        raise _db_failure(e)

    log.info("payment.intent_opened", order_id=order_id,
             gateway_order_id=intent["id"], amount_minor=intent["amount"])
    return {
        "gatewayOrderId": intent["id"],
        "amountMinorUnits": intent["amount"],
        "currency": intent["currency"],
        "gatewayKeyId": gateway.key_id,
    }


# ------------------------------------------------------------------------------
# Verification + fulfillment
# ------------------------------------------------------------------------------

def check_payment_binding(
    order: Dict[str, Any],
    gateway_order_id: Optional[str],
    paid_minor: Optional[int] = None,
) -> None:
    """
    A genuine payment settles only the order whose intent it paid, and only
    for that order's amount. Raises PaymentMismatch otherwise.
    """
    order_id = order["order_id"]
    expected = order.get("gateway_order_id")
    if not expected or gateway_order_id != expected:
        log.warning("payment.wrong_order", order_id=order_id,
                    gateway_order_id=gateway_order_id, expected=expected)
        raise PaymentMismatch(
            order_id,
            f"gateway order {gateway_order_id} was not opened for "
            f"order {order_id}",
        )
    if paid_minor is not None:
        due = to_minor_units(float(order["amount"]))
        if int(paid_minor) != due:
            log.warning("payment.wrong_amount", order_id=order_id,
                        paid_minor=paid_minor, due_minor=due)
            raise PaymentMismatch(
                order_id, f"paid {paid_minor}, order {order_id} is {due}"
            )


async def fulfill_order(
    s: AsyncSession,
    order: Dict[str, Any],
    gateway_order_id: Optional[str],
    payment_id: Optional[str],
    verification_method: str,
) -> str:
    """
    UN-GATED, runs in the caller's transaction. Returns the key value.

    The order's pending -> completed update goes first: a concurrent
    settlement of the same order waits on that row and then fails with
    AlreadyCompleted instead of competing for a key.

    Key choice, first match wins:
      1) a key already sold to this order (earlier run died before the
         order row was completed)
      2) this order's own hold
      3) any claimable key of the same brand/plan (the hold lapsed and was
         taken by somebody else)
    Raising anywhere rolls the completion back with the key sale.
    """
    order_id = order["order_id"]

    if not await orders.complete_order(
        s, order_id, gateway_order_id, payment_id, verification_method
    ):
        raise AlreadyCompleted(order_id)

    key = await keys.find_sold_for_order(s, order_id)
    if key is None:
        key = await keys.sell_held_key(s, order_id)
    if key is None:
        key = await keys.sell_available_key(
            s, order["brand_id"], order["plan_name"], order_id
        )
    if key is None:
        log.error("fulfillment.no_keys", order_id=order_id,
                  brand_id=order["brand_id"], plan=order["plan_name"],
                  payment_id=payment_id, refund_required=True)
        raise NoKeysAvailable(order["brand_id"], order["plan_name"],
                              paid=True, order_id=order_id,
                              payment_id=payment_id)

    key_id, key_value = key
    log.info("order.fulfilled", order_id=order_id, key_id=key_id,
             payment_id=payment_id, method=verification_method)
    return key_value


async def settle_payment(
    db: GatedAsyncSession,
    order_id: str,
    gateway_order_id: Optional[str],
    payment_id: Optional[str],
    verification_method: str,
    paid_minor: Optional[int] = None,
) -> Dict[str, Any]:
    """Call only once the payment is known to be genuine and captured."""
    try:
        async with timeit("checkout.fulfill"):
            async with db.transaction() as s:
                order = await _load_pending_order(s, order_id)
                check_payment_binding(order, gateway_order_id, paid_minor)
                key_value = await fulfill_order(
                    s, order, gateway_order_id, payment_id,
                    verification_method,
                )
    except SQLAlchemyError as e:
        raise _db_failure(e)
    return {"keyValue": key_value, "paymentId": payment_id,
            "orderId": order_id}


async def verify_payment(
    db: GatedAsyncSession,
    gateway: PaymentGateway,
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: str,
    order_id: str,
) -> Dict[str, Any]:
    try:
        gateway.verify_payment_signature(
            gateway_order_id, gateway_payment_id, signature
        )
    except InvalidSignature:
        log.warning("payment.bad_signature", order_id=order_id,
                    gateway_order_id=gateway_order_id,
                    payment_id=gateway_payment_id)
        raise

    # reject proofs for somebody else's intent before calling the gateway
    try:
        async with db.transaction() as s:
            order = await _load_pending_order(s, order_id)
    except SQLAlchemyError as e:
        raise _db_failure(e)
    check_payment_binding(order, gateway_order_id)

    async with timeit("gateway.fetch_payment"):
        payment = await gateway.fetch_payment(gateway_payment_id)
    status = str(payment.get("status") or "unknown")
    if status != "captured":
        log.info("payment.not_captured", order_id=order_id,
                 payment_id=gateway_payment_id, status=status)
        raise PaymentNotCaptured(status)

    paid_for = payment.get("order_id")
    if paid_for is not None and paid_for != gateway_order_id:
        log.warning("payment.wrong_order", order_id=order_id,
                    gateway_order_id=gateway_order_id, paid_for=paid_for)
        raise PaymentMismatch(
            order_id,
            f"payment {gateway_payment_id} belongs to gateway order "
            f"{paid_for}",
        )

    return await settle_payment(
        db, order_id, gateway_order_id, gateway_payment_id, "signature",
        paid_minor=payment.get("amount"),
    )


# ------------------------------------------------------------------------------
# Cancel
# ------------------------------------------------------------------------------

async def cancel_order(db: GatedAsyncSession, order_id: str) -> int:
    """Release the hold of a pending order. Returns keys released (0 or 1)."""
    try:
        async with db.transaction() as s:
            await _load_pending_order(s, order_id)
            released = await keys.release_hold(s, order_id)
    except SQLAlchemyError as e:
        raise _db_failure(e)
    log.info("order.hold_released", order_id=order_id, released=released)
    return released
