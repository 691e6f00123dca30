import pytest
from sqlalchemy import text

from keyshop import checkout
from keyshop.errors import (
    AlreadyCompleted, DuplicateOrder, InvalidSignature, NoKeysAvailable,
    OrderNotFound, PaymentMismatch, PaymentNotCaptured, ValidationError,
)
from keyshop.model import orders

from conftest import open_intent, seed, sign


async def _key_rows(gdb):
    async with gdb.transaction() as s:
        rows = (await s.execute(text(
            "SELECT key_value, status, order_id, sold_at FROM keys "
            "ORDER BY id"
        ))).mappings().all()
    return [dict(r) for r in rows]


async def _order(gdb, order_id):
    async with gdb.transaction() as s:
        return await orders.get_order(s, order_id)


async def _order_count(gdb, order_id):
    async with gdb.transaction() as s:
        return (await s.execute(
            text("SELECT COUNT(*) FROM orders WHERE order_id = :o"),
            {"o": order_id},
        )).scalar_one()


async def _pay(gdb, gateway, order_id, payment_id, amount=299.0):
    gid = await open_intent(gdb, gateway, order_id, amount)
    return await checkout.verify_payment(
        gdb, gateway, gid, payment_id, sign(gid, payment_id), order_id
    )


# ----------------------------
# Full purchase
# ----------------------------
async def test_purchase_scenario(gdb, gateway):
    brand_id = await seed(gdb, "Vision", key_values=["VISION-1M-AAA"])
    assert brand_id == 1

    order = await checkout.create_order(gdb, "ORD1", 1, "1 Month", 299)
    assert order["status"] == "pending"
    [k] = await _key_rows(gdb)
    assert k["status"] == "held" and k["order_id"] == "ORD1"

    intent = await checkout.open_payment_intent(
        gdb, gateway, "ORD1", 299, "Vision", "1 Month"
    )
    assert intent["amountMinorUnits"] == 29900
    assert intent["currency"] == "INR"
    assert intent["gatewayKeyId"] == gateway.key_id
    assert gateway.intents[0]["receipt"] == "ORD1"
    assert gateway.intents[0]["notes"]["order_id"] == "ORD1"

    g1 = intent["gatewayOrderId"]
    assert (await _order(gdb, "ORD1"))["gateway_order_id"] == g1

    result = await checkout.verify_payment(
        gdb, gateway, g1, "P1", sign(g1, "P1"), "ORD1"
    )
    assert result == {"keyValue": "VISION-1M-AAA", "paymentId": "P1",
                      "orderId": "ORD1"}

    [k] = await _key_rows(gdb)
    assert k["status"] == "sold"
    assert k["order_id"] == "ORD1"
    assert k["sold_at"] is not None

    o = await _order(gdb, "ORD1")
    assert o["status"] == "completed"
    assert o["gateway_order_id"] == g1
    assert o["payment_id"] == "P1"
    assert o["verification_method"] == "signature"
    assert o["completed_at"] is not None

    with pytest.raises(AlreadyCompleted):
        await checkout.verify_payment(
            gdb, gateway, g1, "P1", sign(g1, "P1"), "ORD1"
        )


# ----------------------------
# Order creation
# ----------------------------
async def test_create_order_without_keys_creates_nothing(gdb):
    await seed(gdb, "Vision", key_values=[])
    await seed(gdb, "Bat", plans=[("1 Year", 3299.0)], plan="1 Year",
               key_values=[])

    with pytest.raises(NoKeysAvailable) as ei:
        await checkout.create_order(gdb, "ORD2", 2, "1 Year", 3299)
    assert ei.value.paid is False
    assert ei.value.to_dict()["code"] == "NO_KEYS_AVAILABLE"
    assert "refundRequired" not in ei.value.to_dict()
    assert await _order_count(gdb, "ORD2") == 0


async def test_create_order_ignores_keys_of_other_plans(gdb):
    await seed(gdb, "Vision", plans=[("1 Month", 299.0), ("1 Year", 2599.0)],
               plan="1 Month", key_values=["K1"])
    with pytest.raises(NoKeysAvailable):
        await checkout.create_order(gdb, "ORD3", 1, "1 Year", 2599)


async def test_duplicate_order_id_is_rejected(gdb):
    await seed(gdb, key_values=["K1", "K2"])
    await checkout.create_order(gdb, "ORD1", 1, "1 Month", 299)

    with pytest.raises(DuplicateOrder):
        await checkout.create_order(gdb, "ORD1", 1, "1 Month", 299)

    assert await _order_count(gdb, "ORD1") == 1
    rows = await _key_rows(gdb)
    # the failed attempt took no hold
    assert [r["status"] for r in rows] == ["held", "available"]
    assert rows[1]["order_id"] is None


async def test_duplicate_order_id_while_holding_the_last_key(gdb):
    await seed(gdb, key_values=["K1"])
    await checkout.create_order(gdb, "ORD1", 1, "1 Month", 299)

    with pytest.raises(DuplicateOrder):
        await checkout.create_order(gdb, "ORD1", 1, "1 Month", 299)

    [k] = await _key_rows(gdb)
    assert k["status"] == "held" and k["order_id"] == "ORD1"
    assert (await _order(gdb, "ORD1"))["status"] == "pending"


async def test_duplicate_order_id_after_sell_out(gdb, gateway):
    await seed(gdb, key_values=["K1"])
    await checkout.create_order(gdb, "ORD1", 1, "1 Month", 299)
    await _pay(gdb, gateway, "ORD1", "P1")

    with pytest.raises(DuplicateOrder):
        await checkout.create_order(gdb, "ORD1", 1, "1 Month", 299)
    assert (await _order(gdb, "ORD1"))["status"] == "completed"


async def test_each_order_holds_its_own_key(gdb):
    await seed(gdb, key_values=["K1"])
    await checkout.create_order(gdb, "A", 1, "1 Month", 299)
    # the last key is held by A: B is turned away at creation time
    with pytest.raises(NoKeysAvailable):
        await checkout.create_order(gdb, "B", 1, "1 Month", 299)
    assert await _order_count(gdb, "B") == 0


async def test_amount_must_match_catalog_price(gdb):
    await seed(gdb, key_values=["K1"])
    with pytest.raises(ValidationError) as ei:
        await checkout.create_order(gdb, "ORD1", 1, "1 Month", 1)
    assert ei.value.field == "amount"
    assert await _order_count(gdb, "ORD1") == 0


async def test_plan_unknown_to_catalog_is_not_price_checked(gdb):
    await seed(gdb, plans=[], plan="Lifetime", key_values=["K1"])
    order = await checkout.create_order(gdb, "ORD1", 1, "Lifetime", 9999)
    assert order["amount"] == 9999


# ----------------------------
# Payment intent
# ----------------------------
async def test_intent_for_unknown_order(gdb, gateway):
    with pytest.raises(OrderNotFound):
        await checkout.open_payment_intent(
            gdb, gateway, "NOPE", 299, "Vision", "1 Month"
        )
    assert gateway.intents == []


async def test_intent_amount_must_match_order(gdb, gateway):
    await seed(gdb, key_values=["K1"])
    await checkout.create_order(gdb, "ORD1", 1, "1 Month", 299)
    with pytest.raises(ValidationError):
        await checkout.open_payment_intent(
            gdb, gateway, "ORD1", 1, "Vision", "1 Month"
        )
    assert gateway.intents == []


async def test_intent_rounds_to_minor_units(gdb, gateway):
    await seed(gdb, plans=[("Odd", 19.99)], plan="Odd", key_values=["K1"])
    await checkout.create_order(gdb, "ORD1", 1, "Odd", 19.99)
    intent = await checkout.open_payment_intent(
        gdb, gateway, "ORD1", 19.99, "Vision", "Odd"
    )
    assert intent["amountMinorUnits"] == 1999


async def test_newer_intent_replaces_older_one(gdb, gateway):
    await seed(gdb, key_values=["K1"])
    await checkout.create_order(gdb, "ORD1", 1, "1 Month", 299)
    old = await open_intent(gdb, gateway, "ORD1")
    new = await open_intent(gdb, gateway, "ORD1")
    assert old != new

    with pytest.raises(PaymentMismatch):
        await checkout.verify_payment(gdb, gateway, old, "P1",
                                      sign(old, "P1"), "ORD1")
    result = await checkout.verify_payment(gdb, gateway, new, "P2",
                                           sign(new, "P2"), "ORD1")
    assert result["keyValue"] == "K1"


# ----------------------------
# Verification
# ----------------------------
async def test_tampered_signature_releases_nothing(gdb, gateway):
    await seed(gdb, key_values=["K1"])
    await checkout.create_order(gdb, "ORD1", 1, "1 Month", 299)
    gid = await open_intent(gdb, gateway, "ORD1")
    before = await _key_rows(gdb)

    for bad in ("", "deadbeef", sign(gid, "P2"), sign("G2", "P1")):
        with pytest.raises(InvalidSignature):
            await checkout.verify_payment(gdb, gateway, gid, "P1", bad,
                                          "ORD1")

    assert await _key_rows(gdb) == before
    assert (await _order(gdb, "ORD1"))["status"] == "pending"
    # never even asked the gateway
    assert gateway.fetches == []


async def test_uncaptured_payment_releases_nothing(gdb, gateway):
    await seed(gdb, key_values=["K1"])
    await checkout.create_order(gdb, "ORD1", 1, "1 Month", 299)
    gateway.statuses["P1"] = "authorized"

    with pytest.raises(PaymentNotCaptured) as ei:
        await _pay(gdb, gateway, "ORD1", "P1")
    assert ei.value.status == "authorized"
    assert ei.value.to_dict()["paymentStatus"] == "authorized"
    [k] = await _key_rows(gdb)
    assert k["status"] == "held"
    assert (await _order(gdb, "ORD1"))["status"] == "pending"


async def test_verify_unknown_order(gdb, gateway):
    with pytest.raises(OrderNotFound):
        await checkout.verify_payment(gdb, gateway, "G1", "P1",
                                      sign("G1", "P1"), "NOPE")


async def test_second_verification_consumes_no_second_key(gdb, gateway):
    await seed(gdb, key_values=["K1", "K2"])
    await checkout.create_order(gdb, "ORD1", 1, "1 Month", 299)
    gid = await open_intent(gdb, gateway, "ORD1")
    await checkout.verify_payment(gdb, gateway, gid, "P1",
                                  sign(gid, "P1"), "ORD1")
    with pytest.raises(AlreadyCompleted):
        await checkout.verify_payment(gdb, gateway, gid, "P1",
                                      sign(gid, "P1"), "ORD1")
    rows = await _key_rows(gdb)
    assert [r["status"] for r in rows] == ["sold", "available"]


# ----------------------------
# A payment settles only its own order
# ----------------------------
async def test_one_payment_cannot_settle_two_orders(gdb, gateway):
    await seed(gdb, key_values=["K1", "K2"])
    await checkout.create_order(gdb, "CHEAP", 1, "1 Month", 299)
    await checkout.create_order(gdb, "OTHER", 1, "1 Month", 299)
    g_cheap = await open_intent(gdb, gateway, "CHEAP")
    await open_intent(gdb, gateway, "OTHER")

    proof = (g_cheap, "P1", sign(g_cheap, "P1"))
    assert (await checkout.verify_payment(gdb, gateway, *proof, "CHEAP")
            )["keyValue"] == "K1"

    with pytest.raises(PaymentMismatch) as ei:
        await checkout.verify_payment(gdb, gateway, *proof, "OTHER")
    assert ei.value.to_dict()["code"] == "PAYMENT_MISMATCH"

    assert (await _order(gdb, "OTHER"))["status"] == "pending"
    rows = await _key_rows(gdb)
    assert [(r["status"], r["order_id"]) for r in rows] == \
        [("sold", "CHEAP"), ("held", "OTHER")]
    # rejected before the gateway was asked about the payment
    assert gateway.fetches == ["P1"]


async def test_order_without_intent_cannot_be_settled(gdb, gateway):
    await seed(gdb, key_values=["K1"])
    await checkout.create_order(gdb, "ORD1", 1, "1 Month", 299)
    with pytest.raises(PaymentMismatch):
        await checkout.verify_payment(gdb, gateway, "G1", "P1",
                                      sign("G1", "P1"), "ORD1")
    with pytest.raises(PaymentMismatch):
        await checkout.settle_payment(gdb, "ORD1", "G1", "P1", "webhook")
    assert (await _order(gdb, "ORD1"))["status"] == "pending"


async def test_payment_made_for_another_gateway_order(gdb, gateway):
    await seed(gdb, key_values=["K1"])
    await checkout.create_order(gdb, "ORD1", 1, "1 Month", 299)
    gateway.payments["P1"] = {"order_id": "order_somebody_else"}
    with pytest.raises(PaymentMismatch):
        await _pay(gdb, gateway, "ORD1", "P1")
    [k] = await _key_rows(gdb)
    assert k["status"] == "held"


async def test_underpaid_payment(gdb, gateway):
    await seed(gdb, key_values=["K1"])
    await checkout.create_order(gdb, "ORD1", 1, "1 Month", 299)
    gateway.payments["P1"] = {"amount": 100}
    with pytest.raises(PaymentMismatch):
        await _pay(gdb, gateway, "ORD1", "P1")
    assert (await _order(gdb, "ORD1"))["status"] == "pending"


async def test_payment_id_completes_only_one_order(gdb, gateway):
    await seed(gdb, key_values=["K1", "K2"])
    await checkout.create_order(gdb, "A", 1, "1 Month", 299)
    await checkout.create_order(gdb, "B", 1, "1 Month", 299)
    async with gdb.transaction() as s:
        assert await orders.complete_order(s, "A", "GA", "P1", "signature")
    with pytest.raises(PaymentMismatch):
        async with gdb.transaction() as s:
            await orders.complete_order(s, "B", "GB", "P1", "signature")
    assert (await _order(gdb, "B"))["status"] == "pending"


# ----------------------------
# Lapsed holds: no double sale
# ----------------------------
async def test_lapsed_hold_taken_by_other_order(gdb, gateway):
    await seed(gdb, key_values=["K1"])
    # A's hold expires immediately, B re-claims the same key
    await checkout.create_order(gdb, "A", 1, "1 Month", 299, hold_ttl=-1)
    await checkout.create_order(gdb, "B", 1, "1 Month", 299)
    [k] = await _key_rows(gdb)
    assert k["order_id"] == "B"

    with pytest.raises(NoKeysAvailable) as ei:
        await _pay(gdb, gateway, "A", "PA")
    err = ei.value.to_dict()
    assert err["refundRequired"] is True
    assert err["orderId"] == "A" and err["paymentId"] == "PA"
    assert (await _order(gdb, "A"))["status"] == "pending"

    result = await _pay(gdb, gateway, "B", "PB")
    assert result["keyValue"] == "K1"
    [k] = await _key_rows(gdb)
    assert k["status"] == "sold" and k["order_id"] == "B"


async def test_lapsed_hold_still_sells_when_untouched(gdb, gateway):
    await seed(gdb, key_values=["K1"])
    await checkout.create_order(gdb, "A", 1, "1 Month", 299, hold_ttl=-1)
    result = await _pay(gdb, gateway, "A", "PA")
    assert result["keyValue"] == "K1"


async def test_lapsed_hold_falls_back_to_another_key(gdb, gateway):
    await seed(gdb, key_values=["K1", "K2"])
    await checkout.create_order(gdb, "A", 1, "1 Month", 299, hold_ttl=-1)
    await checkout.create_order(gdb, "B", 1, "1 Month", 299)  # takes K1
    # K2 was free all along; A gets it
    result = await _pay(gdb, gateway, "A", "PA")
    assert result["keyValue"] == "K2"


async def test_fulfillment_reuses_key_already_stamped(gdb, gateway):
    await seed(gdb, key_values=["K1", "K2"])
    await checkout.create_order(gdb, "A", 1, "1 Month", 299)
    # a key sold to A whose order row never got completed
    async with gdb.transaction() as s:
        await s.execute(text(
            "UPDATE keys SET status='sold', sold_at=1 WHERE order_id='A'"
        ))
    result = await _pay(gdb, gateway, "A", "PA")
    assert result["keyValue"] == "K1"
    rows = await _key_rows(gdb)
    assert [r["status"] for r in rows] == ["sold", "available"]


# ----------------------------
# Webhook-style settlement + cancel
# ----------------------------
async def test_settle_payment_records_method(gdb, gateway):
    await seed(gdb, key_values=["K1"])
    await checkout.create_order(gdb, "ORD1", 1, "1 Month", 299)
    gid = await open_intent(gdb, gateway, "ORD1")
    await checkout.settle_payment(gdb, "ORD1", gid, "P1", "webhook",
                                  paid_minor=29900)
    assert (await _order(gdb, "ORD1"))["verification_method"] == "webhook"


async def test_cancel_releases_the_hold(gdb):
    await seed(gdb, key_values=["K1"])
    await checkout.create_order(gdb, "A", 1, "1 Month", 299)
    assert await checkout.cancel_order(gdb, "A") == 1
    [k] = await _key_rows(gdb)
    assert k["status"] == "available" and k["order_id"] is None
    # released key is immediately sellable again
    await checkout.create_order(gdb, "B", 1, "1 Month", 299)
    assert await checkout.cancel_order(gdb, "A") == 0


async def test_cancel_completed_order(gdb, gateway):
    await seed(gdb, key_values=["K1"])
    await checkout.create_order(gdb, "A", 1, "1 Month", 299)
    await _pay(gdb, gateway, "A", "P")
    with pytest.raises(AlreadyCompleted):
        await checkout.cancel_order(gdb, "A")
    [k] = await _key_rows(gdb)
    assert k["status"] == "sold"
