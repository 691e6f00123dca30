from __future__ import annotations
import sys

import httpx
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .infra.sql import make_async_engine, GatedAsyncSession
from .infra.timings import install_shutdown_flush, snapshot, timeit
from .infra.logs import get_logger

from .model.db import Base, Key
from .model import catalog, keys, orders
from .model.events import EventStore, new_store, BACKEND as EVENTS_BACKEND
from . import checkout
from .errors import (
    AlreadyCompleted, BrandNotFound, OrderNotFound, PersistenceError,
    ShopError, ValidationError,
)
from .gateway import (
    GATEWAY_BACKEND, MockGateway, PaymentGateway, new_gateway
)
from .schemas import (
    AddBrandRequest, AddKeyRequest, AddKeysRequest, AddPlanRequest,
    AdminLoginRequest, CancelOrderRequest, CreateOrderRequest,
    PaymentIntentRequest, VerifyPaymentRequest,
)

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware
from .helpers import ct_equal, to_iso

import redis.asyncio as redis

log = get_logger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    print("NEED DATABASE_URL! e.g. sqlite:///./keyshop.db")
    sys.exit(1)

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
CORS_ORIGINS = [
    o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",")
    if o.strip()
]


db = make_async_engine(DATABASE_URL)


async def get_db() -> GatedAsyncSession:
    async with db.sessionmaker() as session:
        yield GatedAsyncSession(session=session, gated=db.gated)


async def webhook_events() -> EventStore:
    if EVENTS_BACKEND == "redis":
        yield new_store(r=app.state.redis)
    else:
        async with db.sessionmaker() as session:
            yield new_store(db=session, gated=db.gated)


def get_gateway(request: Request) -> PaymentGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise RuntimeError("payment gateway not initialized")
    return gateway


app = FastAPI(
    title="KeyShop",
    default_response_class=ORJSONResponse,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)

# shutdown handler posting timing aggregates (if TIMINGS_URL is set)
install_shutdown_flush(app)


# ---
# error envelope
# ---
@app.exception_handler(ShopError)
async def _shop_error(request: Request, exc: ShopError):
    return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def _request_validation_error(request: Request,
                                    exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(p) for p in first.get("loc", ()) if p != "body"]
    field = loc[-1] if loc else "body"
    err = ValidationError(field, f"{field}: {first.get('msg', 'invalid')}")
    return ORJSONResponse(err.to_dict(), status_code=err.status_code)


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException):
    return ORJSONResponse(
        {"success": False, "error": str(exc.detail)},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    print('\n' * 3)
    print('=' * 50)
    print('KeyShop is starting up...')
    print(f'   - Database:        {db.engine.dialect.name}')
    print(f'   - Payment Gateway: {GATEWAY_BACKEND}')
    print(f'   - Webhook Events:  {EVENTS_BACKEND}')
    print('=' * 50)
    print('\n' * 3)


@app.on_event("startup")
async def _db_init():
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=32
        ),
    )


@app.on_event("startup")
async def _gateway_start():
    # tests may have installed their own
    if getattr(app.state, "gateway", None) is None:
        app.state.gateway = new_gateway(app.state.http)


@app.on_event("startup")
async def _redis_start():
    if EVENTS_BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await db.dispose()


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")


def key_to_json(k: Dict[str, Any] | Key) -> Dict[str, Any]:
    if isinstance(k, Key):
        k = {c: getattr(k, c) for c in (
            "id", "brand_id", "plan", "key_value", "status", "order_id",
            "held_until", "sold_at", "created_at",
        )}
    return {
        "id": k["id"],
        "brandId": k["brand_id"],
        "brandName": k.get("brand_name"),
        "plan": k["plan"],
        "keyValue": k["key_value"],
        "status": k["status"],
        "orderId": k["order_id"],
        "heldUntil": to_iso(k["held_until"]),
        "soldAt": to_iso(k["sold_at"]),
        "createdAt": to_iso(k["created_at"]),
    }


# ----------------------------
# Public API
# ----------------------------
@app.get("/api/health")
async def health(db: GatedAsyncSession = Depends(get_db)):
    try:
        async with db.transaction() as s:
            await s.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        log.error("health.db_down", error=str(e))
        raise PersistenceError("Database connection failed")
    return {
        "success": True,
        "message": "Database connected",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/brands")
async def get_brands(db: GatedAsyncSession = Depends(get_db)):
    async with timeit("db.list_brands"):
        async with db.transaction() as s:
            brands = await catalog.list_brands(s)
    return {"success": True,
            "brands": [catalog.brand_to_json(b) for b in brands]}


@app.get("/api/keys/available/{brand_id}")
async def available_keys(brand_id: int, plan: Optional[str] = None,
                         db: GatedAsyncSession = Depends(get_db)):
    async with timeit("db.count_available"):
        async with db.transaction() as s:
            count = await keys.count_available(s, brand_id, plan)
    return {"success": True, "count": count}


@app.post("/api/create-order")
async def create_order(body: CreateOrderRequest,
                       db: GatedAsyncSession = Depends(get_db)):
    order = await checkout.create_order(
        db, body.order_id, body.brand_id, body.plan_name, body.amount
    )
    return {
        "success": True,
        "message": "Order created successfully",
        "order": orders.order_to_json(order),
    }


@app.post("/api/create-payment-intent")
async def create_payment_intent(
    body: PaymentIntentRequest,
    db: GatedAsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    intent = await checkout.open_payment_intent(
        db, gateway, body.order_id, body.amount, body.brand_name,
        body.plan_name,
    )
    return {"success": True, **intent}


@app.post("/api/verify-payment")
async def verify_payment(
    body: VerifyPaymentRequest,
    db: GatedAsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    result = await checkout.verify_payment(
        db, gateway, body.gateway_order_id, body.gateway_payment_id,
        body.signature, body.order_id,
    )
    return {"success": True, **result}


@app.post("/api/cancel-order")
async def cancel_order(body: CancelOrderRequest,
                       db: GatedAsyncSession = Depends(get_db)):
    released = await checkout.cancel_order(db, body.order_id)
    return {"success": True, "released": released}


# ----------------------------
# API: Order status (polled by the storefront)
# ----------------------------
@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, db: GatedAsyncSession = Depends(get_db)):
    async with timeit("db.get_order"):
        async with db.transaction() as s:
            order = await orders.get_order(s, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return {"success": True, "order": orders.order_to_json(order)}


# ----------------------------
# Webhook endpoint (gateway -> us)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    ev: EventStore = Depends(webhook_events),
    gateway: PaymentGateway = Depends(get_gateway),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = gateway.verify_webhook(payload, headers)
    kind = gateway.event_kind(event)
    if kind != "payment.captured":
        return {"success": True, "ignored": kind}

    gateway_order_id, payment_id, order_id = gateway.event_ids(event)
    if not order_id:
        raise ValidationError("notes.order_id",
                              "payment carries no notes.order_id")

    evt_id = headers.get("x-razorpay-event-id")
    if not await ev.mark_event_seen(evt_id):
        return {"success": True, "idempotent": True}

    try:
        await checkout.settle_payment(
            db, order_id, gateway_order_id, payment_id, "webhook",
            paid_minor=gateway.event_amount(event),
        )
    except AlreadyCompleted:
        # the browser callback got there first
        return {"success": True, "idempotent": True}
    except ShopError:
        await ev.forget_event(evt_id)
        raise
    return {"success": True, "orderId": order_id, "orderStatus": "completed"}


# ----------------------------
# MockGateway: pay an intent without a real checkout
# ----------------------------
@app.post("/mockpay/{gateway_order_id}/capture")
async def mockpay_capture(gateway_order_id: str,
                          gateway: PaymentGateway = Depends(get_gateway)):
    if not isinstance(gateway, MockGateway):
        raise HTTPException(404, detail="mock gateway not enabled")
    return {"success": True, **gateway.capture(gateway_order_id)}


# ----------------------------
# Admin
# ----------------------------
@app.post("/api/admin/login")
async def admin_login(request: Request, body: AdminLoginRequest):
    ok_user = ct_equal(body.username, ADMIN_USERNAME)
    ok_pass = ct_equal(body.password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = body.username
        return {"success": True}
    log.warning("admin.login_failed", username=body.username)
    return ORJSONResponse(
        {"success": False, "error": "Invalid credentials."}, status_code=401
    )


@app.post("/api/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"success": True}


@app.get("/api/admin/keys", dependencies=[Depends(require_admin)])
async def admin_list_keys(limit: int = 500, brandId: Optional[int] = None,
                          status: Optional[str] = None,
                          db: GatedAsyncSession = Depends(get_db)):
    async with db.transaction() as s:
        rows = await keys.list_keys(s, limit=max(1, min(limit, 5000)),
                                    brand_id=brandId, status=status)
    return {"success": True, "keys": [key_to_json(r) for r in rows]}


async def _require_brand(s, brand_id: int):
    brand = await catalog.get_brand(s, brand_id)
    if brand is None:
        raise BrandNotFound(f"brand {brand_id} not found")
    return brand


@app.post("/api/admin/keys", dependencies=[Depends(require_admin)])
async def admin_add_key(body: AddKeyRequest,
                        db: GatedAsyncSession = Depends(get_db)):
    async with db.transaction() as s:
        await _require_brand(s, body.brand_id)
        key = await keys.add_key(s, body.brand_id, body.plan, body.key_value)
    log.info("admin.key_added", key_id=key.id, brand_id=body.brand_id,
             plan=body.plan)
    return {"success": True, "key": key_to_json(key)}


@app.post("/api/admin/keys/bulk", dependencies=[Depends(require_admin)])
async def admin_add_keys(body: AddKeysRequest,
                         db: GatedAsyncSession = Depends(get_db)):
    async with db.transaction() as s:
        await _require_brand(s, body.brand_id)
        added = await keys.add_keys(s, body.brand_id, body.plan,
                                    body.key_values)
    log.info("admin.keys_added", count=len(added), brand_id=body.brand_id,
             plan=body.plan)
    return {"success": True, "added": len(added)}


@app.delete("/api/admin/keys/{key_id}", dependencies=[Depends(require_admin)])
async def admin_delete_key(key_id: int,
                           db: GatedAsyncSession = Depends(get_db)):
    async with db.transaction() as s:
        await keys.delete_key(s, key_id)
    log.info("admin.key_deleted", key_id=key_id)
    return {"success": True, "message": "Key deleted successfully"}


@app.get("/api/admin/stats", dependencies=[Depends(require_admin)])
async def admin_stats(db: GatedAsyncSession = Depends(get_db)):
    async with timeit("db.stats"):
        async with db.transaction() as s:
            k = await keys.key_stats(s)
            rev = await orders.revenue(s)
    return {
        "success": True,
        "stats": {
            "totalKeys": k["total"],
            "availableKeys": k["available"],
            "heldKeys": k["held"],
            "soldKeys": k["sold"],
            "revenue": rev,
        },
    }


@app.post("/api/admin/brands", dependencies=[Depends(require_admin)])
async def admin_add_brand(body: AddBrandRequest,
                          db: GatedAsyncSession = Depends(get_db)):
    async with db.transaction() as s:
        brand = await catalog.add_brand(s, body.name, body.description)
    return {"success": True, "brand": catalog.brand_to_json(brand)}


@app.post("/api/admin/brands/{brand_id}/plans",
          dependencies=[Depends(require_admin)])
async def admin_add_plan(brand_id: int, body: AddPlanRequest,
                         db: GatedAsyncSession = Depends(get_db)):
    async with db.transaction() as s:
        brand = await catalog.add_plan(s, brand_id, body.name, body.price)
    return {
        "success": True,
        "message": "Plan added successfully",
        "brand": catalog.brand_to_json(brand),
    }


@app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
async def admin_orders(limit: int = 200, status: Optional[str] = None,
                       db: GatedAsyncSession = Depends(get_db)):
    async with db.transaction() as s:
        rows = await orders.list_orders(s, limit=max(1, min(limit, 500)),
                                        status=status)
    return {"success": True, "orders": [orders.order_to_json(r) for r in rows],
            "limit": limit}


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def admin_timings():
    return {"success": True, "items": snapshot()}
