from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple, TypedDict
import os
import uuid
import json

import httpx

from .errors import GatewayError, InvalidSignature
from .helpers import ct_equal, hmac_sha256_hex, payment_signature
from .infra.logs import get_logger

log = get_logger(__name__)

GATEWAY_BACKEND = os.environ.get("GATEWAY_BACKEND", "mock").lower()
CURRENCY = os.environ.get("CURRENCY", "INR")

RAZORPAY_API_BASE = os.environ.get(
    "RAZORPAY_API_BASE", "https://api.razorpay.com/v1"
)
RAZORPAY_KEY_ID = os.environ.get("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.environ.get("RAZORPAY_KEY_SECRET", "")
RAZORPAY_WEBHOOK_SECRET = os.environ.get("RAZORPAY_WEBHOOK_SECRET", "")

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class Intent(TypedDict):
    id: str
    amount: int
    currency: str


class PaymentGateway(ABC):
    name: str = "abstract"
    key_id: str = ""

    @abstractmethod
    async def create_intent(
        self, amount_minor: int, currency: str, receipt: str,
        notes: Dict[str, str],
    ) -> Intent: ...

    # the gateway's own view of a payment: {"id", "status", "order_id", ...}
    @abstractmethod
    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]: ...

    # secret the checkout signature "<order_id>|<payment_id>" is made with
    @abstractmethod
    def signature_secret(self) -> str: ...

    @abstractmethod
    def webhook_secret(self) -> str: ...

    def verify_payment_signature(
        self, gateway_order_id: str, gateway_payment_id: str, signature: str
    ) -> None:
        expected = payment_signature(
            self.signature_secret(), gateway_order_id, gateway_payment_id
        )
        if not signature or not ct_equal(expected, signature):
            raise InvalidSignature("payment signature mismatch")

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-razorpay-signature")
        expected = hmac_sha256_hex(self.webhook_secret(), payload)
        if not sig or not ct_equal(expected, sig):
            raise InvalidSignature("webhook signature mismatch")
        try:
            return json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise InvalidSignature("webhook body is not JSON")

    # "payment.captured" | "payment.failed" | "order.paid" | ...
    def event_kind(self, event: dict) -> str:
        return event.get("event", "")

    # (gateway_order_id, payment_id, internal order_id) of a payment event
    def event_ids(
        self, event: dict
    ) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        entity = (
            (event.get("payload") or {}).get("payment", {}).get("entity")
            or {}
        )
        notes = entity.get("notes") or {}
        return (
            entity.get("order_id"),
            entity.get("id"),
            notes.get("order_id") if isinstance(notes, dict) else None,
        )

    # amount of a payment event in minor units, None if not reported
    def event_amount(self, event: dict) -> Optional[int]:
        entity = (
            (event.get("payload") or {}).get("payment", {}).get("entity")
            or {}
        )
        amount = entity.get("amount")
        return int(amount) if amount is not None else None


# ----------------------------
# Razorpay implementation
# ----------------------------
class RazorpayGateway(PaymentGateway):
    name = "razorpay"

    def __init__(self, http: httpx.AsyncClient, key_id: str = RAZORPAY_KEY_ID,
                 key_secret: str = RAZORPAY_KEY_SECRET,
                 webhook_secret: str = RAZORPAY_WEBHOOK_SECRET,
                 api_base: str = RAZORPAY_API_BASE) -> None:
        if not key_id or not key_secret:
            raise RuntimeError(
                "RazorpayGateway needs RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET"
            )
        self.http = http
        self.key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret or key_secret
        self.api_base = api_base.rstrip("/")

    def signature_secret(self) -> str:
        return self._key_secret

    def webhook_secret(self) -> str:
        return self._webhook_secret

    async def _request(self, method: str, path: str, **kw) -> Dict[str, Any]:
        try:
            r = await self.http.request(
                method, f"{self.api_base}{path}",
                auth=(self.key_id, self._key_secret), **kw,
            )
        except httpx.HTTPError as e:
            log.warning("gateway.unreachable", path=path, error=str(e))
            raise GatewayError(f"payment gateway unreachable: {e}")
        try:
            body = r.json()
        except ValueError:
            body = {}
        if r.status_code >= 400:
            err = body.get("error") or {}
            desc = err.get("description") or r.reason_phrase or "error"
            log.warning("gateway.error", path=path, status=r.status_code,
                        description=desc)
            raise GatewayError(desc)
        return body

    async def create_intent(self, amount_minor, currency, receipt, notes):
        body = await self._request("POST", "/orders", json={
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": notes,
        })
        return {
            "id": body["id"],
            "amount": int(body.get("amount", amount_minor)),
            "currency": body.get("currency", currency),
        }

    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/payments/{payment_id}")


# ----------------------------
# MockGateway implementation
# ----------------------------
class MockGateway(PaymentGateway):
    """
    Deterministic gateway for development: every intent can be paid through
    POST /mockpay/{gateway_order_id}/capture, which hands back a properly
    signed proof. Payments whose id starts with "pay_mock_" are captured.
    """
    name = "mock"
    key_id = "rzp_mock"

    def __init__(self, secret: str = MOCK_SECRET) -> None:
        self._secret = secret
        # gateway_order_id -> amount_minor, payment_id -> gateway_order_id
        self._intents: Dict[str, int] = {}
        self._payments: Dict[str, str] = {}

    def signature_secret(self) -> str:
        return self._secret

    def webhook_secret(self) -> str:
        return self._secret

    async def create_intent(self, amount_minor, currency, receipt, notes):
        gateway_order_id = f"order_mock_{uuid.uuid4().hex[:14]}"
        self._intents[gateway_order_id] = amount_minor
        return {
            "id": gateway_order_id,
            "amount": amount_minor,
            "currency": currency,
        }

    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        status = "captured" if payment_id.startswith("pay_mock_") else "failed"
        payment: Dict[str, Any] = {"id": payment_id, "status": status}
        gateway_order_id = self._payments.get(payment_id)
        if gateway_order_id is not None:
            payment["order_id"] = gateway_order_id
            if gateway_order_id in self._intents:
                payment["amount"] = self._intents[gateway_order_id]
        return payment

    def capture(self, gateway_order_id: str) -> Dict[str, str]:
        payment_id = f"pay_mock_{uuid.uuid4().hex[:14]}"
        self._payments[payment_id] = gateway_order_id
        return {
            "gatewayOrderId": gateway_order_id,
            "gatewayPaymentId": payment_id,
            "signature": payment_signature(
                self._secret, gateway_order_id, payment_id
            ),
        }


def new_gateway(http: Optional[httpx.AsyncClient] = None) -> PaymentGateway:
    if GATEWAY_BACKEND == "razorpay":
        if http is None:
            raise RuntimeError("RazorpayGateway requires http=AsyncClient")
        return RazorpayGateway(http)
    return MockGateway()
