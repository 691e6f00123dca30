"""
Error taxonomy of the shop.

Every failure a client can act on is a ShopError carrying a stable `code`
and the HTTP status it maps to. server.py renders them into the JSON
envelope {"success": false, "error": ..., "code": ...}.
"""
from __future__ import annotations
from typing import Any, Dict, Optional


class ShopError(Exception):
    code = "SHOP_ERROR"
    status_code = 500

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def extra(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        out = {"success": False, "error": self.message, "code": self.code}
        out.update(self.extra())
        return out


class ValidationError(ShopError):
    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"{field} is missing or malformed")
        self.field = field

    def extra(self):
        return {"field": self.field}


class NoKeysAvailable(ShopError):
    code = "NO_KEYS_AVAILABLE"
    status_code = 409

    def __init__(self, brand_id: int, plan: str, paid: bool = False,
                 order_id: Optional[str] = None,
                 payment_id: Optional[str] = None) -> None:
        super().__init__(
            f"no keys available for brand {brand_id}, plan {plan!r}"
        )
        self.brand_id = brand_id
        self.plan = plan
        # paid: money was captured but the pool ran dry -> refund/restock
        self.paid = paid
        self.order_id = order_id
        self.payment_id = payment_id

    def extra(self):
        if not self.paid:
            return {}
        return {
            "refundRequired": True,
            "orderId": self.order_id,
            "paymentId": self.payment_id,
        }


class DuplicateOrder(ShopError):
    code = "DUPLICATE_ORDER"
    status_code = 409

    def __init__(self, order_id: str) -> None:
        super().__init__(f"order {order_id} already exists")
        self.order_id = order_id


class DuplicateKey(ShopError):
    code = "DUPLICATE_KEY"
    status_code = 409


class InvalidSignature(ShopError):
    code = "INVALID_SIGNATURE"
    status_code = 400


class PaymentNotCaptured(ShopError):
    code = "PAYMENT_NOT_CAPTURED"
    status_code = 402

    def __init__(self, status: str) -> None:
        super().__init__(f"payment status is {status!r}, expected 'captured'")
        self.status = status

    def extra(self):
        return {"paymentStatus": self.status}


class PaymentMismatch(ShopError):
    """A genuine payment, but not for this order (other intent, amount or
    already spent on another order)."""
    code = "PAYMENT_MISMATCH"
    status_code = 400

    def __init__(self, order_id: str, message: str) -> None:
        super().__init__(message)
        self.order_id = order_id


class AlreadyCompleted(ShopError):
    code = "ALREADY_COMPLETED"
    status_code = 409

    def __init__(self, order_id: str) -> None:
        super().__init__(f"order {order_id} is already completed")
        self.order_id = order_id


class OrderNotFound(ShopError):
    code = "ORDER_NOT_FOUND"
    status_code = 404

    def __init__(self, order_id: str) -> None:
        super().__init__(f"order {order_id} not found")
        self.order_id = order_id


class KeyNotFound(ShopError):
    code = "KEY_NOT_FOUND"
    status_code = 404


class BrandNotFound(ShopError):
    code = "BRAND_NOT_FOUND"
    status_code = 404


class GatewayError(ShopError):
    code = "GATEWAY_ERROR"
    status_code = 502


class PersistenceError(ShopError):
    code = "PERSISTENCE_ERROR"
    status_code = 500
